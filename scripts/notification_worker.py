from __future__ import annotations

import asyncio

from notifypipe.workers.notification_worker import run_pipeline


def main() -> int:
    # Run the poller and worker pool in this process until SIGINT/SIGTERM.
    return asyncio.run(run_pipeline())


if __name__ == "__main__":
    raise SystemExit(main())
