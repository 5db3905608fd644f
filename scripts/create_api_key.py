from __future__ import annotations

import argparse
import asyncio
import sys

from notifypipe.core.config import get_settings
from notifypipe.persistence.db import build_engine, build_session_factory
from notifypipe.services.auth.api_keys import ROLE_ORDER, issue_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for the job and metrics endpoints")
    parser.add_argument("--owner", required=True, help="Owner id whose recipients the key may read")
    parser.add_argument("--role", default="reader", help=f"Role: {'|'.join(ROLE_ORDER)}")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    # Validate the role before opening a connection.
    role = normalize_role(args.role)
    settings = get_settings()
    engine = build_engine(settings.database_url, settings)
    try:
        async with build_session_factory(engine)() as session:
            api_key, raw_key = await issue_api_key(session, owner_id=args.owner, role=role, name=args.name)
    finally:
        await engine.dispose()

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print(f"  role: {api_key.role}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
