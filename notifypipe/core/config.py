from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "notifypipe"
    # Production tightens webhook verification when no public key is configured.
    environment: str = "development"
    log_level: str = "INFO"

    # Empty values are rejected at pipeline startup instead of falling back to a local default.
    database_url: str = ""
    # Redis backs the shared work queue when several worker processes run side by side.
    redis_url: str = ""
    # Select the queue substrate: redis for multi-process deployments, memory for single-process runs.
    queue_backend: str = "redis"
    # Keep queue name configurable for multi-environment isolation.
    queue_name: str = "notification-queue"

    # Bounded pool sizing keeps store latency predictable under load.
    db_pool_size: int = 5
    db_max_overflow: int = 5
    # Apply per-statement timeout in Postgres to bound slow poll queries.
    db_statement_timeout_ms: int = 5000

    # Poll cadence and batch size for the due-job producer.
    notify_poll_interval_s: int = 10
    notify_poll_batch_size: int = 100
    # Fixed number of concurrent dispatches across all channels.
    notify_worker_concurrency: int = 5
    # Global ceiling on dispatch attempts per second to respect provider limits.
    notify_rate_limit_per_s: float = 50
    # Total dispatch attempts per job, including the first one.
    notify_max_attempts: int = 3
    # Optional attempt ceiling for urgent jobs; unset keeps urgent jobs on the default policy.
    notify_urgent_max_attempts: int | None = None
    # Exponential backoff base and cap for retried dispatches.
    notify_backoff_base_ms: int = 5000
    notify_backoff_max_ms: int = 300000
    # Upper bound on a single provider call before it is treated as a failure.
    notify_provider_timeout_s: float = 30
    # Processing jobs without progress for this long are assumed orphaned and re-enqueued.
    notify_stale_processing_after_s: int = 900
    # Redis in-flight lease; an unacknowledged job becomes reclaimable once it lapses.
    notify_queue_lease_s: int = 300
    # Time allowed for in-flight dispatches to finish during shutdown.
    notify_shutdown_grace_s: float = 30
    # Prefix for generated correlation ids attached to outbound email.
    notify_message_id_prefix: str = "notify"

    # SendGrid credentials and sender identity for the email channel.
    sendgrid_api_key: str | None = None
    sendgrid_base_url: str = "https://api.sendgrid.com"
    sendgrid_from_email: str = "updates@example.com"
    sendgrid_from_name: str = "Notifications"
    # Base64 DER (or PEM) ECDSA key used to verify event webhook signatures.
    sendgrid_webhook_public_key: str | None = None
    # Allow unsigned webhooks in production only when explicitly relaxed.
    sendgrid_webhook_relaxed_validation: bool = False

    # Twilio credentials and sender numbers for SMS and WhatsApp.
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None
    twilio_whatsapp_number: str | None = None
    twilio_base_url: str = "https://api.twilio.com"

    # Header used to carry the bearer API key.
    auth_api_key_header: str = "Authorization"


@lru_cache
def get_settings() -> Settings:
    return Settings()
