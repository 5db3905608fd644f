from __future__ import annotations


class NotifyPipeError(Exception):
    """Base error for notifypipe."""


class ConfigurationError(NotifyPipeError):
    """Missing or invalid startup configuration; the pipeline must not start."""


class JobStoreError(NotifyPipeError):
    """Stored job row could not be read as a valid record."""


class InvalidTransitionError(NotifyPipeError):
    """Requested job status change is not allowed by the state machine."""


class QueueError(NotifyPipeError):
    """Work queue substrate failure or corrupt queued payload."""


class DispatchError(NotifyPipeError):
    """Provider dispatch failure raised instead of returned as a result."""

    retryable: bool = True


class ProviderConfigError(DispatchError):
    """Provider credentials or sender identity missing; retrying cannot help."""

    retryable = False


class WebhookVerificationError(NotifyPipeError):
    """Webhook request rejected before any event was processed."""

    def __init__(self, message: str, *, reason: str = "signature_mismatch") -> None:
        super().__init__(message)
        self.reason = reason
