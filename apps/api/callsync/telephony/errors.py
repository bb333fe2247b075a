from __future__ import annotations


class TelephonyError(Exception):
    """Base error for the call synchronization domain."""


class EventDecodeError(TelephonyError):
    """Raised when a verified payload cannot be turned into a call event."""

    def __init__(self, event_type: str, reason: str) -> None:
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"cannot decode '{event_type}' event: {reason}")


class IntegrationNotConfiguredError(TelephonyError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(missing)
        super().__init__("OpenPhone integration not fully configured")


class OpenPhoneAPIError(TelephonyError):
    def __init__(self, status_code: int, message: str, details: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(f"{message} (status {status_code})")


class WebhookSignatureError(TelephonyError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"webhook signature rejected: {reason}")


class ArtifactPersistenceError(TelephonyError):
    """Raised when a call session write fails; carries enough context for manual reconciliation."""

    def __init__(self, call_id: str, event_type: str, fields: list[str]) -> None:
        self.call_id = call_id
        self.event_type = event_type
        self.fields = fields
        super().__init__(f"failed to persist {', '.join(fields)} for call {call_id} ({event_type})")
