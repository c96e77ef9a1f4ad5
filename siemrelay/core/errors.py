from __future__ import annotations


class SiemRelayError(Exception):
    """Base error for siemrelay."""


class FormatError(SiemRelayError):
    """Event cannot be rendered in the target interchange format."""


class UnsupportedValueError(FormatError):
    """Attribute value is not a scalar the target format can carry."""

    def __init__(self, key: str, value: object, fmt: str) -> None:
        super().__init__(f"attribute '{key}' has unsupported {type(value).__name__} value for {fmt}")
        self.key = key
        self.fmt = fmt


class DeliveryError(SiemRelayError):
    """Outbound delivery failure."""

    def __init__(self, reason: str, *, http_status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.http_status = http_status


class TransientDeliveryError(DeliveryError):
    """Timeout, connection failure, HTTP 429 or 5xx; retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Receiver rejected the request (4xx other than 429); never retried."""


class ConfigurationMissingError(DeliveryError):
    """Endpoint disabled or deleted; pending attempts are cancelled."""


class DeadLetterNotFoundError(SiemRelayError):
    """No dead letter exists for the job in the caller's tenant."""


class EventConflictError(SiemRelayError):
    """Event id already stored for another tenant or with different content."""

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"event '{event_id}' conflicts with a stored event: {reason}")
        self.event_id = event_id
        self.reason = reason
