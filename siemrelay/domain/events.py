from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import uuid4


class EventKind(str, Enum):
    VERDICT = "verdict"
    ALERT = "alert"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class DeliveryFormat(str, Enum):
    CEF = "cef"
    LEEF = "leef"
    JSON = "json"


class AuthType(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"


def _utc(value: datetime) -> datetime:
    # Treat naive timestamps as UTC so encoded timestamps never depend on host timezone.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class NotificationEvent:
    """A verdict or alert that must reach every enabled SIEM endpoint of its tenant.

    Events are immutable once created. ``attributes`` keeps insertion order,
    which encoders rely on to render extension fields deterministically.
    """

    tenant_id: str
    kind: EventKind
    severity: int
    subject: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        object.__setattr__(self, "kind", EventKind(self.kind))
        if isinstance(self.severity, bool) or not isinstance(self.severity, int):
            raise ValueError("severity must be an integer")
        if not 0 <= self.severity <= 10:
            raise ValueError("severity must be between 0 and 10")
        for key in self.attributes:
            if not isinstance(key, str) or not key:
                raise ValueError("attribute keys must be non-empty strings")
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "created_at", _utc(self.created_at))

    def raw_fields(self) -> dict[str, Any]:
        # Plain-dict view used for persistence and for the JSON body sent to receivers.
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "kind": self.kind.value,
            "severity": self.severity,
            "subject": self.subject,
            "attributes": dict(self.attributes),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class WebhookEndpointConfig:
    """Point-in-time snapshot of one tenant webhook endpoint."""

    tenant_id: str
    endpoint_id: str
    url: str
    format: DeliveryFormat
    signing_secret: str | None
    enabled: bool
    updated_at: datetime | None
    name: str = ""
    auth_type: AuthType = AuthType.NONE
    auth_credentials: Mapping[str, str] = field(default_factory=dict)
    retry_config: Mapping[str, int] = field(default_factory=dict)
