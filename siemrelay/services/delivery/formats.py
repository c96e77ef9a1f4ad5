"""Render notification events as CEF, LEEF or JSON.

Every function here is pure: the same event, format and product identity
always produce the same string, which keeps payload hashes and signatures
stable across redeliveries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import math
import re
from typing import Any, Callable, Iterable

from siemrelay.core.config import get_settings
from siemrelay.core.errors import FormatError, UnsupportedValueError
from siemrelay.domain.events import DeliveryFormat, NotificationEvent


CEF_VERSION = "0"
LEEF_VERSION = "1.0"
LEEF_DELIMITER = "\t"

_INVALID_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.]")
_CEF_RESERVED_KEYS = frozenset({"externalId", "rt"})
_LEEF_RESERVED_KEYS = frozenset({"sev", "devTime", "externalId", "resource"})


@dataclass(frozen=True)
class ProductIdentity:
    vendor: str
    product: str
    version: str


def default_identity() -> ProductIdentity:
    settings = get_settings()
    return ProductIdentity(
        vendor=settings.siem_vendor,
        product=settings.siem_product,
        version=settings.siem_product_version,
    )


def _escape(value: str) -> str:
    # Backslash first so later escapes are not doubled.
    escaped = value.replace("\\", "\\\\").replace("|", "\\|").replace("=", "\\=")
    return escaped.replace("\r\n", "\\n").replace("\n", "\\n").replace("\r", "\\n")


def _escape_leef(value: str) -> str:
    return _escape(value).replace("\t", "\\t")


def _extension_key(key: str) -> str:
    normalized = _INVALID_KEY_CHARS.sub("_", key.strip())
    return normalized or "_"


def _extension_keys(keys: Iterable[str], reserved: frozenset[str]) -> list[str]:
    """Sanitize attribute keys so every extension key in one record is unique.

    Keys that clash with a field the encoder writes itself get an ``attr_``
    prefix; later duplicates get a numeric suffix in insertion order.
    """
    used = set(reserved)
    resolved: list[str] = []
    for key in keys:
        base = _extension_key(key)
        if base in reserved:
            base = f"attr_{base}"
        candidate = base
        suffix = 2
        while candidate in used:
            candidate = f"{base}_{suffix}"
            suffix += 1
        used.add(candidate)
        resolved.append(candidate)
    return resolved


def _epoch_ms(value: datetime) -> int:
    return int(value.astimezone(timezone.utc).timestamp() * 1000)


def _scalar_text(key: str, value: Any, fmt: DeliveryFormat) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).isoformat()
    raise UnsupportedValueError(key, value, fmt.value)


def _json_value(key: str, value: Any) -> Any:
    # Validate and normalize one attribute for lossless JSON output.
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise UnsupportedValueError(key, value, DeliveryFormat.JSON.value)
        return value
    if isinstance(value, datetime):
        return _scalar_text(key, value, DeliveryFormat.JSON)
    if isinstance(value, dict):
        return {str(k): _json_value(f"{key}.{k}", v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(f"{key}[{index}]", item) for index, item in enumerate(value)]
    raise UnsupportedValueError(key, value, DeliveryFormat.JSON.value)


def event_document(event: NotificationEvent) -> dict[str, Any]:
    """Return the event's raw fields with attributes validated for JSON."""
    document = event.raw_fields()
    document["attributes"] = {key: _json_value(key, value) for key, value in event.attributes.items()}
    return document


def encode_cef(event: NotificationEvent, identity: ProductIdentity) -> str:
    name = f"{event.kind.label} {event.subject}".strip()
    header = [
        f"CEF:{CEF_VERSION}",
        _escape(identity.vendor),
        _escape(identity.product),
        _escape(identity.version),
        _escape(event.kind.value),
        _escape(name),
        str(event.severity),
    ]
    extension = [f"externalId={_escape(event.id)}", f"rt={_epoch_ms(event.created_at)}"]
    keys = _extension_keys(event.attributes, _CEF_RESERVED_KEYS)
    for name, (key, value) in zip(keys, event.attributes.items()):
        extension.append(f"{name}={_escape(_scalar_text(key, value, DeliveryFormat.CEF))}")
    return "|".join(header) + "|" + " ".join(extension)


def encode_leef(event: NotificationEvent, identity: ProductIdentity) -> str:
    header = [
        f"LEEF:{LEEF_VERSION}",
        _escape_leef(identity.vendor),
        _escape_leef(identity.product),
        _escape_leef(identity.version),
        _escape_leef(event.kind.value),
    ]
    extension = [
        f"sev={event.severity}",
        f"devTime={_epoch_ms(event.created_at)}",
        f"externalId={_escape_leef(event.id)}",
        f"resource={_escape_leef(event.subject)}",
    ]
    keys = _extension_keys(event.attributes, _LEEF_RESERVED_KEYS)
    for name, (key, value) in zip(keys, event.attributes.items()):
        extension.append(f"{name}={_escape_leef(_scalar_text(key, value, DeliveryFormat.LEEF))}")
    return "|".join(header) + "|" + LEEF_DELIMITER.join(extension)


def encode_json(event: NotificationEvent, identity: ProductIdentity) -> str:
    # Preserve attribute insertion order; it is part of the event.
    return json.dumps(event_document(event), separators=(",", ":"), ensure_ascii=False)


_ENCODERS: dict[DeliveryFormat, Callable[[NotificationEvent, ProductIdentity], str]] = {
    DeliveryFormat.CEF: encode_cef,
    DeliveryFormat.LEEF: encode_leef,
    DeliveryFormat.JSON: encode_json,
}

_unmapped = set(DeliveryFormat) - set(_ENCODERS)
if _unmapped:
    raise RuntimeError(f"missing encoders for formats: {sorted(item.value for item in _unmapped)}")


def encode(event: NotificationEvent, fmt: DeliveryFormat | str, *, identity: ProductIdentity | None = None) -> str:
    """Encode ``event`` in ``fmt``; raises FormatError when it cannot be represented."""
    try:
        target = DeliveryFormat(fmt)
    except ValueError as exc:
        raise FormatError(f"unknown delivery format: {fmt}") from exc
    return _ENCODERS[target](event, identity or default_identity())


def render_body(event: NotificationEvent, fmt: DeliveryFormat | str, *, identity: ProductIdentity | None = None) -> bytes:
    """Build the outbound HTTP body for one endpoint.

    The body always carries the event's raw fields; SIEM formats add a
    top-level key named after the format holding the encoded string.
    """
    target = DeliveryFormat(fmt)
    document = event_document(event)
    if target is not DeliveryFormat.JSON:
        document[target.value] = encode(event, target, identity=identity)
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
