from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest

from siemrelay.core.errors import FormatError, UnsupportedValueError
from siemrelay.domain.events import DeliveryFormat, EventKind, NotificationEvent
from siemrelay.services.delivery.formats import (
    ProductIdentity,
    encode,
    encode_cef,
    encode_leef,
    render_body,
)


IDENTITY = ProductIdentity(vendor="Acme", product="Sandbox", version="2.1")


def _event(**overrides) -> NotificationEvent:
    fields = {
        "id": "evt-1",
        "tenant_id": "t1",
        "kind": EventKind.VERDICT,
        "severity": 7,
        "subject": "invoice.pdf",
        "attributes": {"verdict": "malicious", "score": 97},
        "created_at": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return NotificationEvent(**fields)


def test_cef_header_has_seven_pipe_delimited_fields() -> None:
    # A CEF record is seven header fields followed by the extension.
    line = encode_cef(_event(), IDENTITY)
    parts = line.split("|")
    assert len(parts) >= 7
    assert parts[:7] == ["CEF:0", "Acme", "Sandbox", "2.1", "verdict", "Verdict invoice.pdf", "7"]
    extension = parts[7]
    assert extension.startswith("externalId=evt-1 rt=")
    assert "verdict=malicious" in extension
    assert "score=97" in extension


def test_cef_escapes_pipes_backslashes_and_equals() -> None:
    # Reserved characters in values must not split fields.
    line = encode_cef(_event(subject="a|b", attributes={"path": "C:\\tmp\\x", "expr": "k=v"}), IDENTITY)
    assert "Verdict a\\|b" in line
    assert "path=C:\\\\tmp\\\\x" in line
    assert "expr=k\\=v" in line
    assert len(line.split("|")) >= 7


def test_cef_renders_newlines_as_escape_sequence() -> None:
    line = encode_cef(_event(attributes={"note": "line1\nline2"}), IDENTITY)
    assert "\n" not in line
    assert "note=line1\\nline2" in line


def test_cef_extension_keys_are_sanitized() -> None:
    line = encode_cef(_event(attributes={"file name": "x", "sha-256": "abc"}), IDENTITY)
    assert "file_name=x" in line
    assert "sha_256=abc" in line


def test_cef_colliding_keys_stay_unique() -> None:
    # Sanitized duplicates get a suffix; clashes with encoder-owned fields get a prefix.
    line = encode_cef(_event(attributes={"a b": "1", "a_b": "2", "rt": "3", "externalId": "4"}), IDENTITY)
    extension = line.split("|")[7]
    keys = [pair.split("=", 1)[0] for pair in extension.split(" ")]
    assert keys == ["externalId", "rt", "a_b", "a_b_2", "attr_rt", "attr_externalId"]
    assert "a_b_2=2" in extension
    assert "attr_rt=3" in extension


def test_leef_reserved_keys_are_not_shadowed() -> None:
    line = encode_leef(_event(attributes={"sev": "low", "resource": "other", "sev ": "x"}), IDENTITY)
    pairs = line.split("|")[5].split("\t")
    keys = [pair.split("=", 1)[0] for pair in pairs]
    assert len(keys) == len(set(keys))
    assert pairs[0] == "sev=7"
    assert "attr_sev=low" in pairs
    assert "attr_resource=other" in pairs
    assert "attr_sev_2=x" in pairs


def test_leef_header_and_tab_delimited_attributes() -> None:
    # LEEF carries five header fields and tab-separated key=value pairs.
    line = encode_leef(_event(kind=EventKind.ALERT), IDENTITY)
    parts = line.split("|")
    assert len(parts) >= 5
    assert parts[:5] == ["LEEF:1.0", "Acme", "Sandbox", "2.1", "alert"]
    attributes = parts[5].split("\t")
    assert attributes[0] == "sev=7"
    assert attributes[1].startswith("devTime=")
    assert "externalId=evt-1" in attributes
    assert "resource=invoice.pdf" in attributes
    assert attributes[-2:] == ["verdict=malicious", "score=97"]


def test_leef_escapes_embedded_tabs() -> None:
    line = encode_leef(_event(attributes={"cmd": "a\tb"}), IDENTITY)
    assert "cmd=a\\tb" in line


@pytest.mark.parametrize("fmt", [DeliveryFormat.CEF, DeliveryFormat.LEEF])
def test_nested_attribute_is_rejected_by_line_formats(fmt: DeliveryFormat) -> None:
    # Line formats only carry scalars.
    event = _event(attributes={"iocs": {"hash": "abc"}})
    with pytest.raises(UnsupportedValueError) as excinfo:
        encode(event, fmt, identity=IDENTITY)
    assert excinfo.value.key == "iocs"
    assert excinfo.value.fmt == fmt.value


def test_json_keeps_nested_attributes_and_order() -> None:
    event = _event(attributes={"z": 1, "a": {"nested": [1, 2]}, "m": None})
    document = json.loads(encode(event, DeliveryFormat.JSON, identity=IDENTITY))
    assert list(document["attributes"]) == ["z", "a", "m"]
    assert document["attributes"]["a"] == {"nested": [1, 2]}
    assert document["id"] == "evt-1"
    assert document["kind"] == "verdict"


def test_json_rejects_non_finite_numbers() -> None:
    with pytest.raises(UnsupportedValueError):
        encode(_event(attributes={"score": float("nan")}), DeliveryFormat.JSON, identity=IDENTITY)


def test_datetime_and_bool_scalars_render_canonically() -> None:
    moment = datetime(2026, 10, 1, 8, 30, tzinfo=timezone.utc)
    line = encode_cef(_event(attributes={"seen": moment, "blocked": True}), IDENTITY)
    assert "seen=2026-10-01T08:30:00+00:00" in line
    assert "blocked=true" in line


def test_unknown_format_raises_format_error() -> None:
    with pytest.raises(FormatError):
        encode(_event(), "syslog", identity=IDENTITY)


def test_render_body_embeds_line_format_next_to_raw_fields() -> None:
    # Receivers get the raw event plus the formatted line under the format's key.
    body = json.loads(render_body(_event(), DeliveryFormat.CEF, identity=IDENTITY))
    assert body["id"] == "evt-1"
    assert body["cef"].startswith("CEF:0|Acme|Sandbox|2.1|")
    leef_body = json.loads(render_body(_event(), DeliveryFormat.LEEF, identity=IDENTITY))
    assert leef_body["leef"].startswith("LEEF:1.0|")
    json_body = json.loads(render_body(_event(), DeliveryFormat.JSON, identity=IDENTITY))
    assert "cef" not in json_body and "leef" not in json_body


def test_encoding_is_deterministic() -> None:
    event = _event()
    assert render_body(event, DeliveryFormat.LEEF, identity=IDENTITY) == render_body(
        event, DeliveryFormat.LEEF, identity=IDENTITY
    )
