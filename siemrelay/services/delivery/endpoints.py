from __future__ import annotations

import base64
from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.domain.events import AuthType, DeliveryFormat, WebhookEndpointConfig
from siemrelay.domain.models import WebhookEndpoint


logger = logging.getLogger(__name__)

_RETRY_CONFIG_KEYS = {"backoff_ms", "backoff_max_ms"}
_REQUIRED_CREDENTIALS: dict[AuthType, tuple[str, ...]] = {
    AuthType.NONE: (),
    AuthType.BEARER: ("token",),
    AuthType.BASIC: ("username", "password"),
    AuthType.API_KEY: ("key",),
}
DEFAULT_API_KEY_HEADER = "X-API-Key"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EndpointConfigAdapter(Protocol):
    """Read-only view of tenant endpoint configuration used per attempt."""

    async def current_config(self, tenant_id: str, endpoint_id: str) -> WebhookEndpointConfig | None: ...


def validate_endpoint_url(url: str) -> str:
    # Only absolute HTTP(S) URLs with a host are deliverable.
    normalized = url.strip()
    try:
        parsed = httpx.URL(normalized)
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise ValueError(f"url is not a valid URL: {exc}") from exc
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("url must start with http:// or https://")
    if not parsed.host:
        raise ValueError("url must include a host")
    return normalized


def _validate_format(fmt: str | DeliveryFormat) -> DeliveryFormat:
    try:
        return DeliveryFormat(fmt)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in DeliveryFormat)
        raise ValueError(f"format must be one of: {allowed}") from exc


def _validate_auth(auth_type: str | AuthType, credentials: dict[str, Any] | None) -> tuple[AuthType, dict[str, str] | None]:
    # Require the credential fields each auth scheme needs so misconfiguration fails at write time.
    try:
        resolved = AuthType(auth_type)
    except ValueError as exc:
        raise ValueError(f"unsupported auth_type: {auth_type}") from exc
    if resolved is AuthType.NONE:
        return resolved, None
    if not isinstance(credentials, dict):
        raise ValueError("auth_credentials must be an object")
    normalized = {str(key): str(value) for key, value in credentials.items()}
    missing = [key for key in _REQUIRED_CREDENTIALS[resolved] if not normalized.get(key)]
    if missing:
        raise ValueError(f"auth_credentials missing: {', '.join(missing)}")
    return resolved, normalized


def _validate_retry_config(retry_config: dict[str, Any] | None) -> dict[str, int] | None:
    if retry_config is None:
        return None
    if not isinstance(retry_config, dict):
        raise ValueError("retry_config must be an object")
    normalized: dict[str, int] = {}
    for key, raw in retry_config.items():
        if key not in _RETRY_CONFIG_KEYS:
            raise ValueError(f"unsupported retry_config key: {key}")
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
            raise ValueError(f"retry_config.{key} must be a positive integer")
        normalized[key] = raw
    return normalized or None


def to_config(row: WebhookEndpoint) -> WebhookEndpointConfig:
    return WebhookEndpointConfig(
        tenant_id=row.tenant_id,
        endpoint_id=row.id,
        url=row.url,
        format=DeliveryFormat(row.format),
        signing_secret=row.signing_secret,
        enabled=bool(row.enabled),
        updated_at=row.updated_at,
        name=row.name or "",
        auth_type=AuthType(row.auth_type or AuthType.NONE.value),
        auth_credentials=dict(row.auth_credentials_json or {}),
        retry_config=dict(row.retry_config_json or {}),
    )


def build_auth_headers(config: WebhookEndpointConfig) -> dict[str, str]:
    # Receiver authentication is sent alongside, never instead of, the HMAC signature.
    credentials = config.auth_credentials
    if config.auth_type is AuthType.BEARER:
        return {"Authorization": f"Bearer {credentials['token']}"}
    if config.auth_type is AuthType.BASIC:
        raw = f"{credentials['username']}:{credentials['password']}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
    if config.auth_type is AuthType.API_KEY:
        return {credentials.get("header") or DEFAULT_API_KEY_HEADER: credentials["key"]}
    return {}


class SqlEndpointConfigAdapter:
    """Endpoint adapter backed by the ``webhook_endpoints`` table.

    Every call re-reads the row so a disable committed by another session is
    seen on the very next attempt, even if this session loaded it earlier.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def current_config(self, tenant_id: str, endpoint_id: str) -> WebhookEndpointConfig | None:
        row = (
            await self._session.execute(
                select(WebhookEndpoint)
                .where(WebhookEndpoint.id == endpoint_id, WebhookEndpoint.tenant_id == tenant_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if row is None:
            return None
        return to_config(row)


async def create_endpoint(
    *,
    session: AsyncSession,
    tenant_id: str,
    url: str,
    format: str | DeliveryFormat,
    name: str = "",
    signing_secret: str | None = None,
    enabled: bool = True,
    auth_type: str | AuthType = AuthType.NONE,
    auth_credentials: dict[str, Any] | None = None,
    retry_config: dict[str, Any] | None = None,
) -> WebhookEndpoint:
    # Create a tenant endpoint; the same url+format pair returns the existing row.
    resolved_auth, credentials = _validate_auth(auth_type, auth_credentials)
    now = _utc_now()
    row = WebhookEndpoint(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name.strip(),
        url=validate_endpoint_url(url),
        format=_validate_format(format).value,
        signing_secret=signing_secret or None,
        enabled=bool(enabled),
        auth_type=resolved_auth.value,
        auth_credentials_json=credentials,
        retry_config_json=_validate_retry_config(retry_config),
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = (
            await session.execute(
                select(WebhookEndpoint).where(
                    WebhookEndpoint.tenant_id == tenant_id,
                    WebhookEndpoint.url == row.url,
                    WebhookEndpoint.format == row.format,
                )
            )
        ).scalar_one()
        return existing
    logger.info("webhook_endpoint_created tenant_id=%s endpoint_id=%s format=%s", tenant_id, row.id, row.format)
    return row


async def get_endpoint(*, session: AsyncSession, tenant_id: str, endpoint_id: str) -> WebhookEndpoint | None:
    row = await session.get(WebhookEndpoint, endpoint_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    return row


async def patch_endpoint(
    *,
    session: AsyncSession,
    tenant_id: str,
    endpoint_id: str,
    updates: dict[str, Any],
) -> WebhookEndpoint | None:
    # Apply partial updates in place so endpoint ids stay stable for in-flight jobs.
    row = await get_endpoint(session=session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if row is None:
        return None
    if updates.get("name") is not None:
        row.name = str(updates["name"]).strip()
    if updates.get("url") is not None:
        row.url = validate_endpoint_url(str(updates["url"]))
    if updates.get("format") is not None:
        row.format = _validate_format(updates["format"]).value
    if updates.get("enabled") is not None:
        row.enabled = bool(updates["enabled"])
    if "signing_secret" in updates:
        # Rotation takes effect on the next attempt; an empty value disables signing.
        row.signing_secret = updates["signing_secret"] or None
    if "auth_type" in updates or "auth_credentials" in updates:
        resolved_auth, credentials = _validate_auth(
            updates.get("auth_type") or row.auth_type,
            updates.get("auth_credentials", row.auth_credentials_json),
        )
        row.auth_type = resolved_auth.value
        row.auth_credentials_json = credentials
    if "retry_config" in updates:
        row.retry_config_json = _validate_retry_config(updates["retry_config"])
    row.updated_at = _utc_now()
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ValueError("an endpoint with this url and format already exists") from exc
    await session.refresh(row)
    logger.info(
        "webhook_endpoint_updated tenant_id=%s endpoint_id=%s enabled=%s",
        tenant_id,
        endpoint_id,
        row.enabled,
    )
    return row


async def delete_endpoint(*, session: AsyncSession, tenant_id: str, endpoint_id: str) -> bool:
    row = await get_endpoint(session=session, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if row is None:
        return False
    await session.delete(row)
    await session.commit()
    logger.info("webhook_endpoint_deleted tenant_id=%s endpoint_id=%s", tenant_id, endpoint_id)
    return True


async def list_endpoints(*, session: AsyncSession, tenant_id: str) -> list[WebhookEndpoint]:
    rows = (
        await session.execute(
            select(WebhookEndpoint)
            .where(WebhookEndpoint.tenant_id == tenant_id)
            .order_by(WebhookEndpoint.created_at.asc(), WebhookEndpoint.id.asc())
        )
    ).scalars().all()
    return list(rows)


async def list_enabled_endpoints(*, session: AsyncSession, tenant_id: str) -> list[WebhookEndpointConfig]:
    # Every enabled endpoint, in creation order; fan-out must not skip any.
    query = (
        select(WebhookEndpoint)
        .where(WebhookEndpoint.tenant_id == tenant_id, WebhookEndpoint.enabled.is_(True))
        .order_by(WebhookEndpoint.created_at.asc(), WebhookEndpoint.id.asc())
    )
    rows = (await session.execute(query)).scalars().all()
    return [to_config(row) for row in rows]


async def record_endpoint_outcome(
    *,
    session: AsyncSession,
    endpoint_id: str,
    success: bool,
    at: datetime,
) -> None:
    # Stamp health columns only; configuration fields and updated_at are left alone.
    values = {"last_success_at": at} if success else {"last_failure_at": at}
    await session.execute(update(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id).values(**values))
