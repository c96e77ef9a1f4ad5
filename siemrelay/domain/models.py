from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere so the schema also runs on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite cannot autoincrement BIGINT primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on storage; values are normalized to UTC on the way in
    and re-stamped as UTC on the way out so comparisons stay aware-vs-aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist a stable event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized; secrets never reach audit rows.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class NotificationEventRow(Base):
    __tablename__ = "notification_events"

    # Producer-assigned id; inserts are idempotent on it.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)
    severity: Mapped[int] = mapped_column(Integer)
    subject: Mapped[str] = mapped_column(String)
    # Stored as an ordered list of [key, value] pairs so attribute order survives JSON round trips.
    attributes_json: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"
    __table_args__ = (
        UniqueConstraint("tenant_id", "url", "format", name="uq_webhook_endpoints_tenant_url_format"),
        Index("ix_webhook_endpoints_tenant_enabled", "tenant_id", "enabled"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    url: Mapped[str] = mapped_column(String(1024))
    format: Mapped[str] = mapped_column(String(16))
    signing_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Optional receiver authentication alongside the HMAC signature.
    auth_type: Mapped[str] = mapped_column(String(16), default="none")
    auth_credentials_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Per-endpoint backoff overrides; the attempt ceiling stays deployment-wide.
    retry_config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Health stamps written by the dispatcher; configuration fields are never touched by delivery.
    last_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now()
    )


class DeliveryJob(Base):
    __tablename__ = "delivery_jobs"
    __table_args__ = (
        UniqueConstraint("delivery_key", name="uq_delivery_jobs_delivery_key"),
        Index("ix_delivery_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_delivery_jobs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, ForeignKey("notification_events.id"), index=True)
    # Plain column without FK so deleting an endpoint keeps job and dead-letter history.
    endpoint_id: Mapped[str] = mapped_column(String, index=True)
    # sha256(event_id:endpoint_id) for fan-out jobs; unique per resubmission.
    delivery_key: Mapped[str] = mapped_column(String)
    # Format at job creation; each attempt re-reads the endpoint's current format.
    format: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # Last scheduled inter-attempt delay; the next delay may never be shorter.
    last_backoff_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resubmitted_from_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class DeliveryAttempt(Base):
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("job_id", "attempt_number", name="uq_delivery_attempts_job_attempt"),
    )

    # Append-only attempt log; the unique key rejects duplicate attempt numbers from racing workers.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("delivery_jobs.id"), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # Null for cancelled attempts: nothing was sent.
    executed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime] = mapped_column(UTCDateTime)
    outcome: Mapped[str] = mapped_column(String(32))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class DeadLetter(Base):
    __tablename__ = "dead_letters"
    __table_args__ = (Index("ix_dead_letters_tenant_created", "tenant_id", "created_at"),)

    # Keyed by job id: a job can be dead-lettered at most once.
    job_id: Mapped[str] = mapped_column(String, ForeignKey("delivery_jobs.id"), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    endpoint_id: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    attempts_made: Mapped[int] = mapped_column(Integer)
    last_outcome: Mapped[str] = mapped_column(String(32))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
