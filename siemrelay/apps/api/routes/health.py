from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from siemrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from siemrelay.apps.api.response import SuccessEnvelope, success_response
from siemrelay.persistence.db import pool_stats
from siemrelay.services.telemetry import counters_snapshot, delivery_latency_stats, external_latency_by_integration

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    delivery_latency_ms: dict[str, float | None]
    endpoint_latency_ms: dict[str, dict[str, float | None]]
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request) -> dict:
    # In-process counters only; each worker process reports its own.
    payload = MetricsResponse(
        counters=counters_snapshot(),
        delivery_latency_ms=delivery_latency_stats(),
        endpoint_latency_ms=external_latency_by_integration(window_s=300),
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
