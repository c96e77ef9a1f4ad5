from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol

import httpx


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body_preview: str = ""


class DeliveryTransport(Protocol):
    """One outbound POST; network failures raise httpx errors."""

    async def post(
        self,
        url: str,
        *,
        content: bytes,
        headers: Mapping[str, str],
        timeout_s: float,
    ) -> TransportResponse: ...


class HttpxTransport:
    # Wrap httpx.AsyncClient; tests pass an ASGITransport or MockTransport instead of the network.
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def post(
        self,
        url: str,
        *,
        content: bytes,
        headers: Mapping[str, str],
        timeout_s: float,
    ) -> TransportResponse:
        async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
            response = await client.post(url, content=content, headers=dict(headers))
        return TransportResponse(
            status_code=int(response.status_code),
            headers={str(k): str(v) for k, v in response.headers.items()},
            body_preview=response.text[:512] if response.text else "",
        )
