"""Upstream measures client used by backfill.

Every request carries an explicit timeout. Timeouts, transport errors and
5xx responses raise TransientPipelineError (retry later); other non-2xx
responses raise ProviderError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .errors import ProviderError, TransientPipelineError
from .utils import parse_iso_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSample:
    """One body measurement returned by a provider."""

    kind: str
    measured_at: str
    timezone: str
    values: dict[str, Any]
    group_id: str | None = None


class MeasuresClient(Protocol):
    async def fetch_measures(
        self, user_id: str, start_iso: str, end_iso: str
    ) -> list[ProviderSample]: ...


def parse_samples(body: Any) -> list[ProviderSample]:
    """Parse {"measures": [{type, measured_at, timezone?, group_id?, ...values}]}."""
    if not isinstance(body, dict) or not isinstance(body.get("measures"), list):
        raise ProviderError("MALFORMED_RESPONSE", "expected an object with a 'measures' list")
    samples = []
    for item in body["measures"]:
        if not isinstance(item, dict):
            raise ProviderError("MALFORMED_RESPONSE", "measure entries must be objects")
        kind = item.get("type")
        measured_at = item.get("measured_at")
        if not isinstance(kind, str) or parse_iso_datetime(measured_at) is None:
            raise ProviderError("MALFORMED_RESPONSE", f"invalid measure entry: {item!r}")
        values = {
            k: v for k, v in item.items() if k not in ("type", "measured_at", "timezone", "group_id")
        }
        group_id = item.get("group_id")
        samples.append(
            ProviderSample(
                kind=kind,
                measured_at=measured_at,
                timezone=item.get("timezone") or "UTC",
                values=values,
                group_id=None if group_id is None else str(group_id),
            )
        )
    return samples


class ProviderClient:
    def __init__(
        self,
        base_url: str,
        *,
        provider: str,
        timeout_seconds: float,
        api_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.provider = provider
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_measures(
        self, user_id: str, start_iso: str, end_iso: str
    ) -> list[ProviderSample]:
        try:
            resp = await self._client.get(
                f"/v1/users/{user_id}/measures",
                params={"start": start_iso, "end": end_iso},
            )
        except httpx.TimeoutException as exc:
            raise TransientPipelineError(f"{self.provider} measures request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientPipelineError(f"{self.provider} measures request failed: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientPipelineError(
                f"{self.provider} measures request returned {resp.status_code}"
            )
        if resp.status_code != 200:
            raise ProviderError(f"HTTP_{resp.status_code}", resp.text[:500])

        samples = parse_samples(resp.json())
        logger.debug(
            "Fetched %d %s samples (%s..%s)",
            len(samples),
            self.provider,
            start_iso,
            end_iso,
            extra={"oli_user_id": user_id},
        )
        return samples
