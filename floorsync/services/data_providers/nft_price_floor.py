"""NFT Price Floor API client (RapidAPI)."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from floorsync.core.config import Settings
from floorsync.core.data_helpers import normalize_timestamp, safe_float, safe_int
from floorsync.core.exceptions import TransientFetchError, classify_status
from floorsync.core.logging import get_logger
from floorsync.services.data_providers.base import EntitySnapshot, RawPricePoint


logger = get_logger("services.nft_price_floor")


def _parse_project(item: dict[str, Any]) -> EntitySnapshot | None:
    slug = item.get("slug")
    if not slug:
        return None
    stats = item.get("stats") or {}
    return EntitySnapshot(
        slug=slug,
        name=item.get("name") or slug,
        rank=safe_int(item.get("ranking")),
        market_cap=safe_float(stats.get("floorCapUsd")),
        total_supply=safe_int(stats.get("totalSupply")),
        owners=safe_int(stats.get("totalOwners")),
        image=item.get("imageBlur") or item.get("image"),
    )


def _parse_point(item: dict[str, Any]) -> RawPricePoint:
    return RawPricePoint(
        timestamp=normalize_timestamp(item.get("timestamp")),
        floor_native=safe_float(item.get("lowestNative")),
        floor_usd=safe_float(item.get("lowestUsd")),
        volume_native=safe_float(item.get("volumeNative")),
        volume_usd=safe_float(item.get("volumeUsd")),
        sales_count=safe_int(item.get("salesCount")),
    )


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    seconds = safe_float(value)
    if seconds is None:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return max(0.0, seconds)


def _as_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


class NFTPriceFloorClient:
    """
    Async client for the price-floor API.

    Implements both MarketCapProvider and PriceHistoryProvider. HTTP errors
    are mapped to TransientFetchError (timeouts, network, 408/429/5xx) or
    FatalFetchError (other 4xx).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_host: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        on_response_headers: Callable[[Mapping[str, str]], None] | None = None,
    ):
        self._on_response_headers = on_response_headers
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "X-RapidAPI-Key": api_key,
                "X-RapidAPI-Host": api_host,
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        if not api_key:
            logger.warning("RAPIDAPI_KEY not configured, upstream will reject requests")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        on_response_headers: Callable[[Mapping[str, str]], None] | None = None,
    ) -> "NFTPriceFloorClient":
        return cls(
            base_url=settings.api_base_url,
            api_key=settings.rapidapi_key,
            api_host=settings.rapidapi_host,
            timeout=settings.external_api_timeout,
            on_response_headers=on_response_headers,
        )

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
            if self._on_response_headers is not None:
                self._on_response_headers(response.headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as exc:
            logger.warning(f"Timeout calling {path}")
            raise TransientFetchError(f"Timeout calling {path}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            retry_after = parse_retry_after(exc.response.headers.get("retry-after"))
            logger.warning(f"Price-floor API returned {status} for {path}")
            raise classify_status(
                status, f"HTTP {status} from {path}", retry_after=retry_after
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(f"Request to {path} failed: {exc}")
            raise TransientFetchError(f"Network error calling {path}: {exc}") from exc
        except ValueError as exc:
            raise TransientFetchError(f"Malformed JSON from {path}") from exc

    async def fetch_all_entities(self) -> list[EntitySnapshot]:
        """Fetch every project with its market-cap stats."""
        payload = await self._get_json("/projects")
        entities = [e for e in (_parse_project(i) for i in _as_list(payload)) if e]
        logger.info(f"Fetched {len(entities)} collections from /projects")
        return entities

    async def fetch_price_history(
        self,
        slug: str,
        granularity: str,
        start_ts: int,
        end_ts: int,
    ) -> list[RawPricePoint]:
        """Fetch floor-price history for one collection."""
        payload = await self._get_json(
            f"/projects/{slug}/history/pricefloor/{granularity}",
            params={"start": start_ts, "end": end_ts},
        )
        points = [_parse_point(item) for item in _as_list(payload)]
        logger.debug(f"Fetched {len(points)} points for {slug}")
        return points

    async def aclose(self) -> None:
        await self._client.aclose()
