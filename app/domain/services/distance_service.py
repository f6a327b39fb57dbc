"""
Distance Service - road distance between two coordinates

Two providers share one contract, ``distance_km(lat1, lng1, lat2, lng2)``:

- ``MapboxDistanceProvider`` asks the Mapbox Directions API (httpx, explicit
  timeout, circuit breaker).
- ``StraightLineDistanceProvider`` estimates road distance as haversine times
  an empirical multiplier. It never fails.

User-facing paths (quotes, order creation) call ``estimate_distance`` which
falls back to the straight-line estimate on any provider failure or timeout.
Dispatch calls the provider directly and drops only the failing candidate.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from app.core.circuit_breaker import get_distance_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    DistanceProviderError,
    ExternalServiceException,
    NoRouteFoundError,
    ServiceTimeoutError,
)
from app.core.geo import haversine_km
from app.core.logging import get_logger
from app.core.money import round_km

logger = get_logger(__name__)


class DistanceProvider(ABC):
    @abstractmethod
    async def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        """Travel distance in km. Raises ExternalServiceException on failure."""


class StraightLineDistanceProvider(DistanceProvider):
    def __init__(self, multiplier: Optional[float] = None):
        self.multiplier = multiplier if multiplier is not None else settings.STRAIGHT_LINE_MULTIPLIER

    async def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        return straight_line_estimate_km(lat1, lng1, lat2, lng2, self.multiplier)


def straight_line_estimate_km(
    lat1: float, lng1: float, lat2: float, lng2: float, multiplier: Optional[float] = None
) -> float:
    factor = multiplier if multiplier is not None else settings.STRAIGHT_LINE_MULTIPLIER
    return round_km(haversine_km(lat1, lng1, lat2, lng2) * factor)


class MapboxDistanceProvider(DistanceProvider):
    """Mapbox Directions API; coordinates are sent as ``lng,lat`` pairs"""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.DISTANCE_PROVIDER_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.DISTANCE_PROVIDER_TIMEOUT_SECONDS
        self._client = client

    async def _fetch(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        url = f"{self.base_url}/{lng1},{lat1};{lng2},{lat2}"
        params = {"access_token": self.access_token, "overview": "false"}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError("distance_provider", self.timeout_seconds) from e
        except httpx.HTTPError as e:
            raise DistanceProviderError(str(e)) from e

        if response.status_code != 200:
            raise DistanceProviderError.from_response(response)

        try:
            body = response.json()
        except ValueError as e:
            raise DistanceProviderError(
                "routing returned a non-JSON body",
                details={"content_type": response.headers.get("content-type")},
            ) from e
        if not isinstance(body, dict):
            raise DistanceProviderError("routing returned an unexpected body")

        routes = body.get("routes") or []
        if not routes or routes[0].get("distance") is None:
            raise NoRouteFoundError({"code": body.get("code")})
        try:
            meters = float(routes[0]["distance"])
        except (TypeError, ValueError) as e:
            raise DistanceProviderError("routing returned a malformed distance") from e
        return round_km(meters / 1000.0)

    async def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        breaker = get_distance_circuit_breaker()
        return await breaker.execute(self._fetch, lat1, lng1, lat2, lng2)


@dataclass(frozen=True)
class DistanceEstimate:
    km: float
    is_fallback: bool


async def estimate_distance(
    provider: DistanceProvider,
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
) -> DistanceEstimate:
    """Provider distance, or the straight-line estimate if the provider fails or stalls"""
    # תקרה כוללת מעל ה-timeout של httpx - לא לתקוע בקשת משתמש
    deadline = settings.DISTANCE_PROVIDER_TIMEOUT_SECONDS + 1.0
    try:
        km = await asyncio.wait_for(provider.distance_km(lat1, lng1, lat2, lng2), timeout=deadline)
        return DistanceEstimate(km=km, is_fallback=False)
    except (ExternalServiceException, asyncio.TimeoutError) as e:
        logger.warning(
            "ספק מרחקים נכשל - שימוש בהערכת קו אווירי",
            extra_data={"error": str(e)},
        )
        return DistanceEstimate(
            km=straight_line_estimate_km(lat1, lng1, lat2, lng2),
            is_fallback=True,
        )


_default_provider: Optional[DistanceProvider] = None


def get_distance_provider() -> DistanceProvider:
    """Mapbox when a token is configured, straight-line estimate otherwise"""
    global _default_provider
    if _default_provider is None:
        if settings.MAPBOX_ACCESS_TOKEN:
            _default_provider = MapboxDistanceProvider(settings.MAPBOX_ACCESS_TOKEN)
        else:
            logger.info("MAPBOX_ACCESS_TOKEN ריק - מרחקים יחושבו בקו אווירי")
            _default_provider = StraightLineDistanceProvider()
    return _default_provider
