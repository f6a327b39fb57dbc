"""
Dispatch Service - eligible riders for a pickup point

Pipeline:
1. spatial pre-filter through the rider directory (hard maximum radius)
2. eligibility: service type supported, car tier compatible
3. straight-line distance already beyond the rider's effective radius ->
   dropped without calling the distance provider (road >= straight line)
4. road distance per remaining candidate, concurrently; a failing
   candidate is dropped alone
5. keep distance <= effective radius, sort ascending
"""
import asyncio
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.money import round_km
from app.db.models.order import Order, ServiceType
from app.db.models.user import User, VehicleType
from app.domain.services.distance_service import DistanceProvider
from app.domain.services.event_publisher import (
    EventPublisher,
    EventType,
    PublishResult,
    fan_out,
)
from app.domain.services.fare_config_service import FareConfig
from app.domain.services.rider_directory import NearbyRider, RiderDirectory

logger = get_logger(__name__)

_GENERIC_CAR = VehicleType.CAR.value


@dataclass(frozen=True)
class RiderMatch:
    rider_id: int
    name: Optional[str]
    vehicle_type: Optional[str]
    distance_km: float
    effective_radius_km: float
    lat: float
    lng: float


def vehicle_compatible(
    service_type: ServiceType,
    preferred_vehicle_type: Optional[str],
    rider_vehicle_type: Optional[str],
) -> bool:
    """
    Car-tier rule for ride orders: a specific tier needs that tier, the
    generic "car" takes any car tier, no preference takes anyone.
    """
    if service_type != ServiceType.RIDE or not preferred_vehicle_type:
        return True
    if not preferred_vehicle_type.startswith("car"):
        return True
    if not rider_vehicle_type or not rider_vehicle_type.startswith("car"):
        return False
    if preferred_vehicle_type == _GENERIC_CAR:
        return True
    return rider_vehicle_type == preferred_vehicle_type


def rider_serves(rider: User, service_type: ServiceType, preferred_vehicle_type: Optional[str]) -> bool:
    vehicle = rider.vehicle_type.value if rider.vehicle_type else None
    return (
        service_type.value in rider.services
        and vehicle_compatible(service_type, preferred_vehicle_type, vehicle)
    )


class DispatchService:
    def __init__(
        self,
        db: AsyncSession,
        distance_provider: DistanceProvider,
        config: FareConfig,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.directory = RiderDirectory(db)
        self.distance_provider = distance_provider
        self.config = config
        self.publisher = publisher

    async def _road_distance(
        self,
        candidate: NearbyRider,
        lat: float,
        lng: float,
        semaphore: asyncio.Semaphore,
    ) -> Optional[float]:
        async with semaphore:
            try:
                return await self.distance_provider.distance_km(candidate.lat, candidate.lng, lat, lng)
            except Exception as e:
                logger.warning(
                    "Distance lookup failed - candidate skipped",
                    extra_data={"rider_id": candidate.rider.id, "error": str(e)},
                )
                return None

    async def find_eligible_riders(
        self,
        lat: float,
        lng: float,
        service_type: ServiceType,
        preferred_vehicle_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RiderMatch]:
        hard_max = settings.DISPATCH_HARD_MAX_RADIUS_KM
        nearby = await self.directory.find_online_near(lat, lng, hard_max)

        candidates: list[tuple[NearbyRider, float]] = []
        for entry in nearby:
            rider = entry.rider
            if not rider_serves(rider, service_type, preferred_vehicle_type):
                continue
            vehicle = rider.vehicle_type.value if rider.vehicle_type else None
            radius = self.config.effective_radius_km(rider.search_radius_km, vehicle)
            if entry.straight_line_km > radius:
                continue
            candidates.append((entry, radius))

        semaphore = asyncio.Semaphore(settings.DISPATCH_MAX_CONCURRENCY)
        distances = await asyncio.gather(
            *(self._road_distance(entry, lat, lng, semaphore) for entry, _ in candidates)
        )

        matches = []
        for (entry, radius), km in zip(candidates, distances):
            if km is None or km > radius:
                continue
            rider = entry.rider
            matches.append(RiderMatch(
                rider_id=rider.id,
                name=rider.name,
                vehicle_type=rider.vehicle_type.value if rider.vehicle_type else None,
                distance_km=round_km(km),
                effective_radius_km=radius,
                lat=entry.lat,
                lng=entry.lng,
            ))

        matches.sort(key=lambda m: (m.distance_km, m.rider_id))
        logger.info(
            "Dispatch candidates resolved",
            extra_data={
                "service_type": service_type.value,
                "spatial_hits": len(nearby),
                "distance_checks": len(candidates),
                "matches": len(matches),
            },
        )
        return matches[:limit] if limit else matches

    async def preview_nearby_riders(
        self,
        lat: float,
        lng: float,
        service_type: ServiceType,
        preferred_vehicle_type: Optional[str] = None,
    ) -> list[RiderMatch]:
        """Customer-facing preview, capped at NEARBY_PREVIEW_LIMIT"""
        return await self.find_eligible_riders(
            lat, lng, service_type, preferred_vehicle_type, limit=settings.NEARBY_PREVIEW_LIMIT
        )

    async def notify_new_order(self, order: Order) -> PublishResult:
        """Fan out ``new_order_available`` to every matching rider, best-effort"""
        if self.publisher is None:
            return PublishResult()
        try:
            matches = await self.find_eligible_riders(
                order.pickup_lat, order.pickup_lng, order.service_type, order.preferred_vehicle_type
            )
        except Exception as e:
            logger.error(
                "Dispatch lookup failed - no riders notified",
                extra_data={"order_id": order.id, "error": str(e)},
                exc_info=True,
            )
            return PublishResult(failed=1, errors=[str(e)])

        by_rider = {m.rider_id: m for m in matches}
        pickup = {"address": order.pickup_address, "lat": order.pickup_lat, "lng": order.pickup_lng}

        def payload(rider_id: int) -> dict:
            return {
                "order_id": order.id,
                "order_code": order.order_code,
                "distance_km": by_rider[rider_id].distance_km,
                "price": order.price,
                "service_type": order.service_type.value,
                "pickup": pickup,
            }

        result = await fan_out(self.publisher, by_rider.keys(), EventType.NEW_ORDER_AVAILABLE, payload)
        logger.info(
            "New order fan-out finished",
            extra_data={
                "order_id": order.id,
                "notified": result.delivered,
                "failed": result.failed,
            },
        )
        return result
