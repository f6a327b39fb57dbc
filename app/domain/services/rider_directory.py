"""
Rider Directory - online riders and their last known positions

Lookups go through the indexed ``(online, geohash)`` pair: the search circle
is turned into the set of geohash cells covering it, the database returns
only riders inside those cells, and a haversine check trims the corners.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import AccountBlockedError, PermissionDeniedError, ValidationException
from app.core.geo import covering_geohashes, encode_geohash, haversine_km
from app.core.logging import get_logger
from app.db.models.rider_location import RiderLocation
from app.db.models.user import User, UserRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class NearbyRider:
    rider: User
    lat: float
    lng: float
    straight_line_km: float


class RiderDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_location(self, rider_id: int) -> Optional[RiderLocation]:
        result = await self.db.execute(
            select(RiderLocation).where(RiderLocation.rider_id == rider_id)
        )
        return result.scalar_one_or_none()

    async def update_presence(
        self,
        rider: User,
        lat: float,
        lng: float,
        online: bool = True,
    ) -> RiderLocation:
        """Record the rider's position and availability. Blocked riders cannot go online."""
        if rider.role != UserRole.RIDER:
            raise PermissionDeniedError("Only riders report presence")
        if online and rider.is_blocked:
            raise AccountBlockedError(rider.id, rider.blocked_reason)
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationException("Invalid coordinates", field="location")

        location = await self.get_location(rider.id)
        if location is None:
            location = RiderLocation(rider_id=rider.id, lat=lat, lng=lng)
            self.db.add(location)
        location.lat = lat
        location.lng = lng
        location.geohash = encode_geohash(lat, lng)
        location.online = online
        location.updated_at = utcnow()
        await self.db.commit()

        logger.debug(
            "Rider presence updated",
            extra_data={"rider_id": rider.id, "online": online, "geohash": location.geohash},
        )
        return location

    async def set_offline(self, rider_id: int) -> None:
        """Force offline within the caller's transaction"""
        await self.db.execute(
            update(RiderLocation)
            .where(RiderLocation.rider_id == rider_id)
            .values(online=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def find_online_near(self, lat: float, lng: float, radius_km: float) -> list[NearbyRider]:
        """Online, unblocked, active riders within ``radius_km`` straight-line distance"""
        cells = covering_geohashes(lat, lng, radius_km)
        result = await self.db.execute(
            select(User, RiderLocation.lat, RiderLocation.lng)
            .join(RiderLocation, RiderLocation.rider_id == User.id)
            .where(
                RiderLocation.online.is_(True),
                RiderLocation.geohash.in_(cells),
                User.role == UserRole.RIDER,
                User.is_active.is_(True),
                User.payment_blocked.is_(False),
                User.account_deactivated.is_(False),
            )
        )
        nearby = []
        for rider, rider_lat, rider_lng in result.all():
            km = haversine_km(lat, lng, rider_lat, rider_lng)
            if km <= radius_km:
                nearby.append(NearbyRider(rider=rider, lat=rider_lat, lng=rider_lng, straight_line_km=km))
        nearby.sort(key=lambda n: n.straight_line_km)
        return nearby
