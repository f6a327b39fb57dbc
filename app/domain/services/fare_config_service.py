"""
Fare Config Service - runtime-tunable fare table, commission and radius limits

Values come from the ``platform_settings`` row when ``use_database_rates`` is
on, otherwise from the environment defaults in ``Settings``.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.models.platform_settings import PlatformSettings
from app.db.models.user import VehicleType

logger = get_logger(__name__)

DEFAULT_VEHICLE_MULTIPLIERS: dict[str, float] = {
    VehicleType.BICYCLE.value: 0.8,
    VehicleType.MOTORBIKE.value: 1.0,
    VehicleType.TRICYCLE.value: 1.15,
    VehicleType.CAR.value: 1.25,
    VehicleType.CAR_STANDARD.value: 1.2,
    VehicleType.VAN.value: 1.5,
}

# comfort / premium נגזרים מ-standard אם לא הוגדרו במפורש
CAR_TIER_FACTORS: dict[str, float] = {
    VehicleType.CAR_COMFORT.value: 1.12,
    VehicleType.CAR_PREMIUM.value: 1.24,
}

DEFAULT_VEHICLE_MAX_RADIUS_KM: dict[str, float] = {
    VehicleType.BICYCLE.value: 8.0,
    VehicleType.MOTORBIKE.value: 15.0,
    VehicleType.TRICYCLE.value: 15.0,
    VehicleType.CAR.value: 20.0,
    VehicleType.CAR_STANDARD.value: 20.0,
    VehicleType.CAR_COMFORT.value: 20.0,
    VehicleType.CAR_PREMIUM.value: 20.0,
    VehicleType.VAN.value: 20.0,
}


def with_car_tier_multipliers(multipliers: dict[str, float]) -> dict[str, float]:
    """Fill in car_comfort / car_premium from the standard-car base when missing"""
    result = dict(multipliers)
    base = result.get(VehicleType.CAR_STANDARD.value) or result.get(VehicleType.CAR.value) or 1.2
    result.setdefault(VehicleType.CAR_STANDARD.value, base)
    for tier, factor in CAR_TIER_FACTORS.items():
        if not result.get(tier):
            result[tier] = round(base * factor, 4)
    return result


@dataclass(frozen=True)
class FareConfig:
    min_fare: int
    per_km_short: int
    per_km_medium: int
    per_km_long: int
    short_distance_max: float
    medium_distance_max: float
    vehicle_multipliers: dict[str, float] = field(default_factory=dict)
    commission_rate: float = 10.0
    gold_discount_percent: float = 5.0
    default_search_radius_km: float = 7.0
    max_allowed_radius_km: float = 20.0
    vehicle_max_radius_km: dict[str, float] = field(default_factory=dict)

    @classmethod
    def defaults(cls) -> "FareConfig":
        return cls(
            min_fare=settings.DEFAULT_MIN_FARE,
            per_km_short=settings.DEFAULT_PER_KM_SHORT,
            per_km_medium=settings.DEFAULT_PER_KM_MEDIUM,
            per_km_long=settings.DEFAULT_PER_KM_LONG,
            short_distance_max=settings.DEFAULT_SHORT_DISTANCE_MAX,
            medium_distance_max=settings.DEFAULT_MEDIUM_DISTANCE_MAX,
            vehicle_multipliers=with_car_tier_multipliers(DEFAULT_VEHICLE_MULTIPLIERS),
            commission_rate=settings.DEFAULT_COMMISSION_RATE,
            gold_discount_percent=settings.DEFAULT_GOLD_DISCOUNT_PERCENT,
            default_search_radius_km=settings.DEFAULT_SEARCH_RADIUS_KM,
            max_allowed_radius_km=settings.MAX_ALLOWED_RADIUS_KM,
            vehicle_max_radius_km=dict(DEFAULT_VEHICLE_MAX_RADIUS_KM),
        )

    def multiplier_for(self, vehicle_type: Optional[str]) -> float:
        if not vehicle_type:
            return 1.0
        return float(self.vehicle_multipliers.get(vehicle_type, 1.0))

    def max_radius_for(self, vehicle_type: Optional[str]) -> float:
        cap = self.vehicle_max_radius_km.get(vehicle_type or "", self.max_allowed_radius_km)
        return min(float(cap), self.max_allowed_radius_km)

    def effective_radius_km(self, rider_radius_km: Optional[float], vehicle_type: Optional[str]) -> float:
        """min(rider's own radius, the admin cap for the vehicle class)"""
        personal = rider_radius_km or self.default_search_radius_km
        return min(float(personal), self.max_radius_for(vehicle_type))


# שדות שמותר לאדמין לעדכן
_EDITABLE_FIELDS = {
    "use_database_rates",
    "min_fare",
    "per_km_short",
    "per_km_medium",
    "per_km_long",
    "short_distance_max",
    "medium_distance_max",
    "vehicle_multipliers",
    "commission_rate",
    "gold_discount_percent",
    "default_search_radius_km",
    "max_allowed_radius_km",
    "vehicle_max_radius_km",
}


class FareConfigService:
    """Reads and updates the platform settings row"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self) -> Optional[PlatformSettings]:
        result = await self.db.execute(select(PlatformSettings).where(PlatformSettings.id == 1))
        return result.scalar_one_or_none()

    async def get_config(self) -> FareConfig:
        config = FareConfig.defaults()
        row = await self._get_row()
        if row is None or not row.use_database_rates:
            return config

        overrides: dict[str, Any] = {}
        for name in (
            "min_fare", "per_km_short", "per_km_medium", "per_km_long",
            "short_distance_max", "medium_distance_max", "commission_rate",
            "gold_discount_percent", "default_search_radius_km", "max_allowed_radius_km",
        ):
            value = getattr(row, name)
            if value is not None:
                overrides[name] = value
        if row.vehicle_multipliers:
            overrides["vehicle_multipliers"] = with_car_tier_multipliers(
                {**DEFAULT_VEHICLE_MULTIPLIERS, **row.vehicle_multipliers}
            )
        if row.vehicle_max_radius_km:
            overrides["vehicle_max_radius_km"] = {
                **DEFAULT_VEHICLE_MAX_RADIUS_KM, **row.vehicle_max_radius_km
            }
        return replace(config, **overrides)

    async def update_config(self, admin_id: int, changes: dict[str, Any]) -> FareConfig:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationException(
                "Unknown settings fields", details={"fields": sorted(unknown)}
            )
        _validate_changes(changes)

        row = await self._get_row()
        if row is None:
            row = PlatformSettings(id=1)
            self.db.add(row)
        for name, value in changes.items():
            setattr(row, name, value)
        row.updated_by = admin_id
        await self.db.commit()

        logger.info(
            "Platform settings updated",
            extra_data={"admin_id": admin_id, "fields": sorted(changes)},
        )
        return await self.get_config()


def _validate_changes(changes: dict[str, Any]) -> None:
    for name in ("min_fare", "per_km_short", "per_km_medium", "per_km_long"):
        if name in changes and changes[name] is not None and changes[name] < 0:
            raise ValidationException(f"{name} must not be negative", field=name)
    rate = changes.get("commission_rate")
    if rate is not None and not 0 <= rate <= 100:
        raise ValidationException("commission_rate must be between 0 and 100", field="commission_rate")
    short_max = changes.get("short_distance_max")
    medium_max = changes.get("medium_distance_max")
    if short_max is not None and medium_max is not None and short_max > medium_max:
        raise ValidationException(
            "short_distance_max must not exceed medium_distance_max", field="short_distance_max"
        )
    for name in ("vehicle_multipliers", "vehicle_max_radius_km"):
        mapping = changes.get(name)
        if mapping is None:
            continue
        valid = {v.value for v in VehicleType}
        bad = [k for k, v in mapping.items() if k not in valid or v is None or v <= 0]
        if bad:
            raise ValidationException(f"invalid {name} entries", field=name, details={"keys": bad})
