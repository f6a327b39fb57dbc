"""
Pricing Engine - tiered distance fare scaled by vehicle class

    price = max(round((F + tiers(d)) * m), round(F * m))

where ``tiers`` is a running sum across the short / medium / long
boundaries, not a single blended rate.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from app.core.money import round_half_up
from app.domain.services.fare_config_service import FareConfig


def tiered_distance_charge(distance_km: float, config: FareConfig) -> Decimal:
    """Per-km charge summed tier by tier (excludes the base fare)"""
    d = Decimal(str(max(distance_km, 0.0)))
    short_max = Decimal(str(config.short_distance_max))
    medium_max = Decimal(str(config.medium_distance_max))

    charge = min(d, short_max) * config.per_km_short
    if d > short_max:
        charge += (min(d, medium_max) - short_max) * config.per_km_medium
    if d > medium_max:
        charge += (d - medium_max) * config.per_km_long
    return charge


def calculate_price(
    distance_km: Optional[float],
    vehicle_type: Optional[str],
    config: FareConfig,
) -> int:
    """
    Fare for a trip.

    Args:
        distance_km: road distance; None or <= 0 means unknown and yields the minimum fare
        vehicle_type: vehicle class name; unknown classes price at multiplier 1.0
        config: fare table

    Returns:
        Whole currency units, never below the vehicle's minimum fare.
    """
    multiplier = Decimal(str(config.multiplier_for(vehicle_type)))
    minimum = round_half_up(Decimal(config.min_fare) * multiplier)
    if not distance_km or distance_km <= 0:
        return minimum

    subtotal = Decimal(config.min_fare) + tiered_distance_charge(distance_km, config)
    return max(round_half_up(subtotal * multiplier), minimum)


@dataclass(frozen=True)
class PriceQuote:
    distance_km: Optional[float]
    distance_is_estimate: bool
    vehicle_type: Optional[str]
    multiplier: float
    price: int
    minimum_fare: int


def build_quote(
    distance_km: Optional[float],
    vehicle_type: Optional[str],
    config: FareConfig,
    distance_is_estimate: bool = False,
) -> PriceQuote:
    multiplier = config.multiplier_for(vehicle_type)
    return PriceQuote(
        distance_km=distance_km,
        distance_is_estimate=distance_is_estimate,
        vehicle_type=vehicle_type,
        multiplier=multiplier,
        price=calculate_price(distance_km, vehicle_type, config),
        minimum_fare=round_half_up(Decimal(config.min_fare) * Decimal(str(multiplier))),
    )
