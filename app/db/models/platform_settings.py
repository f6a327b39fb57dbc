"""
Platform Settings Model - runtime-tunable fare table and dispatch limits
"""
from sqlalchemy import Column, Integer, Float, Boolean, DateTime, ForeignKey, JSON

from app.core.clock import utcnow
from app.db.database import Base


class PlatformSettings(Base):
    """Single row (id=1). NULL columns fall back to the environment defaults."""

    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True)
    use_database_rates = Column(Boolean, default=True, nullable=False)

    min_fare = Column(Integer, nullable=True)
    per_km_short = Column(Integer, nullable=True)
    per_km_medium = Column(Integer, nullable=True)
    per_km_long = Column(Integer, nullable=True)
    short_distance_max = Column(Float, nullable=True)
    medium_distance_max = Column(Float, nullable=True)
    vehicle_multipliers = Column(JSON, nullable=True)

    commission_rate = Column(Float, nullable=True)
    gold_discount_percent = Column(Float, nullable=True)

    default_search_radius_km = Column(Float, nullable=True)
    max_allowed_radius_km = Column(Float, nullable=True)
    vehicle_max_radius_km = Column(JSON, nullable=True)

    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
