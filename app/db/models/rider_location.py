"""
Rider Location Model - presence + last known position
"""
from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey, Boolean, String, Index

from app.core.clock import utcnow
from app.db.database import Base


class RiderLocation(Base):
    """One row per rider; geohash is the spatial index key for dispatch"""

    __tablename__ = "rider_locations"

    id = Column(Integer, primary_key=True, index=True)
    rider_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    geohash = Column(String(12), nullable=False)
    online = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_rider_locations_online_geohash", "online", "geohash"),
    )
