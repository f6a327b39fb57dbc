"""
Blocked Credentials Model - deny-list of identity data from blocked riders
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON

from app.core.clock import utcnow
from app.db.database import Base


class BlockedCredential(Base):
    """Prevents a blocked rider from registering again with the same email/phone/national id"""

    __tablename__ = "blocked_credentials"

    id = Column(Integer, primary_key=True, index=True)
    original_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String(255), nullable=True, index=True)
    phone_number = Column(String(20), nullable=True, index=True)
    national_id = Column(String(32), nullable=True, index=True)
    reason = Column(String(500), nullable=False)
    details = Column(JSON, nullable=True)
    blocked_at = Column(DateTime, default=utcnow, nullable=False)
