"""
Calendar / Mail Integration Models
"""
from sqlalchemy import Column, DateTime, Integer, String, Text

from .database import Base
from .utils.datetime_utils import utcnow


class CalendarIntegration(Base):
    __tablename__ = "calendar_integrations"

    id = Column(Integer, primary_key=True, index=True)
    # Internal user (organizer) email; one integration per mailbox
    user_email = Column(String(255), nullable=False, unique=True, index=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)

    # Provider account info
    provider = Column(String(50), default="microsoft", nullable=False)
    mailbox_address = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
