"""Waitlist signup record. The email is stored only as a dedup hash and as ciphertext."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index("ix_waitlist_entries_verified", "verified"),
        Index("ix_waitlist_entries_unsubscribed", "unsubscribed"),
        Index("ix_waitlist_entries_created_at", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    email_hash = Column(String(64), nullable=False, unique=True, index=True)
    email_encrypted = Column(String(512), nullable=False)

    verification_token = Column(String(100), nullable=True, unique=True)
    verification_sent_at = Column(DateTime(timezone=True), nullable=True)
    verified = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    # Generated once, never rotated
    unsubscribe_token = Column(String(100), nullable=False, unique=True)
    unsubscribed = Column(Boolean, default=False, nullable=False)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)

    source = Column(String(50), nullable=True)
    referrer = Column(String(2048), nullable=True)
    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)
    utm_term = Column(String(100), nullable=True)
    utm_content = Column(String(100), nullable=True)
    ab_test_variant = Column(String(50), nullable=True)
    extra = Column(JSON, nullable=True)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(45), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WaitlistEntry id={self.id} verified={self.verified} unsubscribed={self.unsubscribed}>"
