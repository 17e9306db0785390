# SQLAlchemy models

from sqlalchemy import (
    Column, String, DateTime, Integer, Numeric, Text, JSON, Uuid, Index, UniqueConstraint, ForeignKey, func
)
import enum
import uuid

from app.models.base import Base


class EventName(str, enum.Enum):
    PURCHASE = "purchase"
    LEAD = "lead"
    SIGNUP = "signup"
    ADD_TO_CART = "add_to_cart"
    PAGE_VIEW = "page_view"
    CUSTOM = "custom"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({SyncStatus.SENT, SyncStatus.SKIPPED})


class ConversionEvent(Base):
    __tablename__ = "conversion_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_name = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255))

    # SHA-256 hex digests only, raw values never reach this table
    user_email_hash = Column(String(64))
    user_phone_hash = Column(String(64))
    user_first_name_hash = Column(String(64))
    user_last_name_hash = Column(String(64))
    user_ip = Column(String(64))
    user_agent = Column(Text)

    event_value = Column(Numeric(18, 4))
    currency = Column(String(3), nullable=False, default="USD")
    transaction_id = Column(String(255))
    custom_params = Column(JSON, nullable=False, default=dict)

    source = Column(String(100))
    campaign_id = Column(Uuid, index=True)
    brand_id = Column(Uuid, ForeignKey("brands.id", ondelete="CASCADE"))

    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_attempts = Column(Integer, nullable=False, default=0)
    synced_at = Column(DateTime(timezone=True))
    sync_error = Column(Text)
    next_attempt_at = Column(DateTime(timezone=True))

    event_time = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("brand_id", "event_id", name="uq_conversion_events_brand_event_id"),
        # Claim query: brand + status, oldest first
        Index("idx_conversion_brand_status_time", "brand_id", "sync_status", "event_time"),
    )
