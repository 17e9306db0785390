# Per-brand advertising account configuration

from sqlalchemy import Column, String, DateTime, Integer, Boolean, Text, Uuid, ForeignKey, func
from sqlalchemy.orm import relationship
import uuid

from app.models.base import Base


class SyncAccountConfig(Base):
    __tablename__ = "sync_account_configs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    brand_id = Column(Uuid, ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True)

    customer_id = Column(String(50), nullable=False)
    conversion_action_id = Column(String(50), nullable=False)

    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))

    is_active = Column(Boolean, nullable=False, default=True)
    batch_size = Column(Integer, nullable=False, default=100)
    sync_interval_minutes = Column(Integer, nullable=False, default=60)

    last_sync_at = Column(DateTime(timezone=True))
    last_sync_status = Column(String(20))
    last_sync_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    brand = relationship("Brand", lazy="joined")
