# Pydantic schemas

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from typing import Any

from app.models.conversion import EventName, SyncStatus


class ConversionEventCreate(BaseModel):
    """Producer payload; user_* fields carry raw PII and are hashed before insert"""

    event_name: EventName
    event_id: str | None = Field(default=None, max_length=255)

    user_email: str | None = None
    user_phone: str | None = None
    user_first_name: str | None = None
    user_last_name: str | None = None
    user_ip: str | None = Field(default=None, max_length=64)
    user_agent: str | None = None

    event_value: Decimal | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    transaction_id: str | None = Field(default=None, max_length=255)
    custom_params: dict[str, Any] = Field(default_factory=dict)

    source: str | None = Field(default=None, max_length=100)
    campaign_id: UUID | None = None
    brand_id: UUID | None = None

    event_time: datetime | None = None

    @field_validator('event_id', 'transaction_id')
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class ConversionEventBatchCreate(BaseModel):
    """Schema for batch conversion creation"""

    events: list[ConversionEventCreate] = Field(..., min_length=1, max_length=1000)


class ConversionEventResponse(BaseModel):
    """Stored conversion event; only hashed identifiers are exposed"""

    id: UUID
    event_name: str
    event_id: str | None
    user_email_hash: str | None
    user_phone_hash: str | None
    user_first_name_hash: str | None
    user_last_name_hash: str | None
    user_ip: str | None
    user_agent: str | None
    event_value: Decimal | None
    currency: str
    transaction_id: str | None
    custom_params: dict[str, Any]
    source: str | None
    campaign_id: UUID | None
    brand_id: UUID | None
    sync_status: SyncStatus
    sync_attempts: int
    synced_at: datetime | None
    sync_error: str | None
    next_attempt_at: datetime | None
    event_time: datetime
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class ConversionEventList(BaseModel):
    data: list[ConversionEventResponse]
    count: int
    limit: int
    offset: int


class ConversionSyncUpdate(BaseModel):
    """Admin update of sync fields: manual retry or skip"""

    sync_status: SyncStatus | None = None
    sync_error: str | None = None


class BatchIngestResponse(BaseModel):
    """Response for batch ingestion"""

    total_received: int
    inserted: int
    duplicates: int
    message: str
