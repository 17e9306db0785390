from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID
from typing import List


class AccountSyncResultResponse(BaseModel):
    """Outcome of one account within a sync pass"""
    brand_id: UUID
    brand_name: str
    events_processed: int
    success_count: int
    failure_count: int
    errors: List[str]


class SyncSummaryTotals(BaseModel):
    total_processed: int
    total_success: int
    total_failure: int


class SyncRunResponse(BaseModel):
    """Response for a sync pass"""
    message: str
    summary: SyncSummaryTotals
    results: List[AccountSyncResultResponse]


class AccountSyncStatusResponse(BaseModel):
    """Sync status snapshot for one account"""
    brand_id: UUID
    brand_name: str
    is_active: bool
    last_sync_at: datetime | None
    last_sync_status: str | None
    last_sync_count: int
    pending_events: int


class SyncStatusResponse(BaseModel):
    status: List[AccountSyncStatusResponse]


class SyncAccountCreate(BaseModel):
    """Schema for creating a brand's sync account"""
    brand_id: UUID
    customer_id: str = Field(..., min_length=1, max_length=50)
    conversion_action_id: str = Field(..., min_length=1, max_length=50)
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool = True
    batch_size: int | None = Field(default=None, ge=1, le=2000)
    sync_interval_minutes: int = Field(default=60, ge=1)


class SyncAccountUpdate(BaseModel):
    """Partial update; only fields present in the request are written"""
    customer_id: str | None = Field(default=None, min_length=1, max_length=50)
    conversion_action_id: str | None = Field(default=None, min_length=1, max_length=50)
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool | None = None
    batch_size: int | None = Field(default=None, ge=1, le=2000)
    sync_interval_minutes: int | None = Field(default=None, ge=1)


class SyncAccountResponse(BaseModel):
    """Account config as returned to admins; tokens are never echoed"""
    id: UUID
    brand_id: UUID
    brand_name: str
    customer_id: str
    conversion_action_id: str
    has_access_token: bool
    has_refresh_token: bool
    token_expires_at: datetime | None
    is_active: bool
    batch_size: int
    sync_interval_minutes: int
    last_sync_at: datetime | None
    last_sync_status: str | None
    last_sync_count: int
    created_at: datetime | None
    updated_at: datetime | None
