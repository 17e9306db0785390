from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.core.database import get_db
from app.models.sync_account import SyncAccountConfig
from app.schemas.sync import SyncAccountCreate, SyncAccountResponse, SyncAccountUpdate
from app.services.sync_accounts import BrandNotFound, SyncAccountExists, SyncAccountRegistry

logger = structlog.get_logger()
router = APIRouter(prefix="/sync-accounts", tags=["sync-accounts"])


def _to_response(config: SyncAccountConfig) -> SyncAccountResponse:
    return SyncAccountResponse(
        id=config.id,
        brand_id=config.brand_id,
        brand_name=config.brand.name if config.brand else "Unknown",
        customer_id=config.customer_id,
        conversion_action_id=config.conversion_action_id,
        has_access_token=bool(config.access_token),
        has_refresh_token=bool(config.refresh_token),
        token_expires_at=config.token_expires_at,
        is_active=config.is_active,
        batch_size=config.batch_size,
        sync_interval_minutes=config.sync_interval_minutes,
        last_sync_at=config.last_sync_at,
        last_sync_status=config.last_sync_status,
        last_sync_count=config.last_sync_count or 0,
        created_at=config.created_at,
        updated_at=config.updated_at
    )


@router.get("", response_model=List[SyncAccountResponse])
async def list_sync_accounts(db: AsyncSession = Depends(get_db)):
    configs = await SyncAccountRegistry(db).list_configs()
    return [_to_response(c) for c in configs]


@router.post("", response_model=SyncAccountResponse, status_code=status.HTTP_201_CREATED)
async def create_sync_account(data: SyncAccountCreate, db: AsyncSession = Depends(get_db)):
    """
    Create the sync account for a brand (one per brand).

    - **customer_id**: Google Ads customer id, dashes are stripped
    """
    try:
        config = await SyncAccountRegistry(db).create(data)
    except BrandNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SyncAccountExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _to_response(config)


@router.get("/{config_id}", response_model=SyncAccountResponse)
async def get_sync_account(config_id: UUID, db: AsyncSession = Depends(get_db)):
    config = await SyncAccountRegistry(db).get(config_id)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync account not found")
    return _to_response(config)


@router.patch("/{config_id}", response_model=SyncAccountResponse)
async def update_sync_account(
        config_id: UUID,
        changes: SyncAccountUpdate,
        db: AsyncSession = Depends(get_db)
):
    config = await SyncAccountRegistry(db).update(config_id, changes)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync account not found")
    return _to_response(config)


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_sync_account(config_id: UUID, db: AsyncSession = Depends(get_db)):
    deleted = await SyncAccountRegistry(db).delete(config_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync account not found")
    logger.info("sync_account_deleted", config_id=str(config_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
