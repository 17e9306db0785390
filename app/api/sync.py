# POST/GET /sync

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.core.database import get_db
from app.schemas.sync import SyncRunResponse, SyncStatusResponse
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.upload_client import GoogleAdsUploadClient, get_upload_client

logger = structlog.get_logger()
router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=SyncRunResponse)
async def run_sync(
        brand_id: UUID | None = Query(default=None, description="Only sync this brand's account"),
        account_id: UUID | None = Query(default=None, description="Only sync this account"),
        db: AsyncSession = Depends(get_db),
        upload_client: GoogleAdsUploadClient = Depends(get_upload_client)
):
    """
    Run one sync pass over active accounts.

    Always 200 once accounts are loaded; check `results[].failure_count` and
    `results[].errors` for per-account problems.
    """
    orchestrator = SyncOrchestrator(db, upload_client)
    try:
        summary = await orchestrator.run_pass(brand_id=brand_id, account_id=account_id)
    except Exception as e:
        logger.error("sync_pass_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run conversion sync"
        )

    return summary.to_dict()


@router.get("", response_model=SyncStatusResponse)
async def sync_status(db: AsyncSession = Depends(get_db)):
    """Last sync bookkeeping and pending event count per account"""
    orchestrator = SyncOrchestrator(db)
    try:
        snapshot = await orchestrator.status_snapshot()
    except Exception as e:
        logger.error("sync_status_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch sync status"
        )

    return {"status": snapshot}
