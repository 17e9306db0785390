from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.core.database import get_db
from app.models.conversion import EventName, SyncStatus
from app.schemas.conversion import (
    BatchIngestResponse,
    ConversionEventBatchCreate,
    ConversionEventCreate,
    ConversionEventList,
    ConversionEventResponse,
    ConversionSyncUpdate,
)
from app.services.conversion_store import ConversionEventStore, InvalidStatusTransition
from app.services.hashing import generate_event_id

logger = structlog.get_logger()
router = APIRouter(prefix="/conversions", tags=["conversions"])


def _with_event_id(payload: ConversionEventCreate) -> ConversionEventCreate:
    if payload.event_id:
        return payload
    return payload.model_copy(update={"event_id": generate_event_id(payload.event_name.value)})


@router.post("", response_model=ConversionEventResponse, status_code=status.HTTP_201_CREATED)
async def create_conversion(
        payload: ConversionEventCreate,
        db: AsyncSession = Depends(get_db)
):
    """
    Record a conversion event.

    - **user_email / user_phone / user_first_name / user_last_name**: hashed before storage
    - **event_id**: dedup key; generated when omitted, replays return the stored event with 200
    """
    store = ConversionEventStore(db)
    try:
        event, created = await store.insert(_with_event_id(payload))
    except Exception as e:
        logger.error("conversion_create_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record conversion event"
        )

    body = ConversionEventResponse.model_validate(event)
    if not created:
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))
    return body


@router.post("/batch", response_model=BatchIngestResponse, status_code=status.HTTP_201_CREATED)
async def create_conversions_batch(
        batch: ConversionEventBatchCreate,
        db: AsyncSession = Depends(get_db)
):
    """
    Record a batch of conversion events (max 1000).

    Events whose (brand_id, event_id) is already stored are counted as duplicates.
    """
    store = ConversionEventStore(db)
    try:
        result = await store.insert_many([_with_event_id(p) for p in batch.events])
    except Exception as e:
        logger.error("conversion_batch_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record conversion events"
        )

    return BatchIngestResponse(
        total_received=len(batch.events),
        inserted=result["inserted"],
        duplicates=result["duplicates"],
        message=f"Successfully processed {len(batch.events)} events"
    )


@router.get("", response_model=ConversionEventList)
async def list_conversions(
        sync_status: SyncStatus | None = Query(default=None, alias="status"),
        event_name: EventName | None = Query(default=None),
        campaign_id: UUID | None = Query(default=None),
        brand_id: UUID | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        db: AsyncSession = Depends(get_db)
):
    """List conversion events, newest first"""
    store = ConversionEventStore(db)
    events, count = await store.list_events(
        status=sync_status,
        event_name=event_name.value if event_name else None,
        campaign_id=campaign_id,
        brand_id=brand_id,
        limit=limit,
        offset=offset
    )
    return ConversionEventList(
        data=[ConversionEventResponse.model_validate(e) for e in events],
        count=count,
        limit=limit,
        offset=offset
    )


@router.get("/{event_id}", response_model=ConversionEventResponse)
async def get_conversion(event_id: UUID, db: AsyncSession = Depends(get_db)):
    event = await ConversionEventStore(db).get(event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversion event not found")
    return event


@router.patch("/{event_id}", response_model=ConversionEventResponse)
async def update_conversion_sync(
        event_id: UUID,
        changes: ConversionSyncUpdate,
        db: AsyncSession = Depends(get_db)
):
    """
    Manually requeue (`pending`) or skip (`skipped`) a pending or failed event.
    """
    try:
        event = await ConversionEventStore(db).update_sync_fields(event_id, changes)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversion event not found")
    return event


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversion(event_id: UUID, db: AsyncSession = Depends(get_db)):
    deleted = await ConversionEventStore(db).delete(event_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversion event not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
