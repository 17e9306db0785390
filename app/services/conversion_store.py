from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
import structlog

from app.core.config import Settings, settings as default_settings
from app.models.conversion import ConversionEvent, SyncStatus, TERMINAL_STATUSES
from app.schemas.conversion import ConversionEventCreate, ConversionSyncUpdate
from app.services.hashing import prepare_conversion_event

logger = structlog.get_logger()

# Admin path: which statuses may be set by hand, and from where
ADMIN_SOURCE_STATUSES = frozenset({SyncStatus.PENDING, SyncStatus.FAILED})
ADMIN_TARGET_STATUSES = frozenset({SyncStatus.PENDING, SyncStatus.SKIPPED})


class InvalidStatusTransition(ValueError):
    """Requested sync_status change would break the event state machine"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversionEventStore:
    """Durable per-brand queue of hashed conversion events"""

    def __init__(self, db: AsyncSession, settings: Settings = default_settings):
        self.db = db
        self.max_attempts = settings.sync_max_attempts
        self.queued_lease = timedelta(seconds=settings.sync_queued_lease_seconds)
        self.country_code = settings.default_phone_country_code

    # Writes

    async def insert(self, payload: ConversionEventCreate) -> tuple[ConversionEvent, bool]:
        """
        Hash and persist a single event.

        Returns:
            (event, created); created is False when the brand already has an
            event with the same event_id
        """
        values = prepare_conversion_event(payload, self.country_code)

        if values["event_id"]:
            existing = await self.find_by_event_id(values["brand_id"], values["event_id"])
            if existing is not None:
                logger.info("conversion_event_duplicate", event_id=values["event_id"])
                return existing, False

        now = utcnow()
        event = ConversionEvent(
            **values,
            sync_status=SyncStatus.PENDING.value,
            sync_attempts=0,
            created_at=now,
            updated_at=now
        )
        self.db.add(event)

        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race on (brand_id, event_id)
            await self.db.rollback()
            existing = await self.find_by_event_id(values["brand_id"], values["event_id"])
            if existing is None:
                raise
            return existing, False
        except Exception as e:
            await self.db.rollback()
            logger.error("conversion_insert_failed", error=str(e))
            raise

        await self.db.refresh(event)
        logger.info(
            "conversion_event_inserted",
            id=str(event.id),
            event_name=event.event_name,
            brand_id=str(event.brand_id) if event.brand_id else None
        )
        return event, True

    async def insert_many(self, payloads: Sequence[ConversionEventCreate]) -> dict[str, int]:
        """
        Hash and persist a batch, skipping known (brand_id, event_id) pairs

        Returns:
            dict with 'inserted' and 'duplicates' counts
        """
        if not payloads:
            return {"inserted": 0, "duplicates": 0}

        prepared = [prepare_conversion_event(p, self.country_code) for p in payloads]

        # A concurrent batch can commit the same keys between our lookup and
        # commit; the second round sees them and counts them as duplicates
        for attempt in range(2):
            rows = self._new_rows(prepared, await self._existing_keys(prepared))
            self.db.add_all(rows)
            try:
                await self.db.commit()
                break
            except IntegrityError as e:
                await self.db.rollback()
                if attempt:
                    logger.error("conversion_batch_insert_failed", error=str(e), total=len(payloads))
                    raise
                logger.warning("conversion_batch_insert_conflict", total=len(payloads))
            except Exception as e:
                await self.db.rollback()
                logger.error("conversion_batch_insert_failed", error=str(e), total=len(payloads))
                raise

        inserted = len(rows)
        duplicates = len(payloads) - inserted
        logger.info("conversion_events_ingested", total=len(payloads), inserted=inserted, duplicates=duplicates)
        return {"inserted": inserted, "duplicates": duplicates}

    def _new_rows(self, prepared: list[dict], seen: set[tuple[UUID | None, str]]) -> list[ConversionEvent]:
        now = utcnow()
        rows = []
        for values in prepared:
            key = (values["brand_id"], values["event_id"])
            if values["event_id"]:
                if key in seen:
                    continue
                seen.add(key)
            rows.append(ConversionEvent(
                **values,
                sync_status=SyncStatus.PENDING.value,
                sync_attempts=0,
                created_at=now,
                updated_at=now
            ))
        return rows

    async def _existing_keys(self, prepared: list[dict]) -> set[tuple[UUID | None, str]]:
        event_ids = {values["event_id"] for values in prepared if values["event_id"]}
        if not event_ids:
            return set()
        result = await self.db.execute(
            select(ConversionEvent.brand_id, ConversionEvent.event_id)
            .where(ConversionEvent.event_id.in_(event_ids))
        )
        return {(row[0], row[1]) for row in result.all()}

    def _claimable(self, entity, now: datetime):
        lease_cutoff = now - self.queued_lease
        return or_(
            entity.sync_status == SyncStatus.PENDING.value,
            and_(
                entity.sync_status == SyncStatus.FAILED.value,
                entity.sync_attempts < self.max_attempts,
                or_(entity.next_attempt_at.is_(None), entity.next_attempt_at <= now)
            ),
            # Batch left queued by a pass that never reconciled it
            and_(
                entity.sync_status == SyncStatus.QUEUED.value,
                entity.updated_at <= lease_cutoff
            )
        )

    async def claim_pending(
            self,
            brand_id: UUID,
            limit: int,
            now: datetime | None = None
    ) -> list[ConversionEvent]:
        """
        Move up to `limit` claimable events of a brand to `queued` and return them.

        Selection and transition are one conditional UPDATE, so the rows it
        returns are the batch; two overlapping passes never claim the same row.
        """
        if limit <= 0:
            return []
        now = now or utcnow()

        candidate = aliased(ConversionEvent)
        candidates = (
            select(candidate.id)
            .where(candidate.brand_id == brand_id, self._claimable(candidate, now))
            .order_by(candidate.event_time.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(ConversionEvent)
            .where(ConversionEvent.id.in_(candidates), self._claimable(ConversionEvent, now))
            .values(sync_status=SyncStatus.QUEUED.value, updated_at=now)
            .returning(ConversionEvent)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        try:
            result = await self.db.scalars(stmt)
            events = list(result.all())
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("conversion_claim_failed", brand_id=str(brand_id), error=str(e))
            raise

        events.sort(key=lambda e: e.event_time)
        logger.info("conversion_events_claimed", brand_id=str(brand_id), count=len(events), limit=limit)
        return events

    async def mark_status(
            self,
            event_ids: Iterable[UUID],
            status: SyncStatus,
            *,
            error: str | None = None,
            next_attempt_at: datetime | None = None,
            increment_attempts: bool = True,
            expected_status: SyncStatus = SyncStatus.QUEUED,
            now: datetime | None = None
    ) -> int:
        """
        Bulk transition of events still in `expected_status`.

        Returns the number of rows actually moved.
        """
        ids = list(event_ids)
        if not ids:
            return 0
        now = now or utcnow()

        values = {"sync_status": status.value, "updated_at": now}
        if increment_attempts:
            values["sync_attempts"] = ConversionEvent.sync_attempts + 1
        if status == SyncStatus.SENT:
            values["synced_at"] = now
            values["next_attempt_at"] = None
        if status == SyncStatus.FAILED:
            values["sync_error"] = error
            values["next_attempt_at"] = next_attempt_at

        stmt = (
            update(ConversionEvent)
            .where(
                ConversionEvent.id.in_(ids),
                ConversionEvent.sync_status == expected_status.value
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("conversion_mark_status_failed", status=status.value, count=len(ids), error=str(e))
            raise

        if result.rowcount != len(ids):
            logger.warning(
                "conversion_mark_status_skipped_rows",
                status=status.value,
                requested=len(ids),
                updated=result.rowcount
            )
        return result.rowcount

    async def update_sync_fields(self, event_id: UUID, changes: ConversionSyncUpdate) -> ConversionEvent | None:
        """Manual retry (back to pending) or skip; sent and skipped rows are final"""
        event = await self.get(event_id)
        if event is None:
            return None

        current = SyncStatus(event.sync_status)
        values: dict = {"updated_at": utcnow()}

        if changes.sync_status is not None and changes.sync_status != current:
            if current not in ADMIN_SOURCE_STATUSES or changes.sync_status not in ADMIN_TARGET_STATUSES:
                raise InvalidStatusTransition(
                    f"Cannot change sync_status from {current.value} to {changes.sync_status.value}"
                )
            values["sync_status"] = changes.sync_status.value
            if changes.sync_status == SyncStatus.PENDING:
                values["next_attempt_at"] = None
        elif current in TERMINAL_STATUSES and "sync_error" in changes.model_fields_set:
            raise InvalidStatusTransition(f"Event is {current.value} and can no longer change")

        if "sync_error" in changes.model_fields_set:
            values["sync_error"] = changes.sync_error

        result = await self.db.execute(
            update(ConversionEvent)
            .where(ConversionEvent.id == event_id, ConversionEvent.sync_status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            raise InvalidStatusTransition("Event sync_status changed concurrently, retry the update")

        logger.info("conversion_sync_fields_updated", id=str(event_id), **{k: str(v) for k, v in values.items()})
        return await self.get(event_id)

    async def delete(self, event_id: UUID) -> bool:
        result = await self.db.execute(delete(ConversionEvent).where(ConversionEvent.id == event_id))
        await self.db.commit()
        return result.rowcount > 0

    # Reads

    async def get(self, event_id: UUID) -> ConversionEvent | None:
        result = await self.db.execute(
            select(ConversionEvent)
            .where(ConversionEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_event_id(self, brand_id: UUID | None, event_id: str) -> ConversionEvent | None:
        brand_clause = ConversionEvent.brand_id.is_(None) if brand_id is None else ConversionEvent.brand_id == brand_id
        result = await self.db.execute(
            select(ConversionEvent)
            .where(brand_clause, ConversionEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_events(
            self,
            *,
            status: SyncStatus | None = None,
            event_name: str | None = None,
            campaign_id: UUID | None = None,
            brand_id: UUID | None = None,
            limit: int = 50,
            offset: int = 0
    ) -> tuple[list[ConversionEvent], int]:
        """Newest events first, with the total count matching the filters"""
        filters = []
        if status is not None:
            filters.append(ConversionEvent.sync_status == status.value)
        if event_name:
            filters.append(ConversionEvent.event_name == event_name)
        if campaign_id is not None:
            filters.append(ConversionEvent.campaign_id == campaign_id)
        if brand_id is not None:
            filters.append(ConversionEvent.brand_id == brand_id)

        count = await self.db.scalar(
            select(func.count()).select_from(ConversionEvent).where(*filters)
        )
        result = await self.db.execute(
            select(ConversionEvent)
            .where(*filters)
            .order_by(ConversionEvent.event_time.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), count or 0

    async def count_by_status(self) -> dict[UUID | None, dict[str, int]]:
        """Event counts grouped by brand, then sync_status"""
        result = await self.db.execute(
            select(ConversionEvent.brand_id, ConversionEvent.sync_status, func.count())
            .group_by(ConversionEvent.brand_id, ConversionEvent.sync_status)
        )
        counts: dict[UUID | None, dict[str, int]] = {}
        for brand_id, status, count in result.all():
            counts.setdefault(brand_id, {})[status] = count
        return counts
