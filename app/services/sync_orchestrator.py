from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from itertools import groupby
from typing import Any, Protocol, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.core.config import Settings, settings as default_settings
from app.models.conversion import ConversionEvent, SyncStatus
from app.services.conversion_store import ConversionEventStore, utcnow
from app.services.sync_accounts import (
    SYNC_STATUS_PARTIAL_FAILURE,
    SYNC_STATUS_SUCCESS,
    SyncAccount,
    SyncAccountRegistry,
)
from app.services.upload_client import UploadResult

logger = structlog.get_logger()


class UploadClient(Protocol):
    async def upload(self, account: SyncAccount, events: Sequence[ConversionEvent]) -> UploadResult:
        ...


@dataclass
class AccountSyncResult:
    brand_id: UUID
    brand_name: str
    events_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncSummary:
    results: list[AccountSyncResult] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(r.events_processed for r in self.results)

    @property
    def total_success(self) -> int:
        return sum(r.success_count for r in self.results)

    @property
    def total_failure(self) -> int:
        return sum(r.failure_count for r in self.results)

    @property
    def message(self) -> str:
        if not self.results:
            return "No active sync accounts found"
        return f"Sync complete: {self.total_success}/{self.total_processed} events sent"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "summary": {
                "total_processed": self.total_processed,
                "total_success": self.total_success,
                "total_failure": self.total_failure,
            },
            "results": [asdict(r) for r in self.results],
        }


def attempts_by_id(events: Sequence[ConversionEvent]) -> dict[UUID, int]:
    return {e.id: e.sync_attempts or 0 for e in events}


def next_attempt_delay(attempts: int, settings: Settings = default_settings) -> timedelta | None:
    """
    Backoff before a failed event may be claimed again.

    `attempts` counts the attempt that just failed; None means the event has
    used up its attempts and stays failed.
    """
    if attempts >= settings.sync_max_attempts:
        return None
    seconds = settings.sync_retry_base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, settings.sync_retry_max_seconds))


class SyncOrchestrator:
    """Claims, uploads and reconciles pending conversions, one account at a time"""

    def __init__(
            self,
            db: AsyncSession,
            upload_client: UploadClient | None = None,
            settings: Settings = default_settings
    ):
        self.db = db
        self.settings = settings
        self.upload_client = upload_client
        self.store = ConversionEventStore(db, settings)
        self.registry = SyncAccountRegistry(db, settings)

    async def run_pass(
            self,
            brand_id: UUID | None = None,
            account_id: UUID | None = None
    ) -> SyncSummary:
        """
        One sync pass over active accounts, optionally scoped to one.

        Registry read errors propagate; anything that goes wrong inside an
        account's batch becomes that account's result.
        """
        accounts = await self.registry.list_active(brand_id=brand_id, account_id=account_id)
        return await self.run_accounts(accounts)

    async def run_accounts(self, accounts: Sequence[SyncAccount]) -> SyncSummary:
        summary = SyncSummary()
        for account in accounts:
            if not account.is_active:
                continue
            summary.results.append(await self.sync_account(account))

        logger.info(
            "sync_pass_completed",
            accounts=len(summary.results),
            total_processed=summary.total_processed,
            total_success=summary.total_success,
            total_failure=summary.total_failure
        )
        return summary

    async def sync_account(self, account: SyncAccount) -> AccountSyncResult:
        result = AccountSyncResult(brand_id=account.brand_id, brand_name=account.brand_name)
        events: list[ConversionEvent] = []
        # id -> attempts at claim time; rollback expires the ORM rows
        claimed: dict[UUID, int] = {}

        try:
            events = await self.store.claim_pending(account.brand_id, account.batch_size)
            claimed = attempts_by_id(events)
            if not events:
                await self.registry.record_sync_result(account.id, SYNC_STATUS_SUCCESS, 0)
                return result

            if self.upload_client is None:
                raise RuntimeError("No upload client configured")
            upload = await self.upload_client.upload(account, events)
            await self._reconcile(events, upload)

            await self.registry.record_sync_result(
                account.id,
                SYNC_STATUS_SUCCESS if upload.success else SYNC_STATUS_PARTIAL_FAILURE,
                len(events)
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(
                "account_sync_failed",
                account_id=str(account.id),
                brand_id=str(account.brand_id),
                claimed=len(claimed),
                error=message
            )
            await self.db.rollback()
            await self._fail_claimed(account, claimed, message)
            await self._record_failure(account, len(claimed))
            result.events_processed = len(claimed)
            result.failure_count = len(claimed)
            result.errors = [message]
            return result

        result.events_processed = len(events)
        result.success_count = upload.success_count
        result.failure_count = upload.failure_count
        result.errors = list(upload.errors)
        return result

    async def _fail_claimed(self, account: SyncAccount, claimed: dict[UUID, int], error: str) -> None:
        """Move whatever is still queued from this batch to failed"""
        if not claimed:
            return
        try:
            await self._mark_failed(claimed, error, utcnow())
        except Exception as e:
            # Rows stay queued until their lease expires
            await self.db.rollback()
            logger.error("claimed_batch_mark_failed_failed", account_id=str(account.id), error=str(e))

    async def _record_failure(self, account: SyncAccount, count: int) -> None:
        try:
            await self.registry.record_sync_result(account.id, SYNC_STATUS_PARTIAL_FAILURE, count)
        except Exception as e:
            logger.error("sync_failure_record_failed", account_id=str(account.id), error=str(e))

    async def _reconcile(self, events: list[ConversionEvent], upload: UploadResult) -> None:
        now = utcnow()
        error = "; ".join(upload.errors) or None

        if upload.failed_indexes is not None and upload.success_count > 0:
            # Platform told us exactly which conversions were rejected
            failed = [e for i, e in enumerate(events) if i in upload.failed_indexes]
            sent = [e for i, e in enumerate(events) if i not in upload.failed_indexes]
            await self.store.mark_status([e.id for e in sent], SyncStatus.SENT, now=now)
            await self._mark_failed(attempts_by_id(failed), error, now)
        elif upload.success_count > 0:
            # No per-event attribution: an accepted batch counts as sent in full
            await self.store.mark_status([e.id for e in events], SyncStatus.SENT, now=now)
        elif upload.failure_count > 0:
            await self._mark_failed(attempts_by_id(events), error, now)

    async def _mark_failed(self, attempts: dict[UUID, int], error: str | None, now: datetime) -> None:
        """
        Fail queued events, keyed by id with their attempt count before this dispatch.

        Backoff depends on each event's attempt count, so updates go per group.
        """
        by_attempts = sorted(attempts.items(), key=lambda item: item[1])
        for count, group in groupby(by_attempts, key=lambda item: item[1]):
            delay = next_attempt_delay(count + 1, self.settings)
            await self.store.mark_status(
                [event_id for event_id, _ in group],
                SyncStatus.FAILED,
                error=error,
                next_attempt_at=now + delay if delay is not None else None,
                now=now
            )

    async def status_snapshot(self) -> list[dict[str, Any]]:
        """Per-account sync bookkeeping plus current pending counts"""
        accounts = await self.registry.list_all()
        counts = await self.store.count_by_status()

        return [
            {
                "brand_id": account.brand_id,
                "brand_name": account.brand_name,
                "is_active": account.is_active,
                "last_sync_at": account.last_sync_at,
                "last_sync_status": account.last_sync_status,
                "last_sync_count": account.last_sync_count,
                "pending_events": counts.get(account.brand_id, {}).get(SyncStatus.PENDING.value, 0),
            }
            for account in accounts
        ]
