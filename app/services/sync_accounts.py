from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.core.config import Settings, settings as default_settings
from app.models.brand import Brand
from app.models.sync_account import SyncAccountConfig
from app.schemas.sync import SyncAccountCreate, SyncAccountUpdate

logger = structlog.get_logger()

SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_PARTIAL_FAILURE = "partial_failure"

# Credentials can be cleared with an explicit null; everything else is required
NULLABLE_FIELDS = frozenset({"access_token", "refresh_token", "token_expires_at"})


class SyncAccountExists(ValueError):
    """A brand already has a sync account"""


class BrandNotFound(LookupError):
    pass


@dataclass(frozen=True)
class SyncAccount:
    """Read-only view of an account config, detached from the session"""

    id: UUID
    brand_id: UUID
    brand_name: str
    customer_id: str
    conversion_action_id: str
    access_token: str | None
    is_active: bool
    batch_size: int
    sync_interval_minutes: int
    last_sync_at: datetime | None
    last_sync_status: str | None
    last_sync_count: int

    @classmethod
    def from_model(cls, config: SyncAccountConfig) -> "SyncAccount":
        return cls(
            id=config.id,
            brand_id=config.brand_id,
            brand_name=config.brand.name if config.brand else "Unknown",
            customer_id=config.customer_id,
            conversion_action_id=config.conversion_action_id,
            access_token=config.access_token,
            is_active=config.is_active,
            batch_size=config.batch_size,
            sync_interval_minutes=config.sync_interval_minutes,
            last_sync_at=config.last_sync_at,
            last_sync_status=config.last_sync_status,
            last_sync_count=config.last_sync_count or 0,
        )


def normalize_customer_id(customer_id: str) -> str:
    # Google Ads shows ids as 123-456-7890; the API wants digits only
    return str(customer_id).replace("-", "").strip()


def is_due(account: SyncAccount, now: datetime | None = None) -> bool:
    """Whether the account's sync interval has elapsed since its last pass"""
    if account.last_sync_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    last = account.last_sync_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(minutes=account.sync_interval_minutes)


class SyncAccountRegistry:
    """Per-brand destination account configs"""

    def __init__(self, db: AsyncSession, settings: Settings = default_settings):
        self.db = db
        self.default_batch_size = settings.sync_default_batch_size

    async def list_active(
            self,
            brand_id: UUID | None = None,
            account_id: UUID | None = None
    ) -> list[SyncAccount]:
        stmt = select(SyncAccountConfig).where(SyncAccountConfig.is_active.is_(True))
        if brand_id is not None:
            stmt = stmt.where(SyncAccountConfig.brand_id == brand_id)
        if account_id is not None:
            stmt = stmt.where(SyncAccountConfig.id == account_id)
        stmt = stmt.order_by(SyncAccountConfig.created_at.asc()).execution_options(populate_existing=True)

        result = await self.db.execute(stmt)
        return [SyncAccount.from_model(config) for config in result.scalars().unique().all()]

    async def list_all(self) -> list[SyncAccount]:
        result = await self.db.execute(
            select(SyncAccountConfig)
            .order_by(SyncAccountConfig.last_sync_at.desc().nulls_last())
            .execution_options(populate_existing=True)
        )
        return [SyncAccount.from_model(config) for config in result.scalars().unique().all()]

    async def record_sync_result(self, config_id: UUID, status: str, count: int) -> None:
        now = datetime.now(timezone.utc)
        try:
            await self.db.execute(
                update(SyncAccountConfig)
                .where(SyncAccountConfig.id == config_id)
                .values(
                    last_sync_at=now,
                    last_sync_status=status,
                    last_sync_count=count,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("sync_result_record_failed", config_id=str(config_id), error=str(e))
            raise

        logger.info("sync_result_recorded", config_id=str(config_id), status=status, count=count)

    # Admin CRUD

    async def get(self, config_id: UUID) -> SyncAccountConfig | None:
        result = await self.db.execute(
            select(SyncAccountConfig)
            .where(SyncAccountConfig.id == config_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().unique().one_or_none()

    async def list_configs(self) -> list[SyncAccountConfig]:
        result = await self.db.execute(
            select(SyncAccountConfig).order_by(SyncAccountConfig.created_at.desc())
        )
        return list(result.scalars().unique().all())

    async def create(self, data: SyncAccountCreate) -> SyncAccountConfig:
        brand = await self.db.get(Brand, data.brand_id)
        if brand is None:
            raise BrandNotFound(f"Brand {data.brand_id} not found")

        existing = await self.db.scalar(
            select(SyncAccountConfig.id).where(SyncAccountConfig.brand_id == data.brand_id)
        )
        if existing is not None:
            raise SyncAccountExists("Sync account already exists for this brand. Use PATCH to update.")

        now = datetime.now(timezone.utc)
        config = SyncAccountConfig(
            brand_id=data.brand_id,
            customer_id=normalize_customer_id(data.customer_id),
            conversion_action_id=data.conversion_action_id,
            access_token=data.access_token or None,
            refresh_token=data.refresh_token or None,
            token_expires_at=data.token_expires_at,
            is_active=data.is_active,
            batch_size=data.batch_size or self.default_batch_size,
            sync_interval_minutes=data.sync_interval_minutes,
            last_sync_count=0,
            created_at=now,
            updated_at=now
        )
        self.db.add(config)
        await self.db.commit()

        logger.info("sync_account_created", config_id=str(config.id), brand_id=str(data.brand_id))
        return await self.get(config.id)

    async def update(self, config_id: UUID, changes: SyncAccountUpdate) -> SyncAccountConfig | None:
        values = {
            field: value
            for field, value in changes.model_dump(exclude_unset=True).items()
            if value is not None or field in NULLABLE_FIELDS
        }
        if "customer_id" in values:
            values["customer_id"] = normalize_customer_id(values["customer_id"])
        values["updated_at"] = datetime.now(timezone.utc)

        result = await self.db.execute(
            update(SyncAccountConfig)
            .where(SyncAccountConfig.id == config_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            return None

        logger.info("sync_account_updated", config_id=str(config_id), fields=sorted(values))
        return await self.get(config_id)

    async def delete(self, config_id: UUID) -> bool:
        result = await self.db.execute(delete(SyncAccountConfig).where(SyncAccountConfig.id == config_id))
        await self.db.commit()
        return result.rowcount > 0
