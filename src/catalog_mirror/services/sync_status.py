"""Persistence and sharing of sync job snapshots.

``sync_status`` keeps the last known state per organization and sync type
so the next sync can find the previous successful run. Redis carries the
full job snapshot so the API can report jobs run by the worker.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_mirror.infrastructure.database.models import SyncStatus
from catalog_mirror.infrastructure.redis import CacheService, get_redis_client
from catalog_mirror.schemas import SyncJobState, SyncJobStatus, utcnow
from shared.constants import SYNC_SNAPSHOT_KEY_PREFIX

logger = structlog.get_logger()


def snapshot_key(organization_id: str, sync_type: str) -> str:
    return f"{SYNC_SNAPSHOT_KEY_PREFIX}:{organization_id}:{sync_type}"


def job_key(job_id: str) -> str:
    return f"{SYNC_SNAPSHOT_KEY_PREFIX}:id:{job_id}"


class SyncStatusRepository:
    """Row-per-(organization, sync type) status table."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    async def get(self, organization_id: str, sync_type: str) -> SyncStatus | None:
        result = await self.session.execute(
            select(SyncStatus)
            .where(
                SyncStatus.organization_id == organization_id,
                SyncStatus.sync_type == sync_type,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def last_successful_sync_at(
        self, organization_id: str, sync_type: str
    ) -> datetime | None:
        result = await self.session.execute(
            select(SyncStatus.last_sync_at).where(
                SyncStatus.organization_id == organization_id,
                SyncStatus.sync_type == sync_type,
            )
        )
        return result.scalar_one_or_none()

    async def claim(self, state: SyncJobState, stale_after: timedelta) -> str | None:
        """Mark the row syncing for ``state`` unless another live job holds it.

        Returns ``None`` once claimed, otherwise the holder's job id. A syncing
        row untouched for longer than ``stale_after`` counts as abandoned.
        """
        now = self.clock()
        result = await self.session.execute(
            update(SyncStatus)
            .where(
                SyncStatus.organization_id == state.organization_id,
                SyncStatus.sync_type == state.sync_type,
                or_(
                    SyncStatus.status != SyncJobStatus.SYNCING.value,
                    SyncStatus.updated_at < now - stale_after,
                ),
            )
            .values(
                status=SyncJobStatus.SYNCING.value,
                job_id=state.job_id,
                progress=0,
                error_message=None,
                last_started_at=state.started_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.session.commit()
            return None

        row = await self.get(state.organization_id, state.sync_type)
        if row is None:
            self.session.add(
                SyncStatus(
                    organization_id=state.organization_id,
                    sync_type=state.sync_type,
                    status=SyncJobStatus.SYNCING.value,
                    job_id=state.job_id,
                    progress=0,
                    records_synced=0,
                    items_failed=0,
                    last_started_at=state.started_at,
                    updated_at=now,
                )
            )
            try:
                await self.session.commit()
                return None
            except IntegrityError:
                await self.session.rollback()
                row = await self.get(state.organization_id, state.sync_type)

        return (row.job_id or "") if row is not None else ""

    async def record(self, state: SyncJobState) -> SyncStatus:
        """Write the job state onto the status row and commit.

        ``last_sync_at`` is set to the start time of a successful job; ledger
        entries after that instant were not folded into its external values.
        """
        row = await self.get(state.organization_id, state.sync_type)
        if (
            row is not None
            and row.status == SyncJobStatus.SYNCING.value
            and row.job_id not in (None, state.job_id)
        ):
            logger.warning(
                "Sync status row held by another job",
                job_id=state.job_id,
                holder_job_id=row.job_id,
                organization_id=state.organization_id,
                sync_type=state.sync_type,
            )
            return row
        if row is None:
            row = SyncStatus(
                organization_id=state.organization_id,
                sync_type=state.sync_type,
                records_synced=0,
                items_failed=0,
            )
            self.session.add(row)

        row.status = state.status.value
        row.job_id = state.job_id
        row.progress = state.progress
        row.error_message = state.error_message
        row.records_synced = state.report.items_upserted
        row.items_failed = len(state.report.failures)
        row.updated_at = self.clock()
        if state.status == SyncJobStatus.SYNCING:
            row.last_started_at = state.started_at
        elif state.status == SyncJobStatus.SUCCESS:
            row.last_sync_at = state.started_at

        await self.session.commit()
        return row

    @staticmethod
    def to_state(row: SyncStatus) -> SyncJobState:
        return SyncJobState(
            job_id=row.job_id or "",
            organization_id=row.organization_id,
            sync_type=row.sync_type,
            status=SyncJobStatus(row.status),
            progress=row.progress or 0,
            items_processed=row.records_synced or 0,
            error_message=row.error_message,
            started_at=row.last_started_at,
        )


class SyncStatePublisher:
    """Pushes job snapshots to Redis and the sync_status table.

    Publishing never fails the job: storage errors are logged and the
    in-process state stays authoritative.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache: CacheService | None = None,
    ):
        self.session_factory = session_factory
        self._cache = cache

    async def _get_cache(self) -> CacheService:
        if self._cache is None:
            self._cache = CacheService(await get_redis_client())
        return self._cache

    async def publish(self, state: SyncJobState) -> None:
        cache = await self._get_cache()
        payload = state.model_dump(mode="json")
        await cache.set(snapshot_key(state.organization_id, state.sync_type), payload)
        await cache.set(job_key(state.job_id), payload)

        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as session:
                await SyncStatusRepository(session).record(state)
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to persist sync status",
                job_id=state.job_id,
                organization_id=state.organization_id,
                sync_type=state.sync_type,
                error=str(e),
            )

    async def claim(self, state: SyncJobState, stale_after: timedelta) -> str | None:
        """Claim the sync_status row for a starting job; see SyncStatusRepository.claim."""
        if self.session_factory is None:
            return None
        async with self.session_factory() as session:
            return await SyncStatusRepository(session).claim(state, stale_after)

    async def load(self, organization_id: str, sync_type: str) -> SyncJobState | None:
        cache = await self._get_cache()
        payload = await cache.get(snapshot_key(organization_id, sync_type))
        return SyncJobState.model_validate(payload) if payload else None

    async def load_job(self, job_id: str) -> SyncJobState | None:
        cache = await self._get_cache()
        payload = await cache.get(job_key(job_id))
        return SyncJobState.model_validate(payload) if payload else None
