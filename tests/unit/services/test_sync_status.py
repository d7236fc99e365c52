"""Unit tests for sync status persistence and snapshot sharing."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_mirror.infrastructure.redis import CacheService
from catalog_mirror.schemas import SyncJobState, SyncJobStatus
from catalog_mirror.services.sync_status import (
    SyncStatePublisher,
    SyncStatusRepository,
    job_key,
    snapshot_key,
)
from conftest import ORG_ID, FakeRedis


STARTED = datetime(2026, 10, 19, 9, 0)


def job_state(status: SyncJobStatus, **overrides) -> SyncJobState:
    data = {
        "job_id": "job-1",
        "organization_id": ORG_ID,
        "sync_type": "products",
        "status": status,
        "started_at": STARTED,
    }
    data.update(overrides)
    return SyncJobState(**data)


class TestSyncStatusRepository:
    @pytest.mark.asyncio
    async def test_syncing_records_start_only(self, session: AsyncSession, organizations) -> None:
        repo = SyncStatusRepository(session)
        await repo.record(job_state(SyncJobStatus.SYNCING, progress=20))

        row = await repo.get(ORG_ID, "products")
        assert row.status == "syncing"
        assert row.progress == 20
        assert row.last_started_at == STARTED
        assert row.last_sync_at is None
        assert await repo.last_successful_sync_at(ORG_ID, "products") is None

    @pytest.mark.asyncio
    async def test_success_sets_last_sync_to_job_start(
        self, session: AsyncSession, organizations
    ) -> None:
        repo = SyncStatusRepository(session)
        await repo.record(job_state(SyncJobStatus.SYNCING))
        await repo.record(job_state(SyncJobStatus.SUCCESS, progress=100))

        assert await repo.last_successful_sync_at(ORG_ID, "products") == STARTED

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_success(
        self, session: AsyncSession, organizations
    ) -> None:
        repo = SyncStatusRepository(session)
        await repo.record(job_state(SyncJobStatus.SUCCESS))
        await repo.record(
            job_state(
                SyncJobStatus.ERROR,
                job_id="job-2",
                started_at=datetime(2026, 10, 19, 10, 0),
                error_message="boom",
            )
        )

        row = await repo.get(ORG_ID, "products")
        state = SyncStatusRepository.to_state(row)
        assert state.job_id == "job-2"
        assert state.status == SyncJobStatus.ERROR
        assert state.error_message == "boom"
        assert row.last_sync_at == STARTED

    @pytest.mark.asyncio
    async def test_types_are_tracked_separately(
        self, session: AsyncSession, organizations
    ) -> None:
        repo = SyncStatusRepository(session)
        await repo.record(job_state(SyncJobStatus.SUCCESS))

        assert await repo.get(ORG_ID, "variations") is None


class TestSyncStatePublisher:
    @pytest.mark.asyncio
    async def test_publish_shares_snapshot_and_persists(
        self, session_factory: async_sessionmaker[AsyncSession], organizations
    ) -> None:
        client = FakeRedis()
        publisher = SyncStatePublisher(
            session_factory=session_factory, cache=CacheService(client, namespace="")
        )
        state = job_state(SyncJobStatus.SYNCING, progress=35, current_step="Fetching products")
        await publisher.publish(state)

        assert set(client.data) == {snapshot_key(ORG_ID, "products"), job_key("job-1")}
        assert await publisher.load(ORG_ID, "products") == state
        assert await publisher.load_job("job-1") == state

        async with session_factory() as session:
            row = await SyncStatusRepository(session).get(ORG_ID, "products")
        assert row.progress == 35

    @pytest.mark.asyncio
    async def test_without_redis_only_persists(
        self, session_factory: async_sessionmaker[AsyncSession], organizations
    ) -> None:
        publisher = SyncStatePublisher(session_factory=session_factory, cache=CacheService(None))
        await publisher.publish(job_state(SyncJobStatus.SUCCESS))

        assert await publisher.load(ORG_ID, "products") is None
        async with session_factory() as session:
            assert await SyncStatusRepository(session).last_successful_sync_at(
                ORG_ID, "products"
            ) == STARTED


class TestClaim:
    @pytest.mark.asyncio
    async def test_claims_missing_row(self, session: AsyncSession, organizations) -> None:
        repo = SyncStatusRepository(session)
        holder = await repo.claim(job_state(SyncJobStatus.SYNCING), timedelta(minutes=15))

        assert holder is None
        row = await repo.get(ORG_ID, "products")
        assert row.status == "syncing"
        assert row.job_id == "job-1"
        assert row.last_started_at == STARTED

    @pytest.mark.asyncio
    async def test_finished_row_is_reclaimed(self, session: AsyncSession, organizations) -> None:
        repo = SyncStatusRepository(session)
        await repo.record(job_state(SyncJobStatus.SUCCESS, progress=100))

        holder = await repo.claim(
            job_state(SyncJobStatus.SYNCING, job_id="job-2"), timedelta(minutes=15)
        )

        assert holder is None
        row = await repo.get(ORG_ID, "products")
        assert row.job_id == "job-2"
        assert row.progress == 0
        assert row.last_sync_at == STARTED

    @pytest.mark.asyncio
    async def test_live_claim_reports_holder(self, session: AsyncSession, organizations) -> None:
        repo = SyncStatusRepository(session)
        await repo.claim(job_state(SyncJobStatus.SYNCING), timedelta(minutes=15))

        holder = await repo.claim(
            job_state(SyncJobStatus.SYNCING, job_id="job-2"), timedelta(minutes=15)
        )

        assert holder == "job-1"
        assert (await repo.get(ORG_ID, "products")).job_id == "job-1"

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, session: AsyncSession, organizations) -> None:
        await SyncStatusRepository(session, clock=lambda: STARTED).claim(
            job_state(SyncJobStatus.SYNCING), timedelta(minutes=15)
        )

        later = SyncStatusRepository(session, clock=lambda: STARTED + timedelta(minutes=20))
        holder = await later.claim(
            job_state(SyncJobStatus.SYNCING, job_id="job-2"), timedelta(minutes=15)
        )

        assert holder is None
        assert (await later.get(ORG_ID, "products")).job_id == "job-2"

    @pytest.mark.asyncio
    async def test_record_leaves_row_of_other_syncing_job(
        self, session: AsyncSession, organizations
    ) -> None:
        repo = SyncStatusRepository(session)
        await repo.claim(job_state(SyncJobStatus.SYNCING, job_id="job-2"), timedelta(minutes=15))

        await repo.record(job_state(SyncJobStatus.ERROR, error_message="late"))

        row = await repo.get(ORG_ID, "products")
        assert row.job_id == "job-2"
        assert row.status == "syncing"
        assert row.error_message is None

    @pytest.mark.asyncio
    async def test_publisher_without_database_always_claims(self) -> None:
        publisher = SyncStatePublisher(cache=CacheService(None))

        assert await publisher.claim(job_state(SyncJobStatus.SYNCING), timedelta(0)) is None
