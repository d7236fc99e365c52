"""Synchronization job orchestration.

A job moves ``syncing -> success | error``. At most one job per
(organization, sync type) is syncing at a time; a finished job allows a new
start immediately. Within a process the registry enforces this; across
processes the job also claims its ``sync_status`` row. The driving loop pulls
pages from the provider, upserts them, then reconciles stock against the
adjustment ledger.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from functools import partial
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from catalog_mirror.config import get_settings
from catalog_mirror.exceptions import (
    InvalidJobTransition,
    InvalidScope,
    JobNotFound,
    ProviderError,
    SyncAlreadyRunning,
    UnknownSyncType,
)
from catalog_mirror.infrastructure.provider import (
    CatalogProvider,
    provider_for_organization,
)
from catalog_mirror.schemas import (
    SyncFailureReason,
    SyncJobState,
    SyncJobStatus,
    utcnow,
)
from catalog_mirror.services.catalog_store import CatalogMirrorStore, UpsertResult
from catalog_mirror.services.reconciler import ReconcileTarget, StockReconciler
from catalog_mirror.services.stock_ledger import StockAdjustmentLedger
from catalog_mirror.services.sync_status import SyncStatePublisher, SyncStatusRepository
from shared.constants import (
    INCREMENTAL_OVERLAP_SECONDS,
    JOB_TYPES,
    MAX_FETCH_PROGRESS,
    RECONCILE_PROGRESS,
    STEP_CANCELLED,
    STEP_DONE,
    STEP_FAILED,
    STEP_FETCHING_PRODUCT,
    STEP_FETCHING_PRODUCTS,
    STEP_FETCHING_VARIATIONS,
    STEP_RECONCILING,
    STEP_STARTING,
    SYNC_TYPE_INCREMENTAL,
    SYNC_TYPE_PRODUCT,
    SYNC_TYPE_VARIATIONS,
    VARIABLE_PRODUCT_TYPE,
)

logger = structlog.get_logger()

SessionFactory = async_sessionmaker[AsyncSession]


class _JobCancelled(Exception):
    """Raised inside the driving loop once a cancel has been requested."""


def _is_retriable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retriable


class SyncJobController:
    """In-process registry and driver of sync jobs."""

    def __init__(
        self,
        publisher: SyncStatePublisher | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.publisher = publisher
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.backoff_seconds = (
            settings.provider_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.backoff_max_seconds = (
            settings.provider_backoff_max_seconds
            if backoff_max_seconds is None
            else backoff_max_seconds
        )
        self.clock = clock
        self.claim_timeout = timedelta(seconds=settings.sync_claim_timeout_seconds)

        self._jobs: dict[str, SyncJobState] = {}
        self._active: dict[tuple[str, str], str] = {}
        self._latest: dict[tuple[str, str], str] = {}
        self._cancel_requested: set[str] = set()

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def start(
        self, organization_id: str, sync_type: str, product_id: int | None = None
    ) -> SyncJobState:
        """Register a new syncing job, or raise SyncAlreadyRunning.

        ``product_id`` is required for, and only accepted by, the
        ``product`` sync type.
        """
        if not organization_id:
            raise InvalidScope("organization_id is required")
        if sync_type not in JOB_TYPES:
            raise UnknownSyncType(f"Unknown sync type '{sync_type}'")
        if (sync_type == SYNC_TYPE_PRODUCT) != (product_id is not None):
            raise InvalidScope(
                f"product_id is required for, and only valid with, a {SYNC_TYPE_PRODUCT} sync"
            )

        active = self.get_active(organization_id, sync_type)
        if active is not None:
            raise SyncAlreadyRunning(
                f"A {sync_type} sync is already running for organization {organization_id}",
                job_id=active.job_id,
            )

        job = SyncJobState(
            job_id=str(uuid4()),
            organization_id=organization_id,
            sync_type=sync_type,
            product_id=product_id,
            status=SyncJobStatus.SYNCING,
            progress=0,
            current_step=STEP_STARTING,
            started_at=self.clock(),
        )
        key = (organization_id, sync_type)
        self._active[key] = job.job_id
        previous_id = self._latest.get(key)
        if previous_id is not None:
            self._jobs.pop(previous_id, None)
        self._latest[key] = job.job_id
        self._jobs[job.job_id] = job

        logger.info(
            "Sync job started",
            job_id=job.job_id,
            organization_id=organization_id,
            sync_type=sync_type,
            product_id=product_id,
        )
        return job

    async def acquire(
        self, organization_id: str, sync_type: str, product_id: int | None = None
    ) -> SyncJobState:
        """Start a job, claim its sync_status row and publish it.

        The claim fails with SyncAlreadyRunning when another process holds a
        syncing row that is younger than ``claim_timeout``.
        """
        job = self.start(organization_id, sync_type, product_id=product_id)
        if self.publisher is None:
            return job

        try:
            holder = await self.publisher.claim(job, self.claim_timeout)
        except Exception:
            self._discard(job)
            raise
        if holder is not None:
            self._discard(job)
            logger.info(
                "Sync claimed by another process",
                organization_id=organization_id,
                sync_type=sync_type,
                holder_job_id=holder,
            )
            raise SyncAlreadyRunning(
                f"A {sync_type} sync is already running for organization {organization_id}",
                job_id=holder,
            )

        await self.publish(job)
        return job

    def report_progress(
        self,
        job_id: str,
        progress: int | None = None,
        current_step: str | None = None,
        items_processed: int | None = None,
        total_items: int | None = None,
    ) -> SyncJobState:
        job = self._require_syncing(job_id, "report progress for")

        if progress is not None:
            value = max(0, min(100, int(progress)))
            if value < job.progress:
                logger.warning(
                    "Progress regression clamped",
                    job_id=job_id,
                    reported=progress,
                    current=job.progress,
                )
                value = job.progress
            job.progress = value

        if items_processed is not None:
            if items_processed < job.items_processed:
                logger.warning(
                    "Processed count regression ignored",
                    job_id=job_id,
                    reported=items_processed,
                    current=job.items_processed,
                )
            else:
                job.items_processed = items_processed

        if total_items is not None:
            job.total_items = max(0, total_items)
        if current_step is not None:
            job.current_step = current_step
        return job

    def complete(
        self,
        job_id: str,
        success: bool,
        error_message: str | None = None,
        failure_reason: SyncFailureReason | None = None,
    ) -> SyncJobState:
        job = self._require_syncing(job_id, "complete")
        if success:
            job.status = SyncJobStatus.SUCCESS
            job.progress = 100
            job.current_step = STEP_DONE
            job.error_message = None
            job.failure_reason = None
        else:
            job.status = SyncJobStatus.ERROR
            job.current_step = STEP_FAILED
            job.error_message = error_message or "Synchronization failed"
            job.failure_reason = failure_reason or SyncFailureReason.FAILED
        job.finished_at = self.clock()
        self._release(job)

        logger.info(
            "Sync job finished",
            job_id=job_id,
            organization_id=job.organization_id,
            sync_type=job.sync_type,
            status=job.status.value,
            items_upserted=job.report.items_upserted,
            failures=len(job.report.failures),
            error=job.error_message,
        )
        return job

    def cancel(self, job_id: str) -> SyncJobState:
        """Move the job to error/cancelled; the driving loop stops at its next check."""
        job = self._require_syncing(job_id, "cancel")
        job.status = SyncJobStatus.ERROR
        job.failure_reason = SyncFailureReason.CANCELLED
        job.error_message = "Cancelled"
        job.current_step = STEP_CANCELLED
        job.finished_at = self.clock()
        self._cancel_requested.add(job_id)
        self._release(job)

        logger.info(
            "Sync job cancelled",
            job_id=job_id,
            organization_id=job.organization_id,
            sync_type=job.sync_type,
            progress=job.progress,
        )
        return job

    def is_cancelled(self, job_id: str) -> bool:
        return job_id in self._cancel_requested

    def get_job(self, job_id: str) -> SyncJobState | None:
        return self._jobs.get(job_id)

    def get_active(self, organization_id: str, sync_type: str) -> SyncJobState | None:
        job_id = self._active.get((organization_id, sync_type))
        return self._jobs.get(job_id) if job_id else None

    def get_latest(self, organization_id: str, sync_type: str) -> SyncJobState | None:
        job_id = self._latest.get((organization_id, sync_type))
        return self._jobs.get(job_id) if job_id else None

    async def publish(self, job: SyncJobState) -> None:
        if self.publisher is not None:
            await self.publisher.publish(job)

    def _require_syncing(self, job_id: str, action: str) -> SyncJobState:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Sync job {job_id} not found")
        if not job.is_active:
            raise InvalidJobTransition(
                f"Cannot {action} job {job_id} in status '{job.status.value}'"
            )
        return job

    def _release(self, job: SyncJobState) -> None:
        key = (job.organization_id, job.sync_type)
        if self._active.get(key) == job.job_id:
            del self._active[key]

    def _discard(self, job: SyncJobState) -> None:
        """Forget a job that never ran."""
        self._release(job)
        self._jobs.pop(job.job_id, None)
        key = (job.organization_id, job.sync_type)
        if self._latest.get(key) == job.job_id:
            del self._latest[key]

    # -------------------------------------------------------------------------
    # Driving loop
    # -------------------------------------------------------------------------

    async def run(
        self,
        job: SyncJobState,
        provider: CatalogProvider,
        session_factory: SessionFactory,
    ) -> SyncJobState:
        """Fetch, upsert and reconcile until the job reaches a terminal state."""
        log = logger.bind(
            job_id=job.job_id,
            organization_id=job.organization_id,
            sync_type=job.sync_type,
        )
        targets: list[ReconcileTarget] = []
        await self.publish(job)

        try:
            if job.sync_type == SYNC_TYPE_PRODUCT:
                await self._pull_product(job, provider, session_factory, targets)
            elif job.sync_type == SYNC_TYPE_VARIATIONS:
                await self._pull_all_variations(job, provider, session_factory, targets)
            else:
                modified_after = None
                if job.sync_type == SYNC_TYPE_INCREMENTAL:
                    modified_after = await self._incremental_cursor(job, session_factory)
                await self._pull_products(
                    job, provider, session_factory, targets, modified_after
                )

            self._checkpoint(job)
            self.report_progress(
                job.job_id, progress=RECONCILE_PROGRESS, current_step=STEP_RECONCILING
            )
            await self.publish(job)

            async with session_factory() as session:
                store = CatalogMirrorStore(session)
                ledger = StockAdjustmentLedger(session, store=store)
                fallback = await SyncStatusRepository(session).last_successful_sync_at(
                    job.organization_id, job.sync_type
                )
                outcome = await StockReconciler(store, ledger).reconcile(
                    job.organization_id,
                    targets,
                    sync_started_at=job.started_at,
                    fallback_snapshot_at=fallback,
                )
                await session.commit()

            self._checkpoint(job)
            job.report.targets_reconciled = outcome.reconciled
            job.report.conflicts.extend(outcome.conflicts)
            self.complete(job.job_id, success=True)

        except _JobCancelled:
            log.info("Sync loop stopped after cancellation", progress=job.progress)
        except ProviderError as e:
            log.error("Sync failed on provider", error=str(e), retriable=e.retriable)
            if job.is_active:
                job.retriable = e.retriable
            self._fail(job, str(e), SyncFailureReason.PROVIDER_ERROR)
        except Exception as e:
            log.exception("Sync failed", error=str(e))
            self._fail(job, f"{type(e).__name__}: {e}", SyncFailureReason.INTERNAL_ERROR)
        finally:
            self._cancel_requested.discard(job.job_id)
            await self.publish(job)

        return job

    async def _incremental_cursor(
        self, job: SyncJobState, session_factory: SessionFactory
    ) -> datetime | None:
        async with session_factory() as session:
            latest = await CatalogMirrorStore(session).latest_product_update(job.organization_id)
        if latest is None:
            logger.info(
                "No mirrored products, incremental sync pulls everything",
                job_id=job.job_id,
                organization_id=job.organization_id,
            )
            return None
        return latest - timedelta(seconds=INCREMENTAL_OVERLAP_SECONDS)

    async def _pull_products(
        self,
        job: SyncJobState,
        provider: CatalogProvider,
        session_factory: SessionFactory,
        targets: list[ReconcileTarget],
        modified_after: datetime | None = None,
    ) -> None:
        self._checkpoint(job)
        self.report_progress(job.job_id, current_step=STEP_FETCHING_PRODUCTS)
        cursor: str | None = None

        while True:
            self._checkpoint(job)
            page = await self._fetch(
                job,
                partial(provider.fetch_products_page, cursor, modified_after=modified_after),
            )
            self._checkpoint(job)

            records = [{**item, "organization_id": job.organization_id} for item in page.items]
            async with session_factory() as session:
                result = await CatalogMirrorStore(session).upsert_products(
                    job.organization_id, records
                )
                await session.commit()
            self._absorb(job, result, targets)
            self._checkpoint(job)

            processed = job.items_processed + len(page.items)
            total = page.total if page.total is not None else job.total_items
            self.report_progress(
                job.job_id,
                progress=self._fetch_progress(job, processed, total),
                current_step=STEP_FETCHING_PRODUCTS,
                items_processed=processed,
                total_items=total,
            )
            await self.publish(job)

            synced_ids = {record.id for record in result.applied} | set(result.stale)
            for item in page.items:
                if item.get("type") == VARIABLE_PRODUCT_TYPE and item.get("id") in synced_ids:
                    await self._pull_variations(
                        job, provider, session_factory, item["id"], targets
                    )

            cursor = page.next_cursor
            if cursor is None:
                break

    async def _pull_product(
        self,
        job: SyncJobState,
        provider: CatalogProvider,
        session_factory: SessionFactory,
        targets: list[ReconcileTarget],
    ) -> None:
        """Resync one product and, for a variable product, all of its variations."""
        self._checkpoint(job)
        self.report_progress(
            job.job_id, current_step=f"{STEP_FETCHING_PRODUCT} ({job.product_id})", total_items=1
        )

        item = await self._fetch(job, partial(provider.fetch_product, job.product_id))
        self._checkpoint(job)

        async with session_factory() as session:
            result = await CatalogMirrorStore(session).upsert_products(
                job.organization_id, [{**item, "organization_id": job.organization_id}]
            )
            await session.commit()
        self._absorb(job, result, targets)
        self._checkpoint(job)

        self.report_progress(
            job.job_id, progress=MAX_FETCH_PROGRESS // 2, items_processed=1
        )
        await self.publish(job)

        synced = bool(result.applied or result.stale)
        if synced and item.get("type") == VARIABLE_PRODUCT_TYPE:
            await self._pull_variations(job, provider, session_factory, item["id"], targets)

    async def _pull_all_variations(
        self,
        job: SyncJobState,
        provider: CatalogProvider,
        session_factory: SessionFactory,
        targets: list[ReconcileTarget],
    ) -> None:
        async with session_factory() as session:
            parent_ids = await CatalogMirrorStore(session).list_variable_product_ids(
                job.organization_id
            )
        self._checkpoint(job)

        total = len(parent_ids)
        self.report_progress(
            job.job_id, current_step=STEP_FETCHING_VARIATIONS, total_items=total
        )
        for index, parent_id in enumerate(parent_ids, start=1):
            await self._pull_variations(job, provider, session_factory, parent_id, targets)
            self.report_progress(
                job.job_id,
                progress=self._fetch_progress(job, index, total),
                items_processed=index,
            )
            await self.publish(job)

    async def _pull_variations(
        self,
        job: SyncJobState,
        provider: CatalogProvider,
        session_factory: SessionFactory,
        parent_id: int,
        targets: list[ReconcileTarget],
    ) -> None:
        cursor: str | None = None
        while True:
            self._checkpoint(job)
            page = await self._fetch(
                job, partial(provider.fetch_variations_page, parent_id, cursor)
            )
            self._checkpoint(job)

            records = [
                {
                    **item,
                    "organization_id": job.organization_id,
                    "parent_id": item.get("parent_id") or parent_id,
                }
                for item in page.items
            ]
            async with session_factory() as session:
                result = await CatalogMirrorStore(session).upsert_variations(
                    job.organization_id, records
                )
                await session.commit()
            self._absorb(job, result, targets)
            self._checkpoint(job)
            self.report_progress(
                job.job_id, current_step=f"{STEP_FETCHING_VARIATIONS} ({parent_id})"
            )

            cursor = page.next_cursor
            if cursor is None:
                break

    async def _fetch(
        self, job: SyncJobState, call: Callable[[], Awaitable[Any]]
    ) -> Any:
        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Retrying provider fetch",
                job_id=job.job_id,
                attempt=state.attempt_number,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception(_is_retriable),
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(call)

    def _checkpoint(self, job: SyncJobState) -> None:
        if self.is_cancelled(job.job_id) or not job.is_active:
            raise _JobCancelled()

    @staticmethod
    def _fetch_progress(job: SyncJobState, processed: int, total: int) -> int:
        if total > 0:
            return min(MAX_FETCH_PROGRESS, processed * MAX_FETCH_PROGRESS // total)
        return min(MAX_FETCH_PROGRESS, job.progress + 5)

    @staticmethod
    def _absorb(
        job: SyncJobState, result: UpsertResult, targets: list[ReconcileTarget]
    ) -> None:
        job.report.items_upserted += result.count
        job.report.items_skipped_stale += len(result.stale)
        job.report.failures.extend(result.failures)
        job.report.attribute_warnings.extend(result.attribute_warnings)
        for record in result.applied:
            target = ReconcileTarget.from_record(record)
            if target is not None:
                targets.append(target)

    def _fail(self, job: SyncJobState, message: str, reason: SyncFailureReason) -> None:
        if job.status == SyncJobStatus.SYNCING:
            self.complete(job.job_id, success=False, error_message=message, failure_reason=reason)


async def sync_organization(
    controller: SyncJobController,
    session_factory: SessionFactory,
    organization_id: str,
    sync_type: str,
    provider: Any | None = None,
    product_id: int | None = None,
) -> SyncJobState:
    """Claim and drive a sync to completion for one organization.

    Builds the WooCommerce provider from the organization's settings unless
    one is given; an owned provider is closed even when the claim fails.
    """
    async with session_factory() as session:
        organization = await CatalogMirrorStore(session).get_organization(organization_id)
    if organization is None:
        raise InvalidScope(f"Organization {organization_id} not found")

    owned = provider is None
    if owned:
        provider = provider_for_organization(organization)

    try:
        job = await controller.acquire(organization_id, sync_type, product_id=product_id)
        return await controller.run(job, provider, session_factory)
    finally:
        if owned:
            await provider.aclose()
