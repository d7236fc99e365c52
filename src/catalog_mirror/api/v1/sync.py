"""Sync job control endpoints.

Jobs started here run as background tasks of the API process. Jobs run by
the Celery worker are visible through the Redis snapshot and the
``sync_status`` table.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_mirror.api.v1.deps import get_organization_id, get_sync_controller
from catalog_mirror.exceptions import (
    InvalidScope,
    JobNotFound,
    UnknownSyncType,
)
from catalog_mirror.infrastructure.database.connection import (
    get_session,
    get_session_factory_dependency,
)
from catalog_mirror.infrastructure.provider import CatalogProvider, provider_for_organization
from catalog_mirror.schemas import SyncJobState
from catalog_mirror.services.catalog_store import CatalogMirrorStore
from catalog_mirror.services.sync_controller import SyncJobController
from catalog_mirror.services.sync_status import SyncStatusRepository
from shared.constants import JOB_TYPES, SYNC_TYPE_PRODUCT, SYNC_TYPES

router = APIRouter()


async def _run_job(
    controller: SyncJobController,
    job: SyncJobState,
    provider: CatalogProvider,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    async with provider:
        await controller.run(job, provider, session_factory)


async def _start(
    controller: SyncJobController,
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    background_tasks: BackgroundTasks,
    organization_id: str,
    sync_type: str,
    product_id: int | None = None,
) -> SyncJobState:
    organization = await CatalogMirrorStore(session).get_organization(organization_id)
    if organization is None:
        raise InvalidScope(f"Organization {organization_id} not found")
    provider = provider_for_organization(organization)

    try:
        job = await controller.acquire(organization_id, sync_type, product_id=product_id)
    except Exception:
        await provider.aclose()
        raise
    background_tasks.add_task(_run_job, controller, job, provider, session_factory)
    return job


@router.post(
    "/products/{product_id}", response_model=SyncJobState, status_code=status.HTTP_202_ACCEPTED
)
async def resync_product(
    product_id: int,
    background_tasks: BackgroundTasks,
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobState:
    """Resync one product and its variations; the job's sync type is `product`."""
    return await _start(
        controller,
        session,
        session_factory,
        background_tasks,
        organization_id,
        SYNC_TYPE_PRODUCT,
        product_id=product_id,
    )


@router.post("/{sync_type}", response_model=SyncJobState, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    sync_type: str,
    background_tasks: BackgroundTasks,
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobState:
    """
    Start a synchronization job.

    **Sync types:**
    - `products`: products, plus variations of variable products
    - `variations`: variations of every mirrored variable product
    - `incremental`: products changed since the newest mirrored update

    Returns `409 sync_already_running` with the active `job_id` when a job of
    the same type is still syncing for the organization, in this process or
    another one.
    """
    if sync_type not in SYNC_TYPES:
        raise UnknownSyncType(f"Unknown sync type '{sync_type}'")
    return await _start(
        controller, session, session_factory, background_tasks, organization_id, sync_type
    )


@router.get("/{sync_type}", response_model=SyncJobState)
async def get_sync_state(
    sync_type: str,
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobState:
    """Latest job state: this process first, then the shared snapshot, then sync_status."""
    if sync_type not in JOB_TYPES:
        raise UnknownSyncType(f"Unknown sync type '{sync_type}'")

    job = controller.get_latest(organization_id, sync_type)
    if job is not None:
        return job

    if controller.publisher is not None:
        shared = await controller.publisher.load(organization_id, sync_type)
        if shared is not None:
            return shared

    row = await SyncStatusRepository(session).get(organization_id, sync_type)
    if row is None:
        raise JobNotFound(f"No {sync_type} sync has run for organization {organization_id}")
    return SyncStatusRepository.to_state(row)


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobState)
async def cancel_sync(
    job_id: str,
    organization_id: str = Depends(get_organization_id),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobState:
    """Cancel a syncing job. The job reports `error` with reason `cancelled` immediately."""
    job = controller.get_job(job_id)
    if job is None or job.organization_id != organization_id:
        raise JobNotFound(f"Sync job {job_id} not found")

    job = controller.cancel(job_id)
    await controller.publish(job)
    return job
