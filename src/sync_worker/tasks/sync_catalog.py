"""Catalog synchronization tasks."""

import asyncio

import structlog
from celery import shared_task

from catalog_mirror.exceptions import CatalogMirrorError
from catalog_mirror.infrastructure.database.connection import (
    create_task_engine,
    make_session_factory,
)
from catalog_mirror.infrastructure.provider import is_configured
from catalog_mirror.infrastructure.redis import CacheService, close_redis, get_redis_client
from catalog_mirror.schemas import SyncFailureReason, SyncJobState
from catalog_mirror.services.catalog_store import CatalogMirrorStore
from catalog_mirror.services.sync_controller import SyncJobController, sync_organization
from catalog_mirror.services.sync_status import SyncStatePublisher
from shared.constants import SYNC_TYPE_PRODUCTS

logger = structlog.get_logger()


async def _run_sync(
    organization_id: str, sync_type: str, product_id: int | None = None
) -> SyncJobState:
    engine = create_task_engine()
    session_factory = make_session_factory(engine)
    try:
        publisher = SyncStatePublisher(
            session_factory=session_factory,
            cache=CacheService(await get_redis_client()),
        )
        controller = SyncJobController(publisher=publisher)
        return await sync_organization(
            controller, session_factory, organization_id, sync_type, product_id=product_id
        )
    finally:
        # both clients are bound to this task's event loop
        await close_redis()
        await engine.dispose()


async def _configured_organizations() -> list[str]:
    engine = create_task_engine()
    try:
        async with make_session_factory(engine)() as session:
            organizations = await CatalogMirrorStore(session).list_organizations()
    finally:
        await engine.dispose()
    return [organization.id for organization in organizations if is_configured(organization)]


@shared_task(bind=True, max_retries=3, default_retry_delay=300)
def sync_catalog(
    self,
    organization_id: str,
    sync_type: str = SYNC_TYPE_PRODUCTS,
    product_id: int | None = None,
) -> dict:
    """
    Synchronize one organization's catalog from WooCommerce.

    Pulls every page, upserts it into the mirror and reconciles stock with
    the adjustment ledger. A job that fails on a retriable provider error is
    retried later as a whole; client errors such as bad credentials are not.

    Returns:
        dict: Final job state
    """
    logger.info("Starting catalog sync", organization_id=organization_id, sync_type=sync_type)

    try:
        job = asyncio.run(_run_sync(organization_id, sync_type, product_id))
    except CatalogMirrorError as e:
        logger.error(
            "Catalog sync rejected",
            organization_id=organization_id,
            sync_type=sync_type,
            error=e.code,
            detail=e.message,
        )
        return {"success": False, "error": e.code, "detail": e.message}

    if job.failure_reason == SyncFailureReason.PROVIDER_ERROR and job.retriable:
        raise self.retry(exc=RuntimeError(job.error_message))

    return {"success": job.failure_reason is None, **job.model_dump(mode="json")}


@shared_task
def sync_all_organizations(sync_type: str = SYNC_TYPE_PRODUCTS) -> dict:
    """Queue a sync for every organization with WooCommerce credentials."""
    organization_ids = asyncio.run(_configured_organizations())
    for organization_id in organization_ids:
        sync_catalog.delay(organization_id, sync_type)

    logger.info("Queued catalog syncs", sync_type=sync_type, organizations=len(organization_ids))
    return {"queued": len(organization_ids), "organizations": organization_ids}
