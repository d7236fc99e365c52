"""Request-scoped dependencies shared by the v1 routers."""

from fastapi import Request

from catalog_mirror.config import get_settings
from catalog_mirror.exceptions import InvalidScope
from catalog_mirror.services.sync_controller import SyncJobController


def get_organization_id(request: Request) -> str:
    """Tenant from the organization header; every endpoint is scoped by it."""
    header = get_settings().organization_header
    organization_id = (request.headers.get(header) or "").strip()
    if not organization_id:
        raise InvalidScope(f"Missing {header} header")
    return organization_id


def get_actor_id(request: Request) -> str | None:
    actor_id = (request.headers.get(get_settings().actor_header) or "").strip()
    return actor_id or None


def get_sync_controller(request: Request) -> SyncJobController:
    return request.app.state.sync_controller
