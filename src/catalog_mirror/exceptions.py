"""Domain errors raised by the catalog mirror services.

Each error carries a stable ``code`` and the HTTP status the API layer
renders it with.
"""

from typing import Any


class CatalogMirrorError(Exception):
    """Base class for all catalog mirror errors."""

    code = "catalog_mirror_error"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.extra}


class InvalidScope(CatalogMirrorError):
    """Organization is missing or cannot be resolved."""

    code = "invalid_scope"
    status_code = 400


class TargetNotFound(CatalogMirrorError):
    """Product or variation is not mirrored for the organization."""

    code = "not_found"
    status_code = 404


class StaleBaseline(CatalogMirrorError):
    """The adjustment's quantity_before no longer matches the stored stock."""

    code = "stale_baseline"
    status_code = 409

    def __init__(self, message: str, current_quantity: int | None = None):
        super().__init__(message, current_quantity=current_quantity)
        self.current_quantity = current_quantity


class NegativeStockRejected(CatalogMirrorError):
    """The adjustment would leave the target with negative stock."""

    code = "negative_stock_rejected"
    status_code = 422


class SyncAlreadyRunning(CatalogMirrorError):
    """A job for the same organization and sync type is still syncing."""

    code = "sync_already_running"
    status_code = 409

    def __init__(self, message: str, job_id: str):
        super().__init__(message, job_id=job_id)
        self.job_id = job_id


class InvalidJobTransition(CatalogMirrorError):
    """Operation not allowed in the job's current status."""

    code = "invalid_job_transition"
    status_code = 409


class UnknownSyncType(CatalogMirrorError):
    code = "unknown_sync_type"
    status_code = 400


class JobNotFound(CatalogMirrorError):
    code = "job_not_found"
    status_code = 404


class ProviderNotConfigured(CatalogMirrorError):
    """The organization has no usable catalog provider credentials."""

    code = "provider_not_configured"
    status_code = 400


class ProviderError(CatalogMirrorError):
    """Failure reported by the external catalog provider."""

    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, retriable: bool = False, status: int | None = None):
        super().__init__(message, retriable=retriable)
        self.retriable = retriable
        self.status = status
