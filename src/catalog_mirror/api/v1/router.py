"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from catalog_mirror.api.v1 import health, products, stock, sync

api_router = APIRouter()

# Include all routers
api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    products.router,
    prefix="/products",
    tags=["Products"],
)

api_router.include_router(
    stock.router,
    prefix="/stock-adjustments",
    tags=["Stock Adjustments"],
)

api_router.include_router(
    sync.router,
    prefix="/sync",
    tags=["Sync"],
)
