"""Shared constants across the application."""

# Sync types understood by the sync job controller
SYNC_TYPE_PRODUCTS = "products"
SYNC_TYPE_VARIATIONS = "variations"
SYNC_TYPE_INCREMENTAL = "incremental"
SYNC_TYPES = (SYNC_TYPE_PRODUCTS, SYNC_TYPE_VARIATIONS, SYNC_TYPE_INCREMENTAL)

# Resync of one product and its variations; started per product id
SYNC_TYPE_PRODUCT = "product"
JOB_TYPES = SYNC_TYPES + (SYNC_TYPE_PRODUCT,)

# Incremental syncs re-read this much before the newest mirrored update
INCREMENTAL_OVERLAP_SECONDS = 60

# Stock status codes used by the external catalog
STOCK_STATUS_IN_STOCK = "instock"
STOCK_STATUS_OUT_OF_STOCK = "outofstock"
STOCK_STATUS_ON_BACKORDER = "onbackorder"

# Product type whose stock lives on its variations
VARIABLE_PRODUCT_TYPE = "variable"

# Progress milestones (percent)
RECONCILE_PROGRESS = 95
MAX_FETCH_PROGRESS = 90

# Step labels shown to observers
STEP_STARTING = "Starting synchronization..."
STEP_FETCHING_PRODUCTS = "Fetching products"
STEP_FETCHING_VARIATIONS = "Fetching variations"
STEP_FETCHING_PRODUCT = "Fetching product"
STEP_RECONCILING = "Reconciling stock"
STEP_DONE = "Synchronization complete"
STEP_FAILED = "Synchronization failed"
STEP_CANCELLED = "Synchronization cancelled"

# Default limits
DEFAULT_ADJUSTMENT_LIMIT = 100
MAX_ADJUSTMENT_LIMIT = 1000

# Cache key prefix for published sync job snapshots
SYNC_SNAPSHOT_KEY_PREFIX = "sync_job"
