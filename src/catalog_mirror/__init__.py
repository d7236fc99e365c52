"""Tenant-scoped catalog mirror with stock adjustment ledger and sync jobs."""

__version__ = "1.0.0"
