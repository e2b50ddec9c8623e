"""Router modules exposed for convenient imports."""

from . import bulk_operations, bulk_requests, healthz, readyz

__all__ = ["bulk_operations", "bulk_requests", "healthz", "readyz"]
