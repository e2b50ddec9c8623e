"""Bulk operation processing and approval engine for farm records."""

__all__ = []
