"""Infrastructure adapters (units of work)."""
