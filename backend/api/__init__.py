"""API route handlers."""
from . import connections, sync, usage

__all__ = ["connections", "sync", "usage"]
