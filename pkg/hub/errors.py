"""
TeamHub error taxonomy.

Every network or store boundary converts its failures into one of these so
that surfaces can report them without knowing which backend raised.
"""
from typing import Optional


class HubError(Exception):
    """Base class for all TeamHub errors."""
    pass


class SyncError(HubError):
    """A subscription failed; the cache keeps its last good snapshot."""

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message)
        self.collection = collection


class WriteError(HubError):
    """A create/update/delete was rejected or could not reach the store."""

    def __init__(self, message: str, collection: Optional[str] = None,
                 record_id: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.record_id = record_id


class NotFound(WriteError):
    """The target record does not exist (or no longer exists)."""
    pass


class AIError(HubError):
    """The generation service failed after all retries, or is not configured."""
    pass


class ConfigError(HubError):
    """Raised when configuration is invalid or incomplete."""
    pass
