"""Exceptions raised by cache stores and caught at the durable tier boundary."""


class CacheError(Exception):
    """Base exception for cache errors."""
    pass


class StoreNotFoundError(CacheError):
    """No store is registered under the requested name."""
    pass


class StoreUnavailableError(CacheError):
    """The backing store could not be reached."""
    pass
