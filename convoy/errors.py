#!/usr/bin/env python3
"""
Convoy error taxonomy.

Per-item errors (malformed key, lookup failure, dispatch failure) are handled
inside the worker loop and never stop a worker. Startup errors (configuration,
cache sync timeout) are fatal to the process.
"""


class ConvoyError(Exception):
    """Base class for all Convoy errors."""
    pass


class ConfigError(ConvoyError, ValueError):
    """Raised when configuration values are missing or invalid."""
    pass


class MalformedKeyError(ConvoyError, ValueError):
    """Raised when a resource key cannot be split into namespace/name."""

    def __init__(self, key):
        super().__init__(f"invalid resource key: {key!r}")
        self.key = key


class NotFoundError(ConvoyError):
    """Raised when a resource is no longer present in the cache."""

    def __init__(self, key):
        super().__init__(f"resource '{key}' in work queue no longer exists")
        self.key = key


class CacheLookupError(ConvoyError):
    """Raised on a transient cache access failure. Retryable."""
    pass


class DispatchError(ConvoyError):
    """Raised when a notification sink fails to deliver an event. Retryable."""

    def __init__(self, message, reason="error"):
        super().__init__(message)
        self.reason = reason


class SyncTimeoutError(ConvoyError):
    """Raised when the initial cache sync does not finish before cancellation."""
    pass
