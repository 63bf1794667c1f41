"""
Error types for the view counter gateway.

Startup errors are fatal and abort the process before the listener is bound.
Per-request errors are turned into HTTP responses by the handlers.
"""


class ViewCounterError(Exception):
    """Base class for all view counter errors."""

    pass


class ConfigError(ViewCounterError):
    """Raised when configuration is missing or malformed."""

    pass


class UpstreamTargetError(ConfigError):
    """Raised when the badge renderer URL cannot be used as an upstream target."""

    pass


class DatabaseConnectionError(ViewCounterError):
    """Raised when the database pool cannot be established at startup."""

    pass


class ListenerBindError(ViewCounterError):
    """Raised when the listen socket cannot be bound."""

    pass


class CountUpdateError(ViewCounterError):
    """Raised when a view could not be recorded."""

    pass
