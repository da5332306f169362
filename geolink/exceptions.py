"""Failure categories for the redirect path.

Each category is a distinct type so callers can catch exactly what they
recover from. Geolocation and cache failures never escape their component;
only unexpected errors reach the redirect handler's catch-all.
"""


class GeolinkError(Exception):
    """Base class for geolink errors."""


class LinkNotFound(GeolinkError):
    def __init__(self, short_code: str):
        super().__init__(f"No active link for short code '{short_code}'")
        self.short_code = short_code


class UpstreamError(GeolinkError):
    """The IP-intelligence provider failed or answered with garbage."""


class UpstreamTimeout(UpstreamError):
    """The IP-intelligence provider did not answer in time."""


class CacheUnavailable(GeolinkError):
    """A cache tier could not be read or written."""


class PersistenceError(GeolinkError):
    """A write to the database failed."""
