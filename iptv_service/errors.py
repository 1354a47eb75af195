"""
Error taxonomy for playlist, guide and cache handling.

Resolution misses are not errors; lookups return None instead.
"""


class IptvError(Exception):
    """Base class for all service errors"""
    pass


class TransportError(IptvError):
    """Connection, timeout or unexpected HTTP status from an upstream server"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PlaylistError(TransportError):
    """Playlist could not be acquired after all attempts"""
    pass


class GuideParseError(IptvError):
    """Guide document could not be parsed by any parser"""
    pass


class CacheIntegrityError(IptvError):
    """Persisted snapshot is corrupt or belongs to another configuration"""
    pass
