from typing import Optional


class RelayError(Exception):
    """Base exception for the relay"""
    pass


class UpstreamError(RelayError):
    """Timeout, connection reset or 5xx from a portal, panel or media host"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class FetchError(UpstreamError):
    """Playlist download failed and no other dialect can stand in"""
    pass


class AuthenticationError(RelayError):
    """Rejected credentials or an account that is not active"""
    pass


class NotFoundError(RelayError):
    pass


class ResolutionError(RelayError):
    """No playable URL left after every fallback"""
    pass


class SyncError(RelayError):
    pass
