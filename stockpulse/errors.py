"""Quote feed error classes."""


class QuoteFeedError(Exception):
    """Base exception for the quote feed."""


class AuthError(QuoteFeedError):
    """Session cookie or crumb could not be acquired, or was rejected."""


class FetchError(QuoteFeedError):
    """Snapshot response had a success status but broke the payload contract."""


class SnapshotUnavailableError(FetchError):
    """Snapshot fetch kept failing until the retry bound was exhausted."""


class DecodeError(QuoteFeedError):
    """Streaming frame could not be decoded."""


class FeedConnectionError(QuoteFeedError):
    """Streaming transport dropped or failed to open."""


class ServiceDisposedError(QuoteFeedError):
    """Quote service was used after dispose()."""
