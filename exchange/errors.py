"""
Error taxonomy for ingestion and the read API.
Fetch errors are split by whether the collector may retry them.
"""


class KlineError(Exception):
    """Base class for all collector errors."""


class FetchError(KlineError):
    """Upstream market-data call failed."""
    retryable = False


class NoData(FetchError):
    """Empty or unparseable upstream payload."""


class RateLimited(FetchError):
    """Provider answered HTTP 429."""
    retryable = True


class Timeout(FetchError):
    """Upstream call exceeded its time budget."""
    retryable = True


class UpstreamError(FetchError):
    """Any other non-success response or transport failure."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class StorageError(KlineError):
    """Store read or write failed. Never retried by the collector."""


class UnsupportedAsset(KlineError):
    def __init__(self, symbol: str):
        super().__init__(f"Cryptocurrency {symbol} not supported")
        self.symbol = symbol
