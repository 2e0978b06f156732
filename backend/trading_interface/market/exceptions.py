class MarketDataException(Exception):
    """Base exception for all market context provider errors."""
    pass

class RateLimitError(MarketDataException):
    """Trigger exponential backoff due to 429 / 418."""
    pass

class NetworkError(MarketDataException):
    """Retryable network failures (HTTP 5xx, timeouts)."""
    pass

class InvalidSymbolError(MarketDataException):
    """Non-Retryable symbol resolution failure."""
    pass

class DataUnavailableError(MarketDataException):
    """Price or regime data could not be obtained; skip the affected user/position."""
    pass
