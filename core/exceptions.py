"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ExchangeError(RuntimeError):
    """Base class for failures reported by (or while talking to) the exchange."""

    def __init__(self, message: str, endpoint: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class TransientExchangeError(ExchangeError):
    """Timeouts, connection drops, rate limits and 5xx responses. Safe to retry."""


class ExchangeRequestError(ExchangeError):
    """Request rejected by the exchange (4xx). Retrying will not help."""

    def __init__(self, message: str, endpoint: Optional[str] = None,
                 status_code: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message, endpoint=endpoint, status_code=status_code)
        self.code = code


class OracleUnavailable(RuntimeError):
    """Decision oracle timed out or failed; the cycle proceeds with no decision."""


class ConfigurationError(ValueError):
    """Fatal startup problem: bad config, missing credentials, unusable ledger."""
