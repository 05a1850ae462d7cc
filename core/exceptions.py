"""Shared exception types for trading logic."""

import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    EXECUTION = "execution"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PROVIDER = "provider"
    UNKNOWN = "unknown"


class TradingError(RuntimeError):
    """Base class. `kind` drives the result descriptors, `retryable` drives backoff."""

    kind = ErrorKind.UNKNOWN
    retryable = False

    def __init__(self, message: str, source: Optional[str] = None, original: Optional[Exception] = None):
        super().__init__(message)
        self.source = source
        self.original = original


class ValidationError(TradingError):
    """Malformed signal, violated invariant or invalid configuration."""

    kind = ErrorKind.VALIDATION


class RateLimitError(TradingError):
    """Upstream said slow down (HTTP 429 or equivalent)."""

    kind = ErrorKind.RATE_LIMIT
    retryable = True


class RequestTimeoutError(TradingError):
    """No response within the explicit call timeout."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class QuoteUnavailableError(TradingError):
    """No route or no liquidity for the requested pair."""

    kind = ErrorKind.QUOTE_UNAVAILABLE


class ExecutionError(TradingError):
    """Venue rejected or failed the swap."""

    kind = ErrorKind.EXECUTION


class InsufficientFundsError(ExecutionError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class ProviderError(TradingError):
    """Required market data could not be fetched safely."""

    kind = ErrorKind.PROVIDER


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind."""
    if isinstance(exc, TradingError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN


def is_retryable(kind: Optional[ErrorKind]) -> bool:
    return kind in (ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT)
