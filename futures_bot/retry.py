"""Bounded retry for exchange calls.

Every REST call goes through ``RetryPolicy.run``: a fixed number of
attempts with a linearly increasing pause (``delay * attempt``) between
them. Only transient failures are retried. The outcome comes back as an
``ApiResult`` instead of an exception so the caller decides how a
terminal failure surfaces. Exceptions that are neither exchange nor
network failures propagate untouched.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from binance.exceptions import BinanceAPIException, BinanceOrderException, BinanceRequestException

from .errors import GatewayError, PermanentGatewayError, TransientGatewayError

# -1000 unknown, -1001 disconnected, -1003 too many requests,
# -1007 backend timeout, -1008 server busy
TRANSIENT_API_CODES = {-1000, -1001, -1003, -1007, -1008}
TRANSIENT_HTTP_STATUS = {418, 429, 500, 502, 503, 504}


def classify_error(exc: BaseException, operation: str = "", symbol: str = "") -> Optional[GatewayError]:
    """Map a raw client exception onto the transient/permanent split.

    Returns None for exceptions that are not exchange or network failures;
    those are bugs and must reach the caller unchanged.
    """
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, BinanceAPIException):
        code = getattr(exc, "code", None)
        status = getattr(exc, "status_code", None)
        message = getattr(exc, "message", None) or str(exc)
        if code in TRANSIENT_API_CODES or status in TRANSIENT_HTTP_STATUS:
            return TransientGatewayError(message, operation, symbol, code)
        return PermanentGatewayError(message, operation, symbol, code)
    if isinstance(exc, BinanceOrderException):
        return PermanentGatewayError(exc.message, operation, symbol, exc.code)
    if isinstance(exc, (BinanceRequestException, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)):
        return TransientGatewayError(str(exc) or type(exc).__name__, operation, symbol)
    msg = str(exc)
    if "-1003" in msg or "too many requests" in msg.lower() or "429" in msg:
        return TransientGatewayError(msg, operation, symbol)
    return None


@dataclass(frozen=True)
class ApiResult:
    ok: bool
    value: Any = None
    error: Optional[GatewayError] = None
    attempts: int = 0

    def unwrap(self):
        if not self.ok:
            raise self.error
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 1.0

    def backoff(self, attempt: int) -> float:
        """Pause after the ``attempt``-th failure (1-based)."""
        return self.delay * attempt

    async def run(self, func: Callable[..., Awaitable[Any]], *args,
                  operation: str = "", target: str = "", **kwargs) -> ApiResult:
        error: Optional[GatewayError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await func(*args, **kwargs)
                return ApiResult(ok=True, value=value, attempts=attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e, operation, target)
                if error is None:
                    raise
                if isinstance(error, PermanentGatewayError):
                    return ApiResult(ok=False, error=error, attempts=attempt)
                if attempt == self.max_attempts:
                    break
                wait = self.backoff(attempt)
                name = operation or getattr(func, "__name__", "call")
                logging.warning(f"⚠️ Retry {attempt}/{self.max_attempts} for {name} {target} "
                                f"after error: {error} (wait {wait:.1f}s)")
                if wait > 0:
                    await asyncio.sleep(wait)
        return ApiResult(ok=False, error=error, attempts=self.max_attempts)
