"""Transient-failure classification and exponential backoff.

Snapshot transfers and fleet runner calls cross the network; a timeout or a
throttled bucket is worth another try, a bad credential is not.

Usage:
    from tenanthub.core.retryable import classify_error, with_retry

    await with_retry(lambda: client.put_object(...), max_retries=3)
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

import httpx
from botocore.exceptions import ClientError, EndpointConnectionError

from tenanthub.core.circuit_breaker import CircuitOpenError, get_circuit_breaker
from tenanthub.core.logging_schema import ErrorClass

logger = logging.getLogger(__name__)

RETRYABLE = "retryable"
PERMANENT = "permanent"
UNKNOWN = "unknown"

# Transport level failures: the request may not have reached the peer at all.
HTTPX_RETRYABLE = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)

HTTPX_NON_RETRYABLE = (
    httpx.InvalidURL,
    httpx.UnsupportedProtocol,
    httpx.TooManyRedirects,
)

S3_RETRYABLE_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "InternalError",
    "InternalServerError",
    "SlowDown",
    "503",
    "500",
})

S3_NON_RETRYABLE_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "NoSuchKey",
    "NotFound",
    "404",
    "InvalidBucketName",
})


def s3_error_code(exc: ClientError) -> str:
    """Extract the error code from a botocore ClientError."""
    return str(exc.response.get("Error", {}).get("Code", ""))


def _classify_status(status: int) -> str:
    if status == 429 or status >= 500:
        return RETRYABLE
    if 400 <= status < 500:
        return PERMANENT
    return UNKNOWN


def classify_error(exc: Exception) -> str:
    """Classify an error as 'retryable', 'permanent', or 'unknown'."""
    if isinstance(exc, (asyncio.TimeoutError, EndpointConnectionError)):
        return RETRYABLE

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, HTTPX_RETRYABLE):
        return RETRYABLE
    if isinstance(exc, HTTPX_NON_RETRYABLE):
        return PERMANENT

    if isinstance(exc, ClientError):
        code = s3_error_code(exc)
        if code in S3_RETRYABLE_CODES:
            return RETRYABLE
        if code in S3_NON_RETRYABLE_CODES:
            return PERMANENT

    return UNKNOWN


def is_retryable(exc: Exception) -> bool:
    """True when the failure is transient and the operation may be repeated."""
    return classify_error(exc) == RETRYABLE


async def with_retry[T](
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    circuit_breaker: str | None = None,
) -> T:
    """Run ``coro_factory()`` with exponential backoff and jitter.

    Only retryable errors are retried. Permanent and unknown errors are
    raised on the spot, as is CircuitOpenError when a breaker is named
    and currently open.

    Args:
        coro_factory: Builds a fresh coroutine for every attempt
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, doubled each time
        max_delay: Upper bound for a single delay
        circuit_breaker: Breaker name, None to call directly
    """
    cb = get_circuit_breaker(circuit_breaker, classify_error) if circuit_breaker else None
    attempt = 0

    while True:
        try:
            if cb:
                return await cb.call(coro_factory)
            return await coro_factory()
        except CircuitOpenError:
            raise
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class != RETRYABLE:
                logger.warning(
                    "Not retrying %s error: %s",
                    error_class,
                    exc,
                    extra={"error_class": ErrorClass.PERMANENT, "attempt": attempt + 1},
                )
                raise

            if attempt >= max_retries:
                logger.error(
                    "Giving up after %d attempts: %s",
                    attempt + 1,
                    exc,
                    extra={"error_class": ErrorClass.TRANSIENT, "attempt": attempt + 1},
                )
                raise

            delay = min(base_delay * (2**attempt), max_delay)
            # 50% ~ 150% of the nominal delay
            delay *= 0.5 + random.random()
            logger.warning(
                "Retryable error (attempt %d/%d, retry in %.1fs): %s",
                attempt + 1,
                max_retries + 1,
                delay,
                exc,
                extra={
                    "error_class": ErrorClass.TRANSIENT,
                    "attempt": attempt + 1,
                    "delay": delay,
                },
            )
            await asyncio.sleep(delay)
            attempt += 1
