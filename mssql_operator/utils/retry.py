"""
Retry policy for Kubernetes API reads.

Transient API server failures (timeouts, throttling, 5xx) are retried a few
times with exponential backoff. Conflicts (409) are never retried here: a
rejected optimistic-concurrency write restarts the whole reconciliation pass.
"""
import functools
from typing import Any, Callable, TypeVar

from kubernetes_asyncio.client.exceptions import ApiException
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mssql_operator.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """True for API errors worth retrying in place."""
    return isinstance(exception, ApiException) and exception.status in RETRYABLE_STATUS_CODES


def _log_retry(function_name: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "k8s_api_call_failed_retrying",
            function=function_name,
            attempt=retry_state.attempt_number,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            status_code=getattr(error, "status", None),
        )

    return before_sleep


def retry_on_k8s_error(
    max_retries: int = 2,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
) -> Callable:
    """
    Decorator retrying an async Kubernetes call on transient API errors.

    The last error is re-raised unchanged once ``max_retries`` retries are spent.

    Example:
        @retry_on_k8s_error(max_retries=3)
        async def get_database(self, namespace: str, name: str):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=initial_delay, max=max_delay),
                retry=retry_if_exception(is_retryable_k8s_error),
                before_sleep=_log_retry(func.__name__),
                reraise=True,
            )
            return await retrying(func, *args, **kwargs)

        return wrapper

    return decorator
