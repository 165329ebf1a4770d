"""Retry/timeout controller for single node attempts.

Implements exponential backoff with a cap::

    delay = min(base_delay * multiplier ** retry_count, max_delay)

The executor owns the per-node loop and all state writes; this module only
times one attempt and decides whether a failure earns another.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from taskgraph.constants import (
    BACKOFF_MULTIPLIER,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
)
from taskgraph.core.logging import get_logger
from .errors import HandlerError, StepError, StepTimeout
from .models import StepResult

logger = get_logger(__name__)


StepHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[StepResult]]


@dataclass
class RetryPolicy:
    """Backoff configuration shared by every node of an executor."""
    base_delay: float = DEFAULT_RETRY_BASE_DELAY     # seconds
    max_delay: float = DEFAULT_RETRY_MAX_DELAY       # seconds
    multiplier: float = BACKOFF_MULTIPLIER

    def calculate_delay(self, retry_count: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            retry_count: Retries already consumed before this one (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.multiplier ** retry_count)
        return min(delay, self.max_delay)

    def should_retry(self, error: StepError, retry_count: int, max_retries: int) -> bool:
        """Retry only retryable errors while the node has retries left."""
        return error.retryable and retry_count < max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            base_delay=data.get("base_delay", DEFAULT_RETRY_BASE_DELAY),
            max_delay=data.get("max_delay", DEFAULT_RETRY_MAX_DELAY),
            multiplier=data.get("multiplier", BACKOFF_MULTIPLIER),
        )


async def run_attempt(handler: StepHandler, config: Dict[str, Any],
                      context: Dict[str, Any], timeout_seconds: float) -> StepResult:
    """Run one handler call under a deadline.

    Raises:
        StepTimeout: The handler did not return within ``timeout_seconds``
        StepError: The handler raised a step error (passed through)
        HandlerError: Any other exception from the handler, wrapped as retryable;
            a malformed result, as non-retryable
        asyncio.CancelledError: The attempt was cancelled by a stop
    """
    try:
        result = await asyncio.wait_for(handler(config, context), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise StepTimeout(timeout_seconds) from None
    except StepError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Handler raised unexpected exception", error=str(e),
                       error_type=type(e).__name__)
        raise HandlerError(f"{type(e).__name__}: {e}") from e

    if result is None:
        return StepResult()
    if not isinstance(result, StepResult):
        raise HandlerError(
            f"Handler returned {type(result).__name__}, expected StepResult",
            retryable=False,
        )
    for name in ("output", "context_patch"):
        value = getattr(result, name)
        if value is not None and not isinstance(value, dict):
            raise HandlerError(
                f"Handler returned {name} of type {type(value).__name__}, expected dict",
                retryable=False,
            )
    return result
