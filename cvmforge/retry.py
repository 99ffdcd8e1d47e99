"""Bounded exponential-backoff retry for idempotent cloud mutations.

The retried operation reports its own outcome: ``True`` means done,
``False`` means "try again", and raising means the failure is fatal and no
further attempt is made.

Example:
    from cvmforge.retry import DEFAULT_RETRY, retry

    def delete() -> bool:
        try:
            client.delete_key_pairs([key_id])
        except CloudAPIError as e:
            log.warning("delete failed: {err}", err=e)
            return False
        return True

    retry(delete, policy=DEFAULT_RETRY, cancellation=state.cancellation)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from cvmforge.exceptions import BuildCancelledError, RetryExhaustedError
from cvmforge.state import Cancellation

log = logger.bind(component="retry")

type Operation = Callable[[], bool]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff bounds.

    Delay formula: min(initial_delay * 2 ** (attempt - 1), max_delay)
    """

    initial_delay: float
    max_delay: float
    max_attempts: int


DEFAULT_RETRY = RetryPolicy(initial_delay=0.2, max_delay=30.0, max_attempts=11)
STOP_RETRY = RetryPolicy(initial_delay=10.0, max_delay=60.0, max_attempts=6)


def _log_before_sleep(state: RetryCallState) -> None:
    delay = state.next_action.sleep if state.next_action else 0.0
    log.debug(
        "Attempt {n} did not succeed, retrying in {delay:.1f}s",
        n=state.attempt_number,
        delay=delay,
    )


def retry(
    operation: Operation,
    *,
    policy: RetryPolicy = DEFAULT_RETRY,
    cancellation: Cancellation | None = None,
) -> None:
    """Call ``operation`` until it returns True.

    Raises:
        RetryExhaustedError: ``max_attempts`` calls all returned False.
        BuildCancelledError: the cancellation latch was set between attempts.
        Exception: whatever ``operation`` raised, on the first raise.
    """
    latch = cancellation or Cancellation()

    def cancelled(_: RetryCallState) -> bool:
        return latch.is_set()

    retrying = Retrying(
        stop=stop_any(stop_after_attempt(policy.max_attempts), cancelled),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            min=policy.initial_delay,
            max=policy.max_delay,
        ),
        retry=retry_if_result(lambda ok: ok is not True),
        sleep=latch.wait,
        before_sleep=_log_before_sleep,
    )

    try:
        retrying(operation)
    except RetryError as e:
        if latch.is_set():
            raise BuildCancelledError() from e
        raise RetryExhaustedError(e.last_attempt.attempt_number) from e
