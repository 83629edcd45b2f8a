# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Readiness poller: wait for an external condition with timeout and cancellation."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_exponential,
    wait_fixed,
)

from devenv_manager import logger
from devenv_manager.errors import OperationCancelled, PreconditionFailed, ReadinessTimeout


class ReadinessState(Enum):
    """Tri-state answer of a readiness predicate."""

    READY = "ready"
    NOT_YET = "not-yet"
    FAILED = "failed"


class WaitOutcome(Enum):
    """How a readiness wait resolved."""

    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReadinessCheck:
    """A single readiness gate.

    Attributes:
        predicate: Zero-argument callable returning a ReadinessState. It should
            only perform read-only queries.
        interval: Seconds between polls (initial delay when backoff is set).
        timeout: Upper bound on the total wait in seconds, or None to wait
            until ready, failed or cancelled.
        backoff: Grow the delay exponentially from interval to max_interval.
        max_interval: Largest delay used with backoff.
        description: Human readable name used in logs and errors.
    """

    predicate: Callable[[], ReadinessState]
    interval: float
    timeout: float | None = None
    backoff: bool = False
    max_interval: float | None = None
    description: str = "condition"

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(f"interval must be positive, got {self.interval}")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError(f"timeout must not be negative, got {self.timeout}")


def _is_pending(state: ReadinessState | None) -> bool:
    return state is not ReadinessState.READY and state is not ReadinessState.FAILED


def _wait_strategy(check: ReadinessCheck) -> Callable[[RetryCallState], float]:
    """Build the delay function, never sleeping past the deadline."""
    if check.backoff:
        base = wait_exponential(
            multiplier=check.interval,
            min=check.interval,
            max=check.max_interval or check.interval * 16,
        )
    else:
        base = wait_fixed(check.interval)

    def _delay(retry_state: RetryCallState) -> float:
        delay = base(retry_state)
        if check.timeout is not None and retry_state.seconds_since_start is not None:
            remaining = check.timeout - retry_state.seconds_since_start
            delay = max(0.0, min(delay, remaining))
        return delay

    return _delay


def wait(check: ReadinessCheck, cancel: threading.Event | None = None) -> WaitOutcome:
    """Poll ``check.predicate`` until it resolves.

    The configured interval is always honoured between polls, and sleeps
    happen on the cancellation event so an operator interrupt ends the wait
    without running out the timeout.

    Args:
        check: The readiness gate to evaluate.
        cancel: Event that aborts the wait when set.

    Returns:
        READY on the first ready result, FAILED as soon as the predicate
        reports an unrecoverable failure, TIMED_OUT once ``check.timeout``
        elapses, or CANCELLED when *cancel* is set.

    Raises:
        Exception: Anything raised by the predicate is propagated unchanged.
    """
    cancel = cancel or threading.Event()
    if cancel.is_set():
        return WaitOutcome.CANCELLED

    def _poll() -> ReadinessState | None:
        if cancel.is_set():
            return None
        return check.predicate()

    def _log_retry(retry_state: RetryCallState) -> None:
        logger.debug(
            "Waiting for %s (poll %d, next in %.1fs)",
            check.description,
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    stop = stop_when_event_set(cancel)
    if check.timeout is not None:
        stop = stop | stop_after_delay(check.timeout)

    retryer = Retrying(
        retry=retry_if_result(_is_pending),
        stop=stop,
        wait=_wait_strategy(check),
        sleep=cancel.wait,
        before_sleep=_log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    state = retryer(_poll)

    if state is ReadinessState.READY:
        return WaitOutcome.READY
    if state is ReadinessState.FAILED:
        return WaitOutcome.FAILED
    if cancel.is_set():
        return WaitOutcome.CANCELLED
    return WaitOutcome.TIMED_OUT


def wait_until_ready(check: ReadinessCheck, cancel: threading.Event | None = None) -> None:
    """Wait for *check* and raise unless it became ready.

    Raises:
        ReadinessTimeout: If the timeout elapsed first.
        PreconditionFailed: If the predicate reported a failure.
        OperationCancelled: If *cancel* was set during the wait.
    """
    outcome = wait(check, cancel)
    if outcome is WaitOutcome.READY:
        return
    if outcome is WaitOutcome.TIMED_OUT:
        raise ReadinessTimeout(f"Timed out after {check.timeout}s waiting for {check.description}")
    if outcome is WaitOutcome.FAILED:
        raise PreconditionFailed(f"{check.description} reported an unrecoverable failure")
    raise OperationCancelled(f"Cancelled while waiting for {check.description}")
