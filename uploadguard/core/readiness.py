"""Readiness decisions for work that depends on an asynchronous result.

:func:`check_ready` is a pure function: given what has been observed so far it
says whether to proceed, check again later or give up.  Scheduling the next
check is left to the caller (the Celery worker retries with the returned
countdown).
"""
from __future__ import annotations

from dataclasses import dataclass

from uploadguard.config import settings

_MIN_GRACE_SECONDS = 5


@dataclass(frozen=True)
class ReadinessPolicy:
    max_retries: int = 50
    max_wait_seconds: float = 60
    check_interval_seconds: float = 5

    @classmethod
    def from_settings(cls) -> "ReadinessPolicy":
        return cls(
            max_retries=settings.readiness_max_retries,
            max_wait_seconds=settings.readiness_max_wait_seconds,
            check_interval_seconds=settings.readiness_check_interval_seconds,
        )

    @property
    def grace_seconds(self) -> float:
        return max(2 * self.check_interval_seconds, _MIN_GRACE_SECONDS)


@dataclass(frozen=True)
class ReadinessState:
    """What the caller has observed.

    Attributes:
        ready: The dependency is available.
        attempts: Checks already made, including this one.
        elapsed_seconds: Time since the first check.
    """

    ready: bool
    attempts: int
    elapsed_seconds: float


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class RetryAfter:
    seconds: float


@dataclass(frozen=True)
class GiveUp:
    reason: str


Decision = Ready | RetryAfter | GiveUp


def check_ready(state: ReadinessState, policy: ReadinessPolicy) -> Decision:
    """Decide what to do next.

    Gives up after ``max_retries`` attempts or once ``max_wait_seconds`` plus
    a grace period (``max(2 * interval, 5)`` seconds) has elapsed, whichever
    comes first.
    """
    if state.ready:
        return Ready()
    if state.attempts >= policy.max_retries:
        return GiveUp(reason="max_retries")
    if state.elapsed_seconds > policy.max_wait_seconds + policy.grace_seconds:
        return GiveUp(reason="max_wait")
    remaining = policy.max_wait_seconds + policy.grace_seconds - state.elapsed_seconds
    return RetryAfter(seconds=max(min(policy.check_interval_seconds, remaining), 1))
