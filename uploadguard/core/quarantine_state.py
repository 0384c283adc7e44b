"""Quarantine lifecycle states and the token that references an artifact.

The allowed transitions are declared once in :data:`ALLOWED_TRANSITIONS`;
:meth:`~uploadguard.services.quarantine.QuarantineStore.transition` is the
only code that moves an artifact between states.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class QuarantineState(str, Enum):
    """Lifecycle state of a quarantined artifact."""

    PENDING = "pending"
    SCANNING = "scanning"
    CLEAN = "clean"
    INFECTED = "infected"
    PROMOTED = "promoted"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[QuarantineState, frozenset[QuarantineState]] = {
    QuarantineState.PENDING: frozenset(
        {QuarantineState.SCANNING, QuarantineState.FAILED, QuarantineState.EXPIRED}
    ),
    QuarantineState.SCANNING: frozenset(
        {
            QuarantineState.CLEAN,
            QuarantineState.INFECTED,
            QuarantineState.FAILED,
            QuarantineState.EXPIRED,
        }
    ),
    QuarantineState.CLEAN: frozenset(
        {QuarantineState.PROMOTED, QuarantineState.FAILED, QuarantineState.EXPIRED}
    ),
    QuarantineState.FAILED: frozenset({QuarantineState.EXPIRED}),
    QuarantineState.INFECTED: frozenset(),
    QuarantineState.PROMOTED: frozenset(),
    QuarantineState.EXPIRED: frozenset(),
}

# States the TTL pruner measures against the failed TTL; every other state
# uses the pending TTL.
FAILED_TTL_STATES = frozenset({QuarantineState.FAILED, QuarantineState.INFECTED})


def can_transition(from_state: QuarantineState, to_state: QuarantineState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


@dataclass(frozen=True)
class QuarantineToken:
    """Opaque, immutable handle to a quarantined artifact.

    Attributes:
        path: Absolute filesystem location.  Internal only; never returned
            to API callers and excluded from ``repr``.
        identifier: Relative identifier (``ab/cd/<hex>``) that is safe to
            share and can be turned back into a token with
            :meth:`~uploadguard.services.quarantine.QuarantineStore.resolve_token_by_identifier`.
        correlation_id: Optional id tying log lines of one upload together.
        profile: Optional upload profile name.
    """

    path: str = field(repr=False)
    identifier: str
    correlation_id: str | None = None
    profile: str | None = None
