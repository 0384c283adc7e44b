"""Unit tests for uploadguard/core/quarantine_state.py."""

from __future__ import annotations

import pytest

from uploadguard.core.quarantine_state import (
    ALLOWED_TRANSITIONS,
    QuarantineState,
    QuarantineToken,
    can_transition,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (QuarantineState.PENDING, QuarantineState.SCANNING),
            (QuarantineState.SCANNING, QuarantineState.CLEAN),
            (QuarantineState.SCANNING, QuarantineState.INFECTED),
            (QuarantineState.CLEAN, QuarantineState.PROMOTED),
            (QuarantineState.FAILED, QuarantineState.EXPIRED),
        ],
    )
    def test_allowed(self, from_state, to_state):
        assert can_transition(from_state, to_state)

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (QuarantineState.PENDING, QuarantineState.CLEAN),
            (QuarantineState.PENDING, QuarantineState.PROMOTED),
            (QuarantineState.SCANNING, QuarantineState.PROMOTED),
            (QuarantineState.INFECTED, QuarantineState.CLEAN),
            (QuarantineState.PROMOTED, QuarantineState.EXPIRED),
        ],
    )
    def test_rejected(self, from_state, to_state):
        assert not can_transition(from_state, to_state)

    def test_terminal_states(self):
        terminal = {state for state in QuarantineState if state.is_terminal}
        assert terminal == {QuarantineState.INFECTED, QuarantineState.PROMOTED, QuarantineState.EXPIRED}

    def test_every_state_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(QuarantineState)

    def test_values_are_lowercase_strings(self):
        assert QuarantineState("scanning") is QuarantineState.SCANNING


class TestToken:
    def test_repr_hides_path(self):
        token = QuarantineToken(path="/secret/root/ab/cd/x.bin", identifier="ab/cd/x.bin")
        assert "/secret/root" not in repr(token)
        assert "ab/cd/x.bin" in repr(token)

    def test_token_is_immutable(self):
        token = QuarantineToken(path="/x", identifier="x")
        with pytest.raises(AttributeError):
            token.identifier = "y"  # type: ignore[misc]
