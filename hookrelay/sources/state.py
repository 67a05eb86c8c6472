"""Readiness of a messaging source as an explicit state machine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from hookrelay.utils.logging import get_logger

log = get_logger(__name__)


class SourcePhase(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    READY = "ready"


_TRANSITIONS: dict[SourcePhase, frozenset[SourcePhase]] = {
    SourcePhase.INITIALIZING: frozenset({SourcePhase.AWAITING_PAIRING, SourcePhase.READY}),
    # A fresh pairing code replaces the previous one
    SourcePhase.AWAITING_PAIRING: frozenset(
        {SourcePhase.AWAITING_PAIRING, SourcePhase.READY, SourcePhase.INITIALIZING}
    ),
    # Losing the session restarts the handshake
    SourcePhase.READY: frozenset({SourcePhase.INITIALIZING}),
}


# Event code a source emits, without a message, on entering each phase
LIFECYCLE_EVENTS: dict[SourcePhase, str] = {
    SourcePhase.INITIALIZING: "disconnected",
    SourcePhase.AWAITING_PAIRING: "qr",
    SourcePhase.READY: "ready",
}


@dataclass(frozen=True)
class ReadyState:
    phase: SourcePhase = SourcePhase.INITIALIZING
    pairing_code: str = ""

    @property
    def ready(self) -> bool:
        return self.phase is SourcePhase.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.phase.value,
            "ready": self.ready,
            "pairing_code": self.pairing_code,
        }


class InvalidTransitionError(RuntimeError):
    pass


class ReadyStateMachine:
    """Owns the current ReadyState; everything else only reads snapshots.

    Each transition method returns True when the state actually changed.
    """

    def __init__(self) -> None:
        self._state = ReadyState()

    @property
    def state(self) -> ReadyState:
        return self._state

    def await_pairing(self, code: str) -> bool:
        new = ReadyState(SourcePhase.AWAITING_PAIRING, pairing_code=code)
        if new == self._state:
            return False
        return self._move(new)

    def mark_ready(self) -> bool:
        if self._state.ready:
            return False
        return self._move(ReadyState(SourcePhase.READY))

    def reset(self) -> bool:
        if self._state.phase is SourcePhase.INITIALIZING:
            return False
        return self._move(ReadyState(SourcePhase.INITIALIZING))

    def _move(self, new: ReadyState) -> bool:
        old = self._state
        if new.phase not in _TRANSITIONS[old.phase]:
            raise InvalidTransitionError(
                f"cannot move from {old.phase.value} to {new.phase.value}"
            )
        self._state = new
        log.info("source_state_changed", old=old.phase.value, new=new.phase.value)
        return True
