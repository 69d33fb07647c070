"""
Field Closeout — State Machine Primitives

Shared pieces for the hotbill and removal-line state machines: the
transition record, the two exceptions they raise, and the table check.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class IllegalStateTransition(Exception):
    """Raised when a transition is not in the machine's table."""

    def __init__(self, machine: str, from_state: Enum, to_state: Enum, valid: list[Enum]):
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state
        self.valid = valid
        super().__init__(
            f"{machine}: illegal transition {from_state.value} → {to_state.value}. "
            f"Valid: {[s.value for s in valid]}"
        )


class ActionUnavailable(Exception):
    """Raised when an action's enabling condition does not hold."""

    def __init__(self, action: str, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"{action} unavailable: {reason}")


@dataclass
class TransitionRecord:
    """Immutable record of a state transition."""
    from_state: Enum
    to_state: Enum
    action: str
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "action": self.action,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


def check_transition(
    machine: str,
    table: Mapping[Enum, frozenset | set | list],
    current: Enum,
    target: Enum,
) -> None:
    valid = table.get(current, ())
    if target not in valid:
        raise IllegalStateTransition(
            machine, current, target,
            sorted(valid, key=lambda s: s.value),
        )
