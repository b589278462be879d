"""Domain layer - pure types: clock, lifecycle states and ledger enums."""

from ledger_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ledger_kernel.domain.lifecycle import LifecycleState, can_transition

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "LifecycleState",
    "can_transition",
]
