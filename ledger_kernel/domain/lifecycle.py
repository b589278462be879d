"""
Record lifecycle -- the tagged state replacing a bare ``deleted_at`` check.

Every soft-deletable record is in exactly one of:

    ACTIVE  --soft_delete-->  DELETED  --purge-->  PURGED
       ^                         |
       +--------restore----------+

PURGED is terminal: the row is physically removed and only the state tag
survives in the purge result and the queued remote purge.
"""

from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """Lifecycle of a soft-deletable record."""

    ACTIVE = "active"
    DELETED = "deleted"
    PURGED = "purged"


VALID_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.ACTIVE: frozenset({LifecycleState.DELETED}),
    LifecycleState.DELETED: frozenset({LifecycleState.ACTIVE, LifecycleState.PURGED}),
    LifecycleState.PURGED: frozenset(),
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """True iff ``current -> target`` is a legal lifecycle move."""
    return target in VALID_TRANSITIONS[current]
