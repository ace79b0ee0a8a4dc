"""Lifecycle states of an advisory recommendation.

A recommendation with no stored record is Active. Stored records are always
``Dismissed`` or ``Snoozed``; ``NoRecord`` exists so callers can match on the
Active case explicitly instead of testing for ``None``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class DismissalReason(str, Enum):
    NOT_APPLICABLE = "not-applicable"
    ALREADY_IMPLEMENTED = "already-implemented"
    BUSINESS_CONSTRAINT = "business-constraint"
    TECHNICAL_CONSTRAINT = "technical-constraint"
    DEFERRED = "deferred"
    INACCURATE = "inaccurate"
    OTHER = "other"


class LifecycleStatus(str, Enum):
    ACTIVE = "active"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


@dataclass(frozen=True)
class LastKnown:
    """Recommendation details captured when it was dismissed or snoozed."""

    resource_id: str
    type: str
    description: str = ""
    estimated_savings: float = 0.0
    currency: str = ""


@dataclass(frozen=True)
class NoRecord:
    recommendation_id: str

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus.ACTIVE


@dataclass(frozen=True)
class Dismissed:
    recommendation_id: str
    reason: DismissalReason
    note: str
    created_at: datetime
    updated_at: datetime
    last_known: Optional[LastKnown] = None

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus.DISMISSED


@dataclass(frozen=True)
class Snoozed:
    recommendation_id: str
    until: datetime
    reason: DismissalReason
    note: str
    created_at: datetime
    updated_at: datetime
    last_known: Optional[LastKnown] = None

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus.SNOOZED

    def expired(self, now: datetime) -> bool:
        return self.until <= now


LifecycleRecord = Union[Dismissed, Snoozed]
LifecycleState = Union[NoRecord, Dismissed, Snoozed]


def effective_status(state: LifecycleState, now: datetime) -> LifecycleStatus:
    """Status as seen by the user at ``now``; an expired snooze is Active again."""
    if isinstance(state, Snoozed) and state.expired(now):
        return LifecycleStatus.ACTIVE
    return state.status


def is_hidden(state: LifecycleState, now: datetime) -> bool:
    return effective_status(state, now) is not LifecycleStatus.ACTIVE


def same_disposition(before: LifecycleState, after: LifecycleState) -> bool:
    """True when two states differ only in bookkeeping timestamps."""
    if type(before) is not type(after):
        return False
    if isinstance(before, NoRecord):
        return True
    if isinstance(before, Dismissed) and isinstance(after, Dismissed):
        return (
            before.reason == after.reason
            and before.note == after.note
            and before.last_known == after.last_known
        )
    if isinstance(before, Snoozed) and isinstance(after, Snoozed):
        return (
            before.reason == after.reason
            and before.note == after.note
            and before.until == after.until
            and before.last_known == after.last_known
        )
    return False


@dataclass(frozen=True)
class TransitionResult:
    recommendation_id: str
    state: LifecycleState
    previous: LifecycleState
    changed: bool


@dataclass(frozen=True)
class UndismissResult:
    recommendation_id: str
    was_dismissed: bool
    previous: Optional[LifecycleRecord] = None
