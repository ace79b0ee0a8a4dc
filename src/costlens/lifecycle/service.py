"""Dismiss, snooze and undismiss transitions over the lifecycle store.

Every operation validates its input before the store is loaded, applies one
change in memory, saves the whole store and records an audit entry whether it
succeeded or not.
"""
from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Callable, Dict, List, Optional, Sequence, Tuple

from costlens.domain.context import RequestContext
from costlens.domain.costs import CostResult, Recommendation
from costlens.domain.lifecycle import (
    Dismissed,
    DismissalReason,
    LastKnown,
    LifecycleRecord,
    LifecycleState,
    LifecycleStatus,
    NoRecord,
    Snoozed,
    TransitionResult,
    UndismissResult,
    effective_status,
    is_hidden,
    same_disposition,
)
from costlens.lifecycle.reasons import InvalidReasonError, LifecycleValidationError, parse_reason
from costlens.lifecycle.store import DismissalStore
from costlens.observability.audit import AuditEntry
from costlens.util import utc_now

__all__ = [
    "AnnotatedRecommendation",
    "InvalidDateFormatError",
    "InvalidReasonError",
    "LifecycleService",
    "LifecycleValidationError",
    "NoteRequiredError",
    "SnoozeDateNotFutureError",
    "annotate",
    "apply_lifecycle",
    "parse_snooze_date",
    "recommendation_from_record",
    "snapshot_of",
    "stored_only",
    "validate_reason",
]

COMMAND_DISMISS = "recommendations.dismiss"
COMMAND_SNOOZE = "recommendations.snooze"
COMMAND_UNDISMISS = "recommendations.undismiss"
COMMAND_PURGE = "recommendations.purge"
LIFECYCLE_COMMANDS = (COMMAND_DISMISS, COMMAND_SNOOZE, COMMAND_UNDISMISS)

_END_OF_DAY = timedelta(hours=23, minutes=59, seconds=59)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_RFC3339_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$")


class NoteRequiredError(LifecycleValidationError):
    pass


class InvalidDateFormatError(LifecycleValidationError):
    pass


class SnoozeDateNotFutureError(LifecycleValidationError):
    pass


def parse_snooze_date(raw: str) -> datetime:
    """Parse ``YYYY-MM-DD`` (end of that day, local time) or an RFC 3339 timestamp.

    The result is timezone-aware and expressed in UTC.
    """
    value = (raw or "").strip()
    invalid = InvalidDateFormatError(f"invalid date format {raw!r} (expected YYYY-MM-DD or RFC3339)")
    if _DATE_RE.match(value):
        try:
            day = datetime.strptime(value, "%Y-%m-%d")
        except ValueError:
            raise invalid from None
        return (day + _END_OF_DAY).astimezone().astimezone(timezone.utc)

    match = _RFC3339_RE.match(value)
    if match is None:
        raise invalid
    day_part, clock_part, fraction, offset = match.groups()
    if offset in ("Z", "z"):
        offset = "+00:00"
    micros = f".{fraction[:6].ljust(6, '0')}" if fraction else ""
    try:
        parsed = datetime.fromisoformat(f"{day_part}T{clock_part}{micros}{offset}")
    except ValueError:
        raise invalid from None
    return parsed.astimezone(timezone.utc)


def _require_id(recommendation_id: str) -> str:
    value = (recommendation_id or "").strip()
    if not value:
        raise LifecycleValidationError("recommendation id must not be empty")
    return value


def validate_reason(reason: str, note: str = "") -> Tuple[DismissalReason, str]:
    """Parse ``reason`` and check that "other" comes with a note."""
    parsed = parse_reason(reason)
    value = (note or "").strip()
    if parsed is DismissalReason.OTHER and not value:
        raise NoteRequiredError("--note is required when reason is 'other'")
    return parsed, value


class LifecycleService:
    def __init__(self, store: DismissalStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    @property
    def store(self) -> DismissalStore:
        return self._store

    def dismiss(
        self,
        ctx: RequestContext,
        recommendation_id: str,
        reason: str,
        note: str = "",
        last_known: Optional[LastKnown] = None,
    ) -> TransitionResult:
        """Dismiss a recommendation.

        ``last_known`` snapshots the recommendation so it can still be listed
        after plugins stop returning it; without one an earlier snapshot is kept.
        """
        recorder = ctx.audit_recorder(
            COMMAND_DISMISS,
            {"recommendation_id": recommendation_id, "reason": reason, "note": note},
        )
        try:
            rec_id = _require_id(recommendation_id)
            parsed_reason, clean_note = validate_reason(reason, note)
            now = self._clock()
            result = self._transition(
                rec_id,
                lambda created, snapshot: Dismissed(
                    rec_id, parsed_reason, clean_note, created or now, now, last_known or snapshot
                ),
            )
        except Exception as exc:
            recorder.failure(exc)
            raise
        recorder.success(result_count=1, changed=result.changed)
        ctx.log("lifecycle.dismissed", recommendation_id=rec_id, reason=parsed_reason.value, changed=result.changed)
        return result

    def snooze(
        self,
        ctx: RequestContext,
        recommendation_id: str,
        until: str,
        reason: str = DismissalReason.DEFERRED.value,
        note: str = "",
        last_known: Optional[LastKnown] = None,
    ) -> TransitionResult:
        recorder = ctx.audit_recorder(
            COMMAND_SNOOZE,
            {"recommendation_id": recommendation_id, "until": until, "reason": reason, "note": note},
        )
        try:
            rec_id = _require_id(recommendation_id)
            parsed_reason, clean_note = validate_reason(reason or DismissalReason.DEFERRED.value, note)
            deadline = self.snooze_deadline(until)
            now = self._clock()
            result = self._transition(
                rec_id,
                lambda created, snapshot: Snoozed(
                    rec_id, deadline, parsed_reason, clean_note, created or now, now, last_known or snapshot
                ),
            )
        except Exception as exc:
            recorder.failure(exc)
            raise
        recorder.success(result_count=1, changed=result.changed)
        ctx.log(
            "lifecycle.snoozed",
            recommendation_id=rec_id,
            until=deadline.isoformat(),
            reason=parsed_reason.value,
            changed=result.changed,
        )
        return result

    def snooze_deadline(self, until: str) -> datetime:
        """Parse ``until`` and require it to lie after the service clock."""
        deadline = parse_snooze_date(until)
        if deadline <= self._clock():
            raise SnoozeDateNotFutureError(f"snooze date must be in the future (got {until})")
        return deadline

    def undismiss(self, ctx: RequestContext, recommendation_id: str) -> UndismissResult:
        recorder = ctx.audit_recorder(COMMAND_UNDISMISS, {"recommendation_id": recommendation_id})
        try:
            rec_id = _require_id(recommendation_id)
            self._store.load()
            previous = self._store.get(rec_id)
            if isinstance(previous, NoRecord):
                result = UndismissResult(rec_id, was_dismissed=False)
            else:
                self._store.remove(rec_id)
                self._store.save()
                result = UndismissResult(rec_id, was_dismissed=True, previous=previous)
        except Exception as exc:
            recorder.failure(exc)
            raise
        recorder.success(result_count=1, changed=result.was_dismissed)
        ctx.log("lifecycle.undismissed", recommendation_id=rec_id, changed=result.was_dismissed)
        return result

    def history(self, ctx: RequestContext, recommendation_id: str, limit: int = 500) -> List[AuditEntry]:
        """Lifecycle audit entries for one recommendation, oldest first."""
        rec_id = (recommendation_id or "").strip()

        def matches(entry: AuditEntry) -> bool:
            return entry.command in LIFECYCLE_COMMANDS and entry.parameters.get("recommendation_id", "").strip() == rec_id

        return ctx.audit.read(limit=limit, where=matches)

    def purge_expired(self, ctx: RequestContext, now: Optional[datetime] = None) -> int:
        recorder = ctx.audit_recorder(COMMAND_PURGE)
        try:
            moment = now or self._clock()
            self._store.load()
            expired = self._store.expired_snoozes(moment)
            for record in expired:
                self._store.remove(record.recommendation_id)
            if expired:
                self._store.save()
        except Exception as exc:
            recorder.failure(exc)
            raise
        recorder.success(result_count=len(expired), changed=bool(expired))
        ctx.log("lifecycle.purged", removed=len(expired))
        return len(expired)

    def state(self, recommendation_id: str) -> LifecycleState:
        self._store.load()
        return self._store.get(recommendation_id)

    def _transition(
        self,
        rec_id: str,
        build: Callable[[Optional[datetime], Optional[LastKnown]], LifecycleState],
    ) -> TransitionResult:
        self._store.load()
        previous = self._store.get(rec_id)
        if isinstance(previous, NoRecord):
            state = build(None, None)
        else:
            state = build(previous.created_at, previous.last_known)
        changed = not same_disposition(previous, state)
        if changed:
            self._store.put(state)
            self._store.save()
        else:
            state = previous
        return TransitionResult(rec_id, state=state, previous=previous, changed=changed)


@dataclass(frozen=True)
class AnnotatedRecommendation:
    recommendation: Recommendation
    state: LifecycleState
    status: LifecycleStatus
    from_snapshot: bool = False


def snapshot_of(rec: Recommendation) -> LastKnown:
    return LastKnown(
        resource_id=rec.resource_id,
        type=rec.type,
        description=rec.description,
        estimated_savings=rec.estimated_savings,
        currency=str(rec.payload.get("currency") or ""),
    )


def recommendation_from_record(record: LifecycleRecord) -> Recommendation:
    """Rebuild a recommendation from its stored snapshot, or a placeholder without one."""
    known = record.last_known
    if known is None:
        description = f"{record.status.value} recommendation (no details available)"
        return Recommendation(record.recommendation_id, "", "", {"description": description})
    payload: Dict[str, object] = {
        "description": known.description,
        "estimated_savings": known.estimated_savings,
    }
    if known.currency:
        payload["currency"] = known.currency
    return Recommendation(record.recommendation_id, known.resource_id, known.type, payload)


def annotate(
    recommendations: Sequence[Recommendation],
    store: DismissalStore,
    now: datetime,
) -> List[AnnotatedRecommendation]:
    annotated = []
    for rec in recommendations:
        state = store.get(rec.recommendation_id)
        annotated.append(AnnotatedRecommendation(rec, state, effective_status(state, now)))
    return annotated


def stored_only(
    store: DismissalStore,
    fetched_ids: AbstractSet[str],
    now: datetime,
) -> List[AnnotatedRecommendation]:
    """Dismissed or snoozed records that no plugin returned, sorted by id.

    Expired snoozes are skipped; they count as Active again.
    """
    items = []
    for record in store.records():
        if record.recommendation_id in fetched_ids:
            continue
        status = effective_status(record, now)
        if status is LifecycleStatus.ACTIVE:
            continue
        items.append(AnnotatedRecommendation(recommendation_from_record(record), record, status, from_snapshot=True))
    return items


def apply_lifecycle(
    cost_results: Sequence[CostResult],
    store: DismissalStore,
    now: datetime,
    include_dismissed: bool = False,
) -> List[CostResult]:
    """Copies of ``cost_results`` without recommendations hidden at ``now``.

    With ``include_dismissed`` nothing is removed, and stored records that
    plugins no longer return are attached to the result of the resource their
    snapshot names.
    """
    if include_dismissed:
        return _with_stored(cost_results, store, now)
    visible: List[CostResult] = []
    hidden_ids: Dict[str, bool] = {}
    for result in cost_results:
        kept = []
        for rec in result.recommendations:
            if rec.recommendation_id not in hidden_ids:
                hidden_ids[rec.recommendation_id] = is_hidden(store.get(rec.recommendation_id), now)
            if not hidden_ids[rec.recommendation_id]:
                kept.append(rec)
        visible.append(dataclasses.replace(result, recommendations=tuple(kept)))
    return visible


def _with_stored(cost_results: Sequence[CostResult], store: DismissalStore, now: datetime) -> List[CostResult]:
    present = {rec.recommendation_id for result in cost_results for rec in result.recommendations}
    extra: Dict[str, List[Recommendation]] = {}
    for item in stored_only(store, present, now):
        resource_id = item.recommendation.resource_id
        if resource_id:
            extra.setdefault(resource_id, []).append(item.recommendation)
    return [
        dataclasses.replace(result, recommendations=result.recommendations + tuple(extra[result.resource_id]))
        if result.resource_id in extra
        else result
        for result in cost_results
    ]
