"""Durable mapping of recommendation id to lifecycle record.

The whole mapping lives in one JSON document::

    {"version": 1, "records": {"<id>": {"status": "dismissed", ...}}}

It is loaded as a unit, changed in memory and written back with an atomic
replace. Nothing coordinates separate processes writing the same file; the
last successful save wins.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from costlens.domain.lifecycle import (
    Dismissed,
    DismissalReason,
    LastKnown,
    LifecycleRecord,
    LifecycleState,
    LifecycleStatus,
    NoRecord,
    Snoozed,
)
from costlens.observability.structured_log import log_json
from costlens.util import write_json_atomic

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class StoreError(RuntimeError):
    pass


class StoreCorruptedError(StoreError):
    pass


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(raw: Any) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_to_dict(record: LifecycleRecord) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "status": record.status.value,
        "reason": record.reason.value,
        "note": record.note,
        "created_at": _ts(record.created_at),
        "updated_at": _ts(record.updated_at),
    }
    if isinstance(record, Snoozed):
        row["until"] = _ts(record.until)
    if record.last_known is not None:
        row["last_known"] = dataclasses.asdict(record.last_known)
    return row


def _last_known_from_dict(data: Any) -> Optional[LastKnown]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("last_known must be an object")
    return LastKnown(
        resource_id=str(data.get("resource_id") or ""),
        type=str(data.get("type") or ""),
        description=str(data.get("description") or ""),
        estimated_savings=float(data.get("estimated_savings") or 0.0),
        currency=str(data.get("currency") or ""),
    )


def record_from_dict(recommendation_id: str, data: Mapping[str, Any]) -> LifecycleRecord:
    status = str(data.get("status") or "")
    reason = DismissalReason(str(data.get("reason") or ""))
    note = str(data.get("note") or "")
    created_at = _parse_ts(data["created_at"])
    updated_at = _parse_ts(data.get("updated_at") or data["created_at"])
    last_known = _last_known_from_dict(data.get("last_known"))
    if status == LifecycleStatus.DISMISSED.value:
        return Dismissed(recommendation_id, reason, note, created_at, updated_at, last_known)
    if status == LifecycleStatus.SNOOZED.value:
        return Snoozed(
            recommendation_id, _parse_ts(data["until"]), reason, note, created_at, updated_at, last_known
        )
    raise ValueError(f"unknown record status {status!r}")


class DismissalStore:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._records: Dict[str, LifecycleRecord] = {}

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> "DismissalStore":
        """Replace the in-memory mapping with the file contents.

        A missing file is an empty store. Unreadable JSON, an unknown version
        or a malformed record raise ``StoreCorruptedError``; other I/O errors
        raise ``StoreError``.
        """
        self._records = {}
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self
        except OSError as exc:
            raise StoreError(f"reading lifecycle store {self._path}: {exc}") from exc

        try:
            document = json.loads(raw)
        except ValueError as exc:
            raise StoreCorruptedError(f"lifecycle store {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise StoreCorruptedError(f"lifecycle store {self._path} must hold a JSON object")
        version = document.get("version")
        if version != STORE_VERSION:
            raise StoreCorruptedError(
                f"lifecycle store {self._path} has unsupported version {version!r} (expected {STORE_VERSION})"
            )

        records: Dict[str, LifecycleRecord] = {}
        for rec_id, row in dict(document.get("records") or {}).items():
            if not isinstance(row, dict):
                raise StoreCorruptedError(f"lifecycle store record {rec_id!r} is not an object")
            try:
                records[str(rec_id)] = record_from_dict(str(rec_id), row)
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreCorruptedError(f"lifecycle store record {rec_id!r} is invalid: {exc}") from exc
        self._records = records
        log_json(logger, "lifecycle.store.loaded", level=logging.DEBUG, path=str(self._path), records=len(records))
        return self

    def save(self) -> None:
        document = {
            "version": STORE_VERSION,
            "records": {rec_id: record_to_dict(rec) for rec_id, rec in sorted(self._records.items())},
        }
        try:
            write_json_atomic(self._path, document)
        except OSError as exc:
            raise StoreError(f"writing lifecycle store {self._path}: {exc}") from exc
        log_json(logger, "lifecycle.store.saved", level=logging.DEBUG, path=str(self._path), records=len(self._records))

    def get(self, recommendation_id: str) -> LifecycleState:
        return self._records.get(recommendation_id) or NoRecord(recommendation_id)

    def put(self, record: LifecycleRecord) -> None:
        if not isinstance(record, (Dismissed, Snoozed)):
            raise TypeError(f"only dismissed or snoozed records are stored, got {type(record).__name__}")
        self._records[record.recommendation_id] = record

    def remove(self, recommendation_id: str) -> bool:
        return self._records.pop(recommendation_id, None) is not None

    def records(self) -> List[LifecycleRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def expired_snoozes(self, now: datetime) -> List[Snoozed]:
        return [r for r in self.records() if isinstance(r, Snoozed) and r.expired(now)]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[LifecycleRecord]:
        return iter(self.records())
