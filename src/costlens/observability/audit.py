"""Append-only audit trail for commands that query or mutate state.

Each command invocation that chooses to audit produces one ``AuditEntry``.
Sinks are best-effort: ``AuditRecorder`` logs sink failures and carries on,
the primary command result never depends on the audit write.
"""
from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol

from costlens.observability.structured_log import log_json
from costlens.util import redact, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    ts: datetime
    command: str
    trace_id: str
    parameters: Dict[str, str] = field(default_factory=dict)
    success: bool = True
    result_count: int = 0
    amount: float = 0.0
    changed: Optional[bool] = None
    error: str = ""
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row["ts"] = self.ts.isoformat()
        return row

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEntry":
        changed = data.get("changed")
        return cls(
            ts=datetime.fromisoformat(str(data["ts"])),
            command=str(data.get("command") or ""),
            trace_id=str(data.get("trace_id") or ""),
            parameters={str(k): str(v) for k, v in dict(data.get("parameters") or {}).items()},
            success=bool(data.get("success", False)),
            result_count=int(data.get("result_count") or 0),
            amount=float(data.get("amount") or 0.0),
            changed=None if changed is None else bool(changed),
            error=str(data.get("error") or ""),
            duration_ms=int(data.get("duration_ms") or 0),
        )


EntryFilter = Callable[[AuditEntry], bool]


class AuditSink(Protocol):
    def write(self, entry: AuditEntry) -> None:
        ...

    def read(self, limit: int = 500, where: Optional[EntryFilter] = None) -> List[AuditEntry]:
        ...


class NullAuditSink:
    def write(self, entry: AuditEntry) -> None:
        return None

    def read(self, limit: int = 500, where: Optional[EntryFilter] = None) -> List[AuditEntry]:
        return []


class JsonlAuditSink:
    """One JSON object per line, appended to ``path``."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=True, sort_keys=True) + "\n")

    def read(self, limit: int = 500, where: Optional[EntryFilter] = None) -> List[AuditEntry]:
        """The newest ``limit`` entries accepted by ``where``, oldest first.

        The filter runs before the limit, so unrelated commands never push
        matching entries out of the window.
        """
        if not self._path.exists():
            return []
        items: Deque[AuditEntry] = deque(maxlen=max(1, limit))
        with self._path.open("r", encoding="utf-8") as f:
            for raw in f:
                if not raw.strip():
                    continue
                try:
                    entry = AuditEntry.from_dict(json.loads(raw))
                except (KeyError, TypeError, ValueError):
                    # A torn or hand-edited line must not hide the rest of the trail.
                    continue
                if where is None or where(entry):
                    items.append(entry)
        return list(items)


class AuditRecorder:
    """Times one command and writes its audit entry on completion."""

    def __init__(
        self,
        sink: AuditSink,
        command: str,
        trace_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ):
        self._sink = sink
        self._command = command
        self._trace_id = trace_id
        self._parameters = {str(k): str(v) for k, v in dict(parameters or {}).items()}
        self._start = time.monotonic()

    def success(self, result_count: int = 0, amount: float = 0.0, changed: Optional[bool] = None) -> AuditEntry:
        return self._emit(success=True, result_count=result_count, amount=amount, changed=changed)

    def failure(self, error: BaseException | str) -> AuditEntry:
        return self._emit(success=False, error=redact(str(error)))

    def _emit(self, **outcome: Any) -> AuditEntry:
        entry = AuditEntry(
            ts=utc_now(),
            command=self._command,
            trace_id=self._trace_id,
            parameters=dict(self._parameters),
            duration_ms=int((time.monotonic() - self._start) * 1000),
            **outcome,
        )
        try:
            self._sink.write(entry)
        except Exception as exc:
            log_json(
                logger,
                "audit.write.error",
                level=logging.WARNING,
                command=self._command,
                trace_id=self._trace_id,
                error=str(exc),
            )
        return entry
