import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from costlens.observability.audit import AuditRecorder, AuditSink, NullAuditSink
from costlens.observability.structured_log import log_json


@dataclass(frozen=True)
class RequestContext:
    """Per-invocation values threaded explicitly through every component."""

    command: str
    trace_id: str
    logger: logging.Logger
    audit: AuditSink = field(default_factory=NullAuditSink)

    def log(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        log_json(self.logger, event, level=level, trace_id=self.trace_id, command=self.command, **fields)

    def audit_recorder(self, command: str, parameters: Optional[Mapping[str, Any]] = None) -> AuditRecorder:
        return AuditRecorder(self.audit, command=command, trace_id=self.trace_id, parameters=parameters)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def new_request_context(
    command: str,
    audit: Optional[AuditSink] = None,
    logger: Optional[logging.Logger] = None,
    trace_id: str = "",
) -> RequestContext:
    return RequestContext(
        command=command,
        trace_id=trace_id or new_trace_id(),
        logger=logger or logging.getLogger("costlens"),
        audit=audit if audit is not None else NullAuditSink(),
    )
