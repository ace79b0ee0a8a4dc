from typing import List

from costlens.domain.lifecycle import DismissalReason

_LABELS = {
    DismissalReason.NOT_APPLICABLE: "Not Applicable",
    DismissalReason.ALREADY_IMPLEMENTED: "Already Implemented",
    DismissalReason.BUSINESS_CONSTRAINT: "Business Constraint",
    DismissalReason.TECHNICAL_CONSTRAINT: "Technical Constraint",
    DismissalReason.DEFERRED: "Deferred",
    DismissalReason.INACCURATE: "Inaccurate",
    DismissalReason.OTHER: "Other",
}


class LifecycleValidationError(ValueError):
    """Input rejected before the lifecycle store is touched."""


class InvalidReasonError(LifecycleValidationError):
    pass


def valid_reasons() -> List[str]:
    return sorted(reason.value for reason in DismissalReason)


def parse_reason(raw: str) -> DismissalReason:
    value = (raw or "").strip().lower()
    if not value:
        raise InvalidReasonError(
            f"invalid dismissal reason {raw!r}: empty string. Valid reasons: {', '.join(valid_reasons())}"
        )
    try:
        return DismissalReason(value)
    except ValueError:
        raise InvalidReasonError(
            f"invalid dismissal reason {raw!r}. Valid reasons: {', '.join(valid_reasons())}"
        ) from None


def reason_label(reason: DismissalReason) -> str:
    return _LABELS.get(reason, str(reason.value))
