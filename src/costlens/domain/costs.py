from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class ResourceDescriptor:
    type: str
    id: str
    provider: str

    def to_wire(self) -> Dict[str, str]:
        return {"type": self.type, "id": self.id, "provider": self.provider}


@dataclass(frozen=True)
class Recommendation:
    recommendation_id: str
    resource_id: str
    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return str(self.payload.get("description") or "")

    @property
    def estimated_savings(self) -> float:
        try:
            return float(self.payload.get("estimated_savings") or 0.0)
        except (TypeError, ValueError):
            return 0.0


@dataclass(frozen=True)
class CostResult:
    resource_id: str
    currency: str
    amount: float
    recommendations: Tuple[Recommendation, ...] = ()
    notes: str = ""
    source: str = ""


def recommendation_from_wire(data: Mapping[str, Any]) -> Recommendation:
    payload = data.get("payload")
    if not isinstance(payload, dict):
        payload = {
            k: v
            for k, v in data.items()
            if k not in {"id", "recommendation_id", "resource_id", "type"}
        }
    return Recommendation(
        recommendation_id=str(data.get("recommendation_id") or data.get("id") or ""),
        resource_id=str(data.get("resource_id") or ""),
        type=str(data.get("type") or ""),
        payload=dict(payload),
    )


def cost_result_from_wire(data: Mapping[str, Any], source: str = "") -> CostResult:
    try:
        amount = float(data.get("amount") or 0.0)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"cost amount is not a number: {data.get('amount')!r}") from exc
    return CostResult(
        resource_id=str(data.get("resource_id") or ""),
        currency=str(data.get("currency") or DEFAULT_CURRENCY),
        amount=amount,
        notes=str(data.get("notes") or ""),
        source=source,
    )
