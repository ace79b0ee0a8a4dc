from __future__ import annotations

import json
from typing import Any, Dict, List, Sequence

from costlens.domain.costs import CostResult, Recommendation
from costlens.domain.lifecycle import Dismissed, LifecycleState, LifecycleStatus, Snoozed
from costlens.domain.plugins import NOT_AVAILABLE, DispatchOutcome
from costlens.lifecycle.reasons import reason_label
from costlens.lifecycle.service import AnnotatedRecommendation
from costlens.observability.audit import AuditEntry

OUTPUT_TABLE = "table"
OUTPUT_JSON = "json"
OUTPUT_FORMATS = (OUTPUT_TABLE, OUTPUT_JSON)


def render_table(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    cells = [[str(h) for h in headers]] + [[_cell(v) for v in row] for row in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]
    lines = ["  ".join(value.ljust(widths[i]) for i, value in enumerate(row)).rstrip() for row in cells]
    lines.insert(1, "  ".join("-" * w for w in widths))
    return "\n".join(lines)


def render_json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, default=str)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value).replace("\n", " ")


def outcome_to_dict(outcome: DispatchOutcome) -> Dict[str, Any]:
    return {
        "name": outcome.plugin_name,
        "path": outcome.path,
        "version": outcome.runtime_version,
        "spec_version": outcome.spec_version,
        "providers": list(outcome.providers),
        "capabilities": list(outcome.capabilities),
        "note": outcome.note,
    }


def format_plugin_list(outcomes: Sequence[DispatchOutcome], output: str = OUTPUT_TABLE) -> str:
    if output == OUTPUT_JSON:
        return render_json([outcome_to_dict(o) for o in outcomes])
    if not outcomes:
        return "No plugins installed."
    rows = [
        (
            o.plugin_name,
            o.runtime_version,
            o.spec_version,
            list(o.providers) or NOT_AVAILABLE,
            list(o.capabilities) or NOT_AVAILABLE,
            o.note,
        )
        for o in outcomes
    ]
    return render_table(("NAME", "VERSION", "SPEC", "PROVIDERS", "CAPABILITIES", "NOTES"), rows)


def recommendation_to_dict(rec: Recommendation) -> Dict[str, Any]:
    return {
        "recommendation_id": rec.recommendation_id,
        "resource_id": rec.resource_id,
        "type": rec.type,
        "payload": dict(rec.payload),
    }


def cost_result_to_dict(result: CostResult) -> Dict[str, Any]:
    return {
        "resource_id": result.resource_id,
        "amount": result.amount,
        "currency": result.currency,
        "source": result.source,
        "notes": result.notes,
        "recommendations": [recommendation_to_dict(r) for r in result.recommendations],
    }


def format_cost_results(results: Sequence[CostResult], output: str = OUTPUT_TABLE) -> str:
    if output == OUTPUT_JSON:
        return render_json([cost_result_to_dict(r) for r in results])
    if not results:
        return "No resources."
    rows = [
        (r.resource_id, r.amount, r.currency, r.source, len(r.recommendations), r.notes)
        for r in results
    ]
    table = render_table(("RESOURCE", "MONTHLY", "CURRENCY", "SOURCE", "RECS", "NOTES"), rows)
    totals: Dict[str, float] = {}
    for r in results:
        totals[r.currency] = totals.get(r.currency, 0.0) + r.amount
    summary = ", ".join(f"{amount:.2f} {currency}" for currency, amount in sorted(totals.items()))
    return f"{table}\n\nTotal: {summary}"


def describe_state(state: LifecycleState) -> str:
    if isinstance(state, Dismissed):
        return f"dismissed ({reason_label(state.reason)})"
    if isinstance(state, Snoozed):
        return f"snoozed until {state.until.date().isoformat()} ({reason_label(state.reason)})"
    return "active"


def format_recommendations(items: Sequence[AnnotatedRecommendation], output: str = OUTPUT_TABLE) -> str:
    if output == OUTPUT_JSON:
        rows: List[Dict[str, Any]] = []
        for item in items:
            row = recommendation_to_dict(item.recommendation)
            row["status"] = item.status.value
            row["from_snapshot"] = item.from_snapshot
            rows.append(row)
        return render_json(rows)
    if not items:
        return "No recommendations."
    table_rows = [
        (
            item.recommendation.recommendation_id,
            item.recommendation.resource_id,
            item.recommendation.type,
            item.recommendation.estimated_savings,
            describe_state(item.state) if item.status is not LifecycleStatus.ACTIVE else "active",
            item.recommendation.description,
        )
        for item in items
    ]
    return render_table(("ID", "RESOURCE", "TYPE", "SAVINGS", "STATUS", "DESCRIPTION"), table_rows)


def format_history(entries: Sequence[AuditEntry], output: str = OUTPUT_TABLE) -> str:
    if output == OUTPUT_JSON:
        return render_json([e.to_dict() for e in entries])
    if not entries:
        return "No lifecycle history."
    rows = [
        (
            e.ts.isoformat(timespec="seconds"),
            e.command.rsplit(".", 1)[-1],
            e.parameters.get("reason", ""),
            e.parameters.get("until", ""),
            "ok" if e.success else f"failed: {e.error}",
            "" if e.changed is None else ("changed" if e.changed else "no change"),
        )
        for e in entries
    ]
    return render_table(("WHEN", "ACTION", "REASON", "UNTIL", "RESULT", "EFFECT"), rows)
