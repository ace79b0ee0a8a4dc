"""Attach fetched recommendations to cost results by resource id."""
from __future__ import annotations

import dataclasses
import logging
from typing import Dict, List, Sequence

from costlens.domain.context import RequestContext
from costlens.domain.contracts import RecommendationFetcher
from costlens.domain.costs import CostResult, Recommendation, ResourceDescriptor
from costlens.util import redact


def group_by_resource(ctx: RequestContext, recommendations: Sequence[Recommendation]) -> Dict[str, List[Recommendation]]:
    grouped: Dict[str, List[Recommendation]] = {}
    for rec in recommendations:
        if not rec.resource_id:
            ctx.log(
                "merge.skip_empty_resource_id",
                level=logging.WARNING,
                recommendation_id=rec.recommendation_id,
                type=rec.type,
            )
            continue
        grouped.setdefault(rec.resource_id, []).append(rec)
    return grouped


async def merge_recommendations(
    ctx: RequestContext,
    resources: Sequence[ResourceDescriptor],
    cost_results: Sequence[CostResult],
    fetcher: RecommendationFetcher,
) -> List[CostResult]:
    """Attach recommendations to cost results by resource id.

    Recommendations are fetched once for all resources. A failed fetch is
    logged and the cost results come back unchanged; the
    returned list always matches ``cost_results`` in length and order.
    """
    results = list(cost_results)
    try:
        recommendations = await fetcher.get_recommendations_for_resources(ctx, resources)
    except Exception as exc:
        ctx.log("merge.fetch.failed", level=logging.WARNING, error=redact(str(exc)) or type(exc).__name__)
        return results

    grouped = group_by_resource(ctx, recommendations)
    merged = [
        dataclasses.replace(result, recommendations=tuple(grouped[result.resource_id]))
        if result.resource_id in grouped
        else result
        for result in results
    ]
    ctx.log(
        "merge.finish",
        level=logging.DEBUG,
        results=len(merged),
        recommendations=sum(len(v) for v in grouped.values()),
    )
    return merged
