"""Cost and recommendation queries across the clients of an open adapter."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from costlens.config import DEFAULT_PLUGIN_TIMEOUT_SEC
from costlens.domain.context import RequestContext
from costlens.domain.contracts import PluginClient
from costlens.domain.costs import DEFAULT_CURRENCY, CostResult, Recommendation, ResourceDescriptor
from costlens.domain.plugins import CAPABILITY_COSTS, CAPABILITY_RECOMMENDATIONS
from costlens.util import redact

logger = logging.getLogger(__name__)

NO_PRICING_NOTE = "No pricing information available"


class CostQueryError(RuntimeError):
    pass


class RecommendationFetchError(RuntimeError):
    pass


def _client_covers(client: PluginClient, resource: ResourceDescriptor, capability: str) -> bool:
    metadata = client.metadata
    if metadata is None:
        return True
    return metadata.supports(capability) and metadata.applies_to(resource.provider)


class CostQueryEngine:
    def __init__(self, clients: Sequence[PluginClient], timeout_sec: float = DEFAULT_PLUGIN_TIMEOUT_SEC):
        self._clients = sorted(clients, key=lambda c: c.name)
        self._timeout_sec = timeout_sec

    @property
    def clients(self) -> List[PluginClient]:
        return list(self._clients)

    async def get_projected_costs(
        self,
        ctx: RequestContext,
        resources: Sequence[ResourceDescriptor],
    ) -> List[CostResult]:
        """One result per resource, in input order.

        Clients are asked concurrently. When several price the same resource the
        client with the lowest name wins; resources nobody priced get a zero
        amount with an explanatory note.
        """
        resources = list(resources)
        if not resources:
            return []
        batches = self._batches(resources, CAPABILITY_COSTS)
        if not batches:
            ctx.log("cost.query.no_clients", level=logging.WARNING, resources=len(resources))
            return [_unpriced(r) for r in resources]

        replies = await asyncio.gather(
            *(self._call(ctx, client, "get_costs", batch) for client, batch in batches)
        )
        failures = [error for _, error in replies if error is not None]
        if len(failures) == len(batches):
            raise CostQueryError("all plugins failed to return costs: " + "; ".join(failures))

        priced: Dict[str, CostResult] = {}
        for rows, _ in replies:
            for row in rows or []:
                if row.resource_id and row.resource_id not in priced:
                    priced[row.resource_id] = row
        results = [priced.get(r.id) or _unpriced(r) for r in resources]
        ctx.log(
            "cost.query.finish",
            resources=len(resources),
            priced=sum(1 for r in resources if r.id in priced),
            failed_plugins=len(failures),
        )
        return results

    async def get_recommendations_for_resources(
        self,
        ctx: RequestContext,
        resources: Sequence[ResourceDescriptor],
    ) -> List[Recommendation]:
        resources = list(resources)
        batches = self._batches(resources, CAPABILITY_RECOMMENDATIONS)
        if not batches:
            return []
        replies = await asyncio.gather(
            *(self._call(ctx, client, "get_recommendations", batch) for client, batch in batches)
        )
        failures = [error for _, error in replies if error is not None]
        if len(failures) == len(batches):
            raise RecommendationFetchError(
                "all plugins failed to return recommendations: " + "; ".join(failures)
            )
        recommendations: List[Recommendation] = []
        for rows, _ in replies:
            recommendations.extend(rows or [])
        return recommendations

    def _batches(
        self,
        resources: Sequence[ResourceDescriptor],
        capability: str,
    ) -> List[Tuple[PluginClient, List[ResourceDescriptor]]]:
        batches = []
        for client in self._clients:
            covered = [r for r in resources if _client_covers(client, r, capability)]
            if covered:
                batches.append((client, covered))
        return batches

    async def _call(
        self,
        ctx: RequestContext,
        client: PluginClient,
        method: str,
        batch: List[ResourceDescriptor],
    ) -> Tuple[Optional[list], Optional[str]]:
        try:
            rows = await asyncio.wait_for(
                getattr(client, method)(batch, timeout_sec=self._timeout_sec),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError:
            error = f"{client.name}: timed out after {self._timeout_sec:g}s"
        except Exception as exc:
            error = f"{client.name}: {redact(str(exc)) or type(exc).__name__}"
        else:
            return rows, None
        ctx.log("plugin.call.failed", level=logging.WARNING, plugin=client.name, method=method, error=error)
        return None, error


def _unpriced(resource: ResourceDescriptor) -> CostResult:
    return CostResult(
        resource_id=resource.id,
        currency=DEFAULT_CURRENCY,
        amount=0.0,
        notes=NO_PRICING_NOTE,
    )
