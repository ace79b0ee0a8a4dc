from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

from costlens.domain.costs import CostResult, Recommendation, ResourceDescriptor
from costlens.domain.plugins import PluginDescriptor, PluginMetadata

if TYPE_CHECKING:
    from costlens.domain.context import RequestContext


class PluginClient(Protocol):
    name: str
    metadata: Optional[PluginMetadata]

    async def get_costs(
        self,
        resources: Sequence[ResourceDescriptor],
        timeout_sec: Optional[float] = None,
    ) -> List[CostResult]:
        ...

    async def get_recommendations(
        self,
        resources: Sequence[ResourceDescriptor],
        timeout_sec: Optional[float] = None,
    ) -> List[Recommendation]:
        ...

    async def close(self) -> None:
        ...


class Launcher(Protocol):
    async def launch(self, descriptor: PluginDescriptor, timeout_sec: float) -> PluginClient:
        ...


class PluginSource(Protocol):
    def list_plugins(self) -> List[PluginDescriptor]:
        ...


class RecommendationFetcher(Protocol):
    async def get_recommendations_for_resources(
        self,
        ctx: "RequestContext",
        resources: Sequence[ResourceDescriptor],
    ) -> List[Recommendation]:
        ...
