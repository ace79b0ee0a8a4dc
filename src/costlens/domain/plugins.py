from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

CAPABILITY_COSTS = "costs"
CAPABILITY_RECOMMENDATIONS = "recommendations"
BASELINE_CAPABILITIES: Tuple[str, ...] = (CAPABILITY_COSTS, CAPABILITY_RECOMMENDATIONS)
WILDCARD_PROVIDER = "*"
NOT_AVAILABLE = "N/A"


def is_wildcard_scope(providers: Tuple[str, ...]) -> bool:
    return not providers or WILDCARD_PROVIDER in providers


@dataclass(frozen=True)
class PluginDescriptor:
    name: str
    path: str
    providers: Tuple[str, ...] = ()
    version: str = ""

    def applies_to(self, provider: str) -> bool:
        return is_wildcard_scope(self.providers) or provider in self.providers


@dataclass(frozen=True)
class PluginMetadata:
    name: str
    version: str
    spec_version: str
    providers: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = BASELINE_CAPABILITIES

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def applies_to(self, provider: str) -> bool:
        return is_wildcard_scope(self.providers) or provider in self.providers


def metadata_from_wire(data: Mapping[str, Any]) -> PluginMetadata:
    providers = tuple(str(p) for p in list(data.get("providers") or []) if str(p).strip())
    capabilities = tuple(str(c) for c in list(data.get("capabilities") or []) if str(c).strip())
    return PluginMetadata(
        name=str(data.get("name") or ""),
        version=str(data.get("version") or ""),
        spec_version=str(data.get("spec_version") or ""),
        providers=providers,
        # Plugins that predate capability reporting answer both query kinds.
        capabilities=capabilities or BASELINE_CAPABILITIES,
    )


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of probing one plugin: metadata on success, a note on failure."""

    plugin_name: str
    path: str
    metadata: Optional[PluginMetadata] = None
    capabilities: Tuple[str, ...] = ()
    note: str = ""

    @property
    def ok(self) -> bool:
        return self.metadata is not None and not self.note

    @property
    def spec_version(self) -> str:
        if self.metadata and self.metadata.spec_version:
            return self.metadata.spec_version
        return NOT_AVAILABLE

    @property
    def runtime_version(self) -> str:
        if self.metadata and self.metadata.version:
            return self.metadata.version
        return NOT_AVAILABLE

    @property
    def providers(self) -> Tuple[str, ...]:
        return self.metadata.providers if self.metadata else ()

    @classmethod
    def succeeded(cls, descriptor: PluginDescriptor, metadata: PluginMetadata) -> "DispatchOutcome":
        return cls(
            plugin_name=descriptor.name,
            path=descriptor.path,
            metadata=metadata,
            capabilities=metadata.capabilities,
        )

    @classmethod
    def failed(cls, descriptor: PluginDescriptor, note: str) -> "DispatchOutcome":
        return cls(
            plugin_name=descriptor.name,
            path=descriptor.path,
            note=note or "Failed: unknown error",
        )
