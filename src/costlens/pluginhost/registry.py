"""Installed plugins and adapter sessions over them.

Plugins live in ``<plugin_dir>/<name>/manifest.json``. ``open_adapter`` launches
the plugins selected by an adapter name and returns an ``AdapterSession`` whose
``close`` releases every process exactly once.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from costlens.config import DEFAULT_PLUGIN_TIMEOUT_SEC
from costlens.domain.context import RequestContext
from costlens.domain.contracts import Launcher, PluginClient, PluginSource
from costlens.domain.plugins import WILDCARD_PROVIDER, PluginDescriptor
from costlens.observability.structured_log import log_json
from costlens.plugins.manifest import MANIFEST_FILE, load_manifest, resolve_entrypoint, validate_manifest

logger = logging.getLogger(__name__)


class PluginRegistryError(RuntimeError):
    pass


class AdapterOpenError(RuntimeError):
    pass


class PluginRegistry:
    def __init__(self, plugin_dir: Path):
        self._plugin_dir = Path(plugin_dir).expanduser()
        self._warnings: List[str] = []

    @property
    def plugin_dir(self) -> Path:
        return self._plugin_dir

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def list_plugins(self) -> List[PluginDescriptor]:
        """Installed plugins sorted by name; invalid entries become warnings."""
        self._warnings = []
        if not self._plugin_dir.exists():
            return []
        try:
            entries = sorted(p for p in self._plugin_dir.iterdir() if p.is_dir())
        except OSError as exc:
            raise PluginRegistryError(f"listing plugin directory {self._plugin_dir}: {exc}") from exc

        descriptors: List[PluginDescriptor] = []
        for entry in entries:
            descriptor = self._load_descriptor(entry)
            if descriptor is not None:
                descriptors.append(descriptor)
        for warning in self._warnings:
            log_json(logger, "registry.plugin.skipped", level=logging.WARNING, warning=warning)
        descriptors.sort(key=lambda d: (d.name, d.path))
        return descriptors

    def _load_descriptor(self, entry: Path) -> Optional[PluginDescriptor]:
        manifest_path = entry / MANIFEST_FILE
        if not manifest_path.is_file():
            self._warnings.append(f"{entry.name}: missing {MANIFEST_FILE}")
            return None
        try:
            manifest = load_manifest(manifest_path)
        except (OSError, ValueError) as exc:
            self._warnings.append(f"{entry.name}: unreadable manifest: {exc}")
            return None
        errors = validate_manifest(manifest)
        if errors:
            self._warnings.append(f"{entry.name}: " + "; ".join(errors))
            return None
        binary = resolve_entrypoint(manifest_path, str(manifest["entrypoint"]))
        if not binary.is_file() or not os.access(binary, os.X_OK):
            self._warnings.append(f"{entry.name}: entrypoint {binary} is not an executable file")
            return None
        providers = tuple(str(p).strip() for p in list(manifest.get("providers") or []) if str(p).strip())
        return PluginDescriptor(
            name=str(manifest["name"]).strip(),
            path=str(binary),
            providers=providers,
            version=str(manifest.get("version") or ""),
        )


def select_plugins(descriptors: Sequence[PluginDescriptor], adapter: str) -> List[PluginDescriptor]:
    """Pick the plugins an adapter name refers to.

    An empty name selects everything. A name matching plugin names selects
    exactly those plugins; otherwise the name is taken as a provider tag and
    every plugin whose scope covers it (including wildcard plugins) is chosen.
    """
    adapter = (adapter or "").strip()
    if not adapter or adapter == WILDCARD_PROVIDER:
        return list(descriptors)
    by_name = [d for d in descriptors if d.name == adapter]
    if by_name:
        return by_name
    return [d for d in descriptors if d.applies_to(adapter)]


class AdapterSession:
    def __init__(self, adapter: str, clients: Sequence[PluginClient]):
        self.adapter = adapter
        self._clients: Tuple[PluginClient, ...] = tuple(clients)
        self._closed = False

    @property
    def clients(self) -> Tuple[PluginClient, ...]:
        return self._clients

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await _close_all(self._clients)

    async def __aenter__(self) -> "AdapterSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def open_adapter(
    ctx: RequestContext,
    source: PluginSource,
    launcher: Launcher,
    adapter: str = "",
    timeout_sec: float = DEFAULT_PLUGIN_TIMEOUT_SEC,
) -> AdapterSession:
    ctx.log("adapter.open.start", level=logging.DEBUG, adapter=adapter)
    try:
        descriptors = source.list_plugins()
    except PluginRegistryError as exc:
        raise AdapterOpenError(f"listing plugins: {exc}") from exc

    selected = select_plugins(descriptors, adapter)
    if not selected:
        label = adapter or "(any)"
        raise AdapterOpenError(f"no installed plugins match adapter {label}")

    opened: List[PluginClient] = []
    try:
        for descriptor in selected:
            try:
                client = await launcher.launch(descriptor, timeout_sec)
            except Exception as exc:
                raise AdapterOpenError(f"opening plugin {descriptor.name}: {exc}") from exc
            opened.append(client)
    except BaseException:
        await _close_all(opened)
        raise

    ctx.log("adapter.open.finish", adapter=adapter, plugins=[d.name for d in selected])
    return AdapterSession(adapter, opened)


async def _close_all(clients: Sequence[PluginClient]) -> None:
    for client in clients:
        try:
            await client.close()
        except Exception as exc:
            log_json(
                logger,
                "adapter.close.error",
                level=logging.WARNING,
                plugin=getattr(client, "name", ""),
                error=str(exc),
            )
