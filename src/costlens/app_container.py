import logging
from dataclasses import dataclass
from typing import Optional

from costlens.config import CostlensConfig
from costlens.domain.context import RequestContext, new_request_context
from costlens.lifecycle.service import LifecycleService
from costlens.lifecycle.store import DismissalStore
from costlens.observability.audit import JsonlAuditSink
from costlens.pluginhost.dispatch import Dispatcher
from costlens.pluginhost.process import ProcessLauncher
from costlens.pluginhost.registry import PluginRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContainer:
    config: CostlensConfig
    registry: PluginRegistry
    launcher: ProcessLauncher
    dispatcher: Dispatcher
    store: DismissalStore
    lifecycle: LifecycleService
    audit: JsonlAuditSink

    def request_context(self, command: str, trace_id: str = "") -> RequestContext:
        return new_request_context(command, audit=self.audit, logger=logging.getLogger("costlens"), trace_id=trace_id)


def build_container(config: CostlensConfig, launcher: Optional[ProcessLauncher] = None) -> AppContainer:
    launcher = launcher or ProcessLauncher(
        call_timeout_sec=config.plugin_timeout_sec,
        strict_compat=config.strict_plugin_compat,
        stderr_passthrough=config.plugin_stderr,
    )
    store = DismissalStore(config.dismissed_path)
    return AppContainer(
        config=config,
        registry=PluginRegistry(config.plugin_dir),
        launcher=launcher,
        dispatcher=Dispatcher(
            launcher,
            timeout_sec=config.plugin_timeout_sec,
            max_concurrency=config.max_concurrency,
        ),
        store=store,
        lifecycle=LifecycleService(store),
        audit=JsonlAuditSink(config.audit_path),
    )
