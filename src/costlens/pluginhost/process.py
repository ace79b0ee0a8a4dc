"""Plugin processes spoken to over newline-delimited JSON on stdio.

A request is ``{"id": n, "method": m, "params": {...}}``; the plugin answers
with ``{"id": n, "result": ...}`` or ``{"id": n, "error": {"code", "message"}}``.
``ProcessLauncher`` starts the executable and performs the ``get_metadata``
handshake before handing a ``ProcessClient`` to the caller.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from costlens.domain.costs import (
    CostResult,
    Recommendation,
    ResourceDescriptor,
    cost_result_from_wire,
    recommendation_from_wire,
)
from costlens.domain.plugins import PluginDescriptor, PluginMetadata, metadata_from_wire
from costlens.observability.structured_log import log_json
from costlens.util import redact

logger = logging.getLogger(__name__)

CORE_SPEC_VERSION = "1.2.0"
DEFAULT_CALL_TIMEOUT_SEC = 5.0
TERMINATE_GRACE_SEC = 2.0
MAX_LINE_BYTES = 16 * 1024 * 1024

METHOD_GET_METADATA = "get_metadata"
METHOD_GET_COSTS = "get_costs"
METHOD_GET_RECOMMENDATIONS = "get_recommendations"
ERROR_UNIMPLEMENTED = "unimplemented"


class PluginLaunchError(RuntimeError):
    pass


class PluginIncompatibleError(PluginLaunchError):
    pass


class PluginProtocolError(RuntimeError):
    pass


class PluginCallError(RuntimeError):
    def __init__(self, plugin: str, method: str, code: str, message: str):
        super().__init__(f"plugin {plugin} failed {method}: {message or code}")
        self.plugin = plugin
        self.method = method
        self.code = code
        self.message = message

    @property
    def unimplemented(self) -> bool:
        return self.code == ERROR_UNIMPLEMENTED


class ProcessClient:
    """Owns exactly one plugin process and its stdio channel."""

    def __init__(
        self,
        name: str,
        process: asyncio.subprocess.Process,
        call_timeout_sec: float = DEFAULT_CALL_TIMEOUT_SEC,
        terminate_grace_sec: float = TERMINATE_GRACE_SEC,
    ):
        self.name = name
        self.metadata: Optional[PluginMetadata] = None
        self._proc = process
        self._call_timeout_sec = call_timeout_sec
        self._terminate_grace_sec = terminate_grace_sec
        self._lock = asyncio.Lock()
        self._next_id = 0
        self._closed = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, timeout_sec: Optional[float] = None) -> Any:
        if self._closed:
            raise PluginProtocolError(f"plugin {self.name} is closed")
        timeout = timeout_sec if timeout_sec is not None else self._call_timeout_sec
        async with self._lock:
            self._next_id += 1
            request_id = self._next_id
            request = {"id": request_id, "method": method, "params": params or {}}
            return await asyncio.wait_for(self._roundtrip(request_id, method, request), timeout=timeout)

    async def get_metadata(self, timeout_sec: Optional[float] = None) -> PluginMetadata:
        result = await self.call(METHOD_GET_METADATA, timeout_sec=timeout_sec)
        if not isinstance(result, dict):
            raise PluginProtocolError(f"plugin {self.name} returned non-object metadata")
        metadata = metadata_from_wire(result)
        if not metadata.name:
            metadata = dataclasses.replace(metadata, name=self.name)
        self.metadata = metadata
        return metadata

    async def get_costs(
        self,
        resources: Sequence[ResourceDescriptor],
        timeout_sec: Optional[float] = None,
    ) -> List[CostResult]:
        result = await self.call(
            METHOD_GET_COSTS,
            {"resources": [r.to_wire() for r in resources]},
            timeout_sec=timeout_sec,
        )
        rows = _result_list(self.name, result, "results")
        try:
            return [cost_result_from_wire(row, source=self.name) for row in rows]
        except ValueError as exc:
            raise PluginProtocolError(f"plugin {self.name} returned invalid cost data: {exc}") from exc

    async def get_recommendations(
        self,
        resources: Sequence[ResourceDescriptor],
        timeout_sec: Optional[float] = None,
    ) -> List[Recommendation]:
        result = await self.call(
            METHOD_GET_RECOMMENDATIONS,
            {"resources": [r.to_wire() for r in resources]},
            timeout_sec=timeout_sec,
        )
        return [recommendation_from_wire(row) for row in _result_list(self.name, result, "recommendations")]

    async def close(self) -> None:
        """Terminate the process and release its pipes. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        proc = self._proc
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._terminate_grace_sec)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        log_json(logger, "pluginhost.client.closed", level=logging.DEBUG, plugin=self.name, returncode=proc.returncode)

    async def _roundtrip(self, request_id: int, method: str, request: Dict[str, Any]) -> Any:
        stdin = self._proc.stdin
        stdout = self._proc.stdout
        if stdin is None or stdout is None:
            raise PluginProtocolError(f"plugin {self.name} has no stdio channel")
        try:
            stdin.write((json.dumps(request, ensure_ascii=True) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise PluginProtocolError(f"plugin {self.name} closed its input: {exc}") from exc

        while True:
            try:
                raw = await stdout.readline()
            except ValueError as exc:
                raise PluginProtocolError(f"plugin {self.name} sent an oversized response") from exc
            if not raw:
                raise PluginProtocolError(f"plugin {self.name} exited before answering {method}")
            try:
                message = json.loads(raw)
            except ValueError as exc:
                raise PluginProtocolError(
                    f"plugin {self.name} sent malformed JSON: {redact(raw[:120].decode(errors='replace'))}"
                ) from exc
            if not isinstance(message, dict):
                raise PluginProtocolError(f"plugin {self.name} sent a non-object response")
            response_id = message.get("id")
            if response_id != request_id:
                # Late answer to a call that already timed out.
                if isinstance(response_id, int) and response_id < request_id:
                    continue
                raise PluginProtocolError(
                    f"plugin {self.name} answered id {response_id!r}, expected {request_id}"
                )
            error = message.get("error")
            if error:
                detail = error if isinstance(error, dict) else {"message": str(error)}
                raise PluginCallError(
                    self.name,
                    method,
                    str(detail.get("code") or "error"),
                    redact(str(detail.get("message") or "")),
                )
            return message.get("result")


class ProcessLauncher:
    def __init__(
        self,
        call_timeout_sec: float = DEFAULT_CALL_TIMEOUT_SEC,
        strict_compat: bool = False,
        stderr_passthrough: bool = False,
        terminate_grace_sec: float = TERMINATE_GRACE_SEC,
    ):
        self._call_timeout_sec = call_timeout_sec
        self._strict_compat = strict_compat
        self._stderr_passthrough = stderr_passthrough
        self._terminate_grace_sec = terminate_grace_sec

    async def launch(self, descriptor: PluginDescriptor, timeout_sec: float) -> ProcessClient:
        """Start ``descriptor`` and complete the metadata handshake within ``timeout_sec``.

        On failure no process is left running and ``PluginLaunchError`` is raised.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        log_json(
            logger,
            "pluginhost.launch.start",
            level=logging.DEBUG,
            plugin=descriptor.name,
            path=descriptor.path,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                descriptor.path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None if self._stderr_passthrough else asyncio.subprocess.DEVNULL,
                limit=MAX_LINE_BYTES,
            )
        except OSError as exc:
            raise PluginLaunchError(f"starting {descriptor.path}: {exc}") from exc

        client = ProcessClient(
            descriptor.name,
            proc,
            call_timeout_sec=self._call_timeout_sec,
            terminate_grace_sec=self._terminate_grace_sec,
        )
        try:
            remaining = max(0.001, deadline - loop.time())
            metadata = await client.get_metadata(timeout_sec=remaining)
            check_spec_version(descriptor.name, metadata.spec_version, strict=self._strict_compat)
        except asyncio.TimeoutError as exc:
            await client.close()
            raise PluginLaunchError(f"handshake with {descriptor.name} timed out after {timeout_sec:g}s") from exc
        except (PluginProtocolError, PluginCallError) as exc:
            await client.close()
            raise PluginLaunchError(f"handshake with {descriptor.name} failed: {exc}") from exc
        except BaseException:
            await client.close()
            raise

        log_json(
            logger,
            "pluginhost.launch.finish",
            level=logging.DEBUG,
            plugin=descriptor.name,
            pid=client.pid,
            spec_version=metadata.spec_version,
        )
        return client


def _major(version: str) -> int:
    value = (version or "").strip().lstrip("vV")
    head = value.split(".", 1)[0]
    if not head.isdigit():
        raise ValueError(f"unparseable spec version {version!r}")
    return int(head)


def spec_versions_compatible(core: str, plugin: str) -> bool:
    return _major(core) == _major(plugin)


def check_spec_version(plugin_name: str, plugin_spec_version: str, strict: bool = False) -> None:
    if not plugin_spec_version:
        # Plugins that predate version reporting.
        return
    try:
        compatible = spec_versions_compatible(CORE_SPEC_VERSION, plugin_spec_version)
    except ValueError as exc:
        log_json(
            logger,
            "pluginhost.spec_version.unparseable",
            level=logging.WARNING,
            plugin=plugin_name,
            plugin_spec=plugin_spec_version,
            error=str(exc),
        )
        return
    if compatible:
        return
    log_json(
        logger,
        "pluginhost.spec_version.mismatch",
        level=logging.WARNING,
        plugin=plugin_name,
        core_spec=CORE_SPEC_VERSION,
        plugin_spec=plugin_spec_version,
    )
    if strict:
        raise PluginIncompatibleError(
            f"plugin {plugin_name} has spec version {plugin_spec_version}, "
            f"core requires compatible with {CORE_SPEC_VERSION}"
        )


def _result_list(plugin: str, result: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(result, dict):
        result = result.get(key)
    if result is None:
        return []
    if not isinstance(result, list) or not all(isinstance(row, dict) for row in result):
        raise PluginProtocolError(f"plugin {plugin} returned malformed {key}")
    return result
