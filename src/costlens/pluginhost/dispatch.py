"""Bounded-concurrency probing of many plugins.

Each descriptor is launched and asked for its metadata by one of a fixed pool
of worker coroutines. A plugin that fails in any way yields a failure note for
itself only; the aggregate always holds one outcome per descriptor, sorted by
plugin name so output does not depend on which plugin answered first.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from costlens.config import DEFAULT_PLUGIN_TIMEOUT_SEC, default_concurrency
from costlens.domain.context import RequestContext
from costlens.domain.contracts import Launcher, PluginSource
from costlens.domain.plugins import DispatchOutcome, PluginDescriptor
from costlens.util import redact

logger = logging.getLogger(__name__)

CANCELLED_NOTE = "Cancelled before completion"

_Indexed = Tuple[int, PluginDescriptor]


class Dispatcher:
    def __init__(
        self,
        launcher: Launcher,
        timeout_sec: float = DEFAULT_PLUGIN_TIMEOUT_SEC,
        max_concurrency: Optional[int] = None,
    ):
        self._launcher = launcher
        self._timeout_sec = timeout_sec
        self._max_concurrency = max(1, max_concurrency or default_concurrency())

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def dispatch_registry(
        self,
        ctx: RequestContext,
        source: PluginSource,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[DispatchOutcome]:
        # Enumeration errors are the one failure that is not isolated per plugin.
        descriptors = source.list_plugins()
        return await self.dispatch(ctx, descriptors, cancel=cancel)

    async def dispatch(
        self,
        ctx: RequestContext,
        descriptors: Sequence[PluginDescriptor],
        cancel: Optional[asyncio.Event] = None,
    ) -> List[DispatchOutcome]:
        items = list(descriptors)
        if not items:
            return []

        pending: asyncio.Queue[_Indexed] = asyncio.Queue()
        for item in enumerate(items):
            pending.put_nowait(item)
        finished: asyncio.Queue[Tuple[int, DispatchOutcome]] = asyncio.Queue()

        worker_count = min(self._max_concurrency, len(items))
        ctx.log(
            "dispatch.start",
            level=logging.DEBUG,
            plugins=len(items),
            workers=worker_count,
            timeout_sec=self._timeout_sec,
        )
        workers = [
            asyncio.create_task(self._worker(ctx, pending, finished), name=f"costlens-dispatch-{n}")
            for n in range(worker_count)
        ]
        try:
            await self._join(workers, cancel)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        collected: Dict[int, DispatchOutcome] = {}
        while not finished.empty():
            index, outcome = finished.get_nowait()
            collected[index] = outcome

        outcomes = [
            collected.get(index) or DispatchOutcome.failed(descriptor, CANCELLED_NOTE)
            for index, descriptor in enumerate(items)
        ]
        outcomes.sort(key=lambda o: (o.plugin_name, o.path))
        ctx.log(
            "dispatch.finish",
            plugins=len(outcomes),
            failed=sum(1 for o in outcomes if not o.ok),
            cancelled=len(items) - len(collected),
        )
        return outcomes

    async def _join(self, workers: List[asyncio.Task], cancel: Optional[asyncio.Event]) -> None:
        if cancel is None:
            await asyncio.gather(*workers)
            return
        cancel_waiter = asyncio.create_task(cancel.wait())
        try:
            await asyncio.wait([*workers, cancel_waiter], return_when=asyncio.FIRST_COMPLETED)
            while not cancel.is_set() and not all(task.done() for task in workers):
                await asyncio.wait([*workers, cancel_waiter], return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if not cancel.is_set():
            await asyncio.gather(*workers)

    async def _worker(
        self,
        ctx: RequestContext,
        pending: "asyncio.Queue[_Indexed]",
        finished: "asyncio.Queue[Tuple[int, DispatchOutcome]]",
    ) -> None:
        while True:
            try:
                index, descriptor = pending.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcome = await self._inspect(ctx, descriptor)
            finished.put_nowait((index, outcome))

    async def _inspect(self, ctx: RequestContext, descriptor: PluginDescriptor) -> DispatchOutcome:
        try:
            client = await asyncio.wait_for(
                self._launcher.launch(descriptor, self._timeout_sec),
                timeout=self._timeout_sec,
            )
        except asyncio.TimeoutError:
            note = f"Failed: timed out after {self._timeout_sec:g}s"
        except Exception as exc:
            note = f"Failed: {redact(str(exc)) or type(exc).__name__}"
        else:
            try:
                metadata = client.metadata
                if metadata is None:
                    return DispatchOutcome.failed(descriptor, "Failed: plugin returned no metadata")
                return DispatchOutcome.succeeded(descriptor, metadata)
            finally:
                await client.close()

        ctx.log(
            "dispatch.plugin.failed",
            level=logging.DEBUG,
            plugin=descriptor.name,
            path=descriptor.path,
            note=note,
        )
        return DispatchOutcome.failed(descriptor, note)
