import asyncio
import random
import tempfile
import unittest
from pathlib import Path

from costlens.domain.context import new_request_context
from costlens.pluginhost.dispatch import CANCELLED_NOTE, Dispatcher
from costlens.pluginhost.process import PluginLaunchError, ProcessLauncher
from costlens.pluginhost.registry import PluginRegistry, PluginRegistryError

from fakes import FakeLauncher, StaticSource, descriptor
from plugin_scripts import install_plugin, metadata


class TestDispatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.ctx = new_request_context("plugin.list")

    async def test_empty_input_returns_empty_list(self):
        dispatcher = Dispatcher(FakeLauncher(), timeout_sec=1.0)
        self.assertEqual(await dispatcher.dispatch(self.ctx, []), [])

    async def test_one_outcome_per_descriptor_sorted_by_name(self):
        names = [f"plugin-{i:02d}" for i in range(17)]
        shuffled = list(names)
        random.Random(7).shuffle(shuffled)
        delays = {name: random.Random(i).uniform(0, 0.03) for i, name in enumerate(names)}
        errors = {name: PluginLaunchError("boom") for name in names[::3]}
        launcher = FakeLauncher(delays=delays, errors=errors)
        dispatcher = Dispatcher(launcher, timeout_sec=1.0, max_concurrency=4)

        outcomes = await dispatcher.dispatch(self.ctx, [descriptor(n) for n in shuffled])

        self.assertEqual([o.plugin_name for o in outcomes], names)
        for outcome in outcomes:
            if outcome.plugin_name in errors:
                self.assertFalse(outcome.ok)
                self.assertIsNone(outcome.metadata)
                self.assertEqual(outcome.note, "Failed: boom")
            else:
                self.assertTrue(outcome.ok)
                self.assertEqual(outcome.metadata.name, outcome.plugin_name)
                self.assertEqual(outcome.capabilities, ("costs", "recommendations"))

    async def test_ordering_is_case_sensitive_with_path_tiebreak(self):
        launcher = FakeLauncher()
        dispatcher = Dispatcher(launcher, timeout_sec=1.0)
        items = [
            descriptor("beta", path="/b/2"),
            descriptor("Zeta"),
            descriptor("alpha"),
            descriptor("beta", path="/b/1"),
        ]
        outcomes = await dispatcher.dispatch(self.ctx, items)
        self.assertEqual(
            [(o.plugin_name, o.path) for o in outcomes],
            [("Zeta", "/plugins/Zeta/run"), ("alpha", "/plugins/alpha/run"), ("beta", "/b/1"), ("beta", "/b/2")],
        )

    async def test_fast_and_timed_out_plugins(self):
        launcher = FakeLauncher(delays={"B": 5.0})
        dispatcher = Dispatcher(launcher, timeout_sec=0.2)

        outcomes = await asyncio.wait_for(
            dispatcher.dispatch(self.ctx, [descriptor("B"), descriptor("A")]),
            timeout=3.0,
        )

        self.assertEqual([o.plugin_name for o in outcomes], ["A", "B"])
        self.assertIsNotNone(outcomes[0].metadata)
        self.assertEqual(outcomes[0].note, "")
        self.assertIsNone(outcomes[1].metadata)
        self.assertIn("timed out", outcomes[1].note)
        self.assertTrue(outcomes[1].note.startswith("Failed:"))

    async def test_concurrency_is_bounded(self):
        names = [f"p{i}" for i in range(12)]
        launcher = FakeLauncher(delays={n: 0.02 for n in names})
        dispatcher = Dispatcher(launcher, timeout_sec=1.0, max_concurrency=3)

        outcomes = await dispatcher.dispatch(self.ctx, [descriptor(n) for n in names])

        self.assertEqual(len(outcomes), 12)
        self.assertLessEqual(launcher.max_in_flight, 3)
        self.assertEqual(sorted(launcher.launched), sorted(names))

    async def test_queried_clients_are_closed(self):
        launcher = FakeLauncher()
        dispatcher = Dispatcher(launcher, timeout_sec=1.0)
        await dispatcher.dispatch(self.ctx, [descriptor("a"), descriptor("b")])
        self.assertEqual({n: c.close_calls for n, c in launcher.clients.items()}, {"a": 1, "b": 1})

    async def test_unexpected_exception_is_isolated(self):
        launcher = FakeLauncher(errors={"bad": KeyError("missing")})
        dispatcher = Dispatcher(launcher, timeout_sec=1.0)
        outcomes = await dispatcher.dispatch(self.ctx, [descriptor("bad"), descriptor("good")])
        self.assertTrue(outcomes[0].note.startswith("Failed:"))
        self.assertTrue(outcomes[1].ok)

    async def test_secrets_in_errors_are_redacted(self):
        launcher = FakeLauncher(errors={"leaky": PluginLaunchError("auth failed api_key=hunter2")})
        dispatcher = Dispatcher(launcher, timeout_sec=1.0)
        outcomes = await dispatcher.dispatch(self.ctx, [descriptor("leaky")])
        self.assertNotIn("hunter2", outcomes[0].note)
        self.assertIn("REDACTED", outcomes[0].note)

    async def test_cancel_keeps_completed_outcomes(self):
        cancel = asyncio.Event()
        launcher = FakeLauncher(delays={"b-slow": 30.0, "c-slow": 30.0, "d-slow": 30.0})
        dispatcher = Dispatcher(launcher, timeout_sec=60.0, max_concurrency=2)
        items = [descriptor(n) for n in ("a-fast", "b-slow", "c-slow", "d-slow")]

        task = asyncio.create_task(dispatcher.dispatch(self.ctx, items, cancel=cancel))
        await asyncio.sleep(0.1)
        cancel.set()
        outcomes = await asyncio.wait_for(task, timeout=3.0)

        self.assertEqual([o.plugin_name for o in outcomes], ["a-fast", "b-slow", "c-slow", "d-slow"])
        self.assertTrue(outcomes[0].ok)
        for outcome in outcomes[1:]:
            self.assertEqual(outcome.note, CANCELLED_NOTE)
            self.assertIsNone(outcome.metadata)

    async def test_outer_cancellation_propagates(self):
        launcher = FakeLauncher(delays={"slow": 30.0})
        dispatcher = Dispatcher(launcher, timeout_sec=60.0)
        task = asyncio.create_task(dispatcher.dispatch(self.ctx, [descriptor("slow")]))
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(launcher.in_flight, 0)

    async def test_enumeration_error_is_fatal(self):
        dispatcher = Dispatcher(FakeLauncher(), timeout_sec=1.0)
        source = StaticSource([], error=PluginRegistryError("permission denied"))
        with self.assertRaises(PluginRegistryError):
            await dispatcher.dispatch_registry(self.ctx, source)


class TestDispatcherWithProcesses(unittest.IsolatedAsyncioTestCase):
    async def test_real_plugins_mixed_batch(self):
        with tempfile.TemporaryDirectory() as tmp:
            plugin_dir = Path(tmp)
            install_plugin(plugin_dir, "aws-fast", {"metadata": metadata("aws-fast", capabilities=["costs"])})
            install_plugin(plugin_dir, "broken", {"exit_code": 3})
            install_plugin(
                plugin_dir,
                "sleepy",
                {"metadata": metadata("sleepy"), "metadata_delay": 10},
            )
            registry = PluginRegistry(plugin_dir)
            dispatcher = Dispatcher(ProcessLauncher(terminate_grace_sec=0.5), timeout_sec=2.0, max_concurrency=3)

            outcomes = await dispatcher.dispatch_registry(new_request_context("plugin.list"), registry)

        self.assertEqual([o.plugin_name for o in outcomes], ["aws-fast", "broken", "sleepy"])
        fast, broken, sleepy = outcomes
        self.assertTrue(fast.ok)
        self.assertEqual(fast.runtime_version, "0.3.1")
        self.assertEqual(fast.spec_version, "1.2.0")
        self.assertEqual(fast.capabilities, ("costs",))
        self.assertTrue(broken.note.startswith("Failed:"))
        self.assertEqual(broken.runtime_version, "N/A")
        self.assertIn("timed out", sleepy.note)


if __name__ == "__main__":
    unittest.main()
