import json
import os
import tempfile
import unittest
from pathlib import Path

from costlens.domain.context import new_request_context
from costlens.pluginhost.process import PluginLaunchError, ProcessLauncher
from costlens.pluginhost.registry import (
    AdapterOpenError,
    AdapterSession,
    PluginRegistry,
    PluginRegistryError,
    open_adapter,
    select_plugins,
)

from fakes import FakeClient, FakeLauncher, StaticSource, descriptor
from plugin_scripts import install_plugin, pid_alive


class TestPluginRegistry(unittest.TestCase):
    def test_missing_directory_is_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(PluginRegistry(Path(tmp) / "absent").list_plugins(), [])

    def test_lists_valid_plugins_and_warns_about_invalid_ones(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            install_plugin(root, "zeta", providers=["gcp"])
            install_plugin(root, "alpha", providers=["*"])
            (root / "no-manifest").mkdir()
            bad = root / "bad-json"
            bad.mkdir()
            (bad / "manifest.json").write_text("{not json", encoding="utf-8")
            missing = root / "missing-binary"
            missing.mkdir()
            (missing / "manifest.json").write_text(
                json.dumps(
                    {"manifest_version": "1.0", "name": "missing-binary", "version": "1.0.0", "entrypoint": "run"}
                ),
                encoding="utf-8",
            )
            registry = PluginRegistry(root)

            plugins = registry.list_plugins()

            self.assertEqual([p.name for p in plugins], ["alpha", "zeta"])
            self.assertEqual(plugins[0].providers, ("*",))
            self.assertEqual(plugins[1].providers, ("gcp",))
            self.assertEqual(plugins[1].version, "0.3.1")
            self.assertTrue(Path(plugins[0].path).is_absolute())
            self.assertEqual(len(registry.warnings), 3)
            self.assertTrue(any("no-manifest" in w for w in registry.warnings))
            self.assertTrue(any("not an executable" in w for w in registry.warnings))

    @unittest.skipIf(hasattr(os, "geteuid") and os.geteuid() == 0, "root ignores directory permissions")
    def test_unreadable_directory_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "plugins"
            root.mkdir()
            root.chmod(0o000)
            try:
                with self.assertRaises(PluginRegistryError):
                    PluginRegistry(root).list_plugins()
            finally:
                root.chmod(0o700)


class TestSelectPlugins(unittest.TestCase):
    def setUp(self):
        self.plugins = [
            descriptor("aws-public", providers=["aws"]),
            descriptor("everything", providers=["*"]),
            descriptor("gcp-billing", providers=["gcp"]),
            descriptor("unscoped"),
        ]

    def test_empty_adapter_selects_all(self):
        self.assertEqual(select_plugins(self.plugins, ""), self.plugins)

    def test_plugin_name_selects_that_plugin(self):
        self.assertEqual([p.name for p in select_plugins(self.plugins, "gcp-billing")], ["gcp-billing"])

    def test_provider_selects_scoped_and_wildcard_plugins(self):
        self.assertEqual(
            [p.name for p in select_plugins(self.plugins, "aws")],
            ["aws-public", "everything", "unscoped"],
        )

    def test_unknown_provider_still_matches_wildcards(self):
        self.assertEqual([p.name for p in select_plugins(self.plugins, "azure")], ["everything", "unscoped"])


class TestOpenAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.ctx = new_request_context("cost.projected")

    async def test_opens_selected_clients(self):
        source = StaticSource([descriptor("a", ["aws"]), descriptor("b", ["gcp"])])
        launcher = FakeLauncher()
        async with await open_adapter(self.ctx, source, launcher, "aws") as session:
            self.assertEqual([c.name for c in session.clients], ["a"])
        self.assertTrue(session.closed)
        self.assertEqual(launcher.clients["a"].close_calls, 1)

    async def test_partial_failure_rolls_back_open_clients(self):
        source = StaticSource([descriptor("a"), descriptor("b"), descriptor("c")])
        launcher = FakeLauncher(errors={"b": PluginLaunchError("cannot start")})

        with self.assertRaises(AdapterOpenError) as ctx:
            await open_adapter(self.ctx, source, launcher, "")

        self.assertIn("b", str(ctx.exception))
        self.assertEqual(launcher.launched, ["a", "b"])
        self.assertEqual(launcher.clients["a"].close_calls, 1)
        self.assertNotIn("c", launcher.clients)

    async def test_no_match_is_an_error(self):
        source = StaticSource([descriptor("a", ["aws"])])
        with self.assertRaises(AdapterOpenError):
            await open_adapter(self.ctx, source, FakeLauncher(), "azure")
        with self.assertRaises(AdapterOpenError):
            await open_adapter(self.ctx, StaticSource([]), FakeLauncher(), "")

    async def test_registry_error_becomes_adapter_error(self):
        source = StaticSource([], error=PluginRegistryError("unreadable"))
        with self.assertRaises(AdapterOpenError):
            await open_adapter(self.ctx, source, FakeLauncher(), "")

    async def test_session_close_is_idempotent(self):
        clients = [FakeClient("a"), FakeClient("b")]
        session = AdapterSession("aws", clients)
        await session.close()
        await session.close()
        self.assertEqual([c.close_calls for c in clients], [1, 1])

    async def test_session_closes_on_error_path(self):
        source = StaticSource([descriptor("a")])
        launcher = FakeLauncher()
        with self.assertRaises(RuntimeError):
            async with await open_adapter(self.ctx, source, launcher, "a"):
                raise RuntimeError("query failed")
        self.assertEqual(launcher.clients["a"].close_calls, 1)

    async def test_real_processes_are_released(self):
        with tempfile.TemporaryDirectory() as tmp:
            install_plugin(Path(tmp), "one")
            install_plugin(Path(tmp), "two")
            registry = PluginRegistry(Path(tmp))
            session = await open_adapter(self.ctx, registry, ProcessLauncher(), "aws", timeout_sec=5.0)
            pids = [c.pid for c in session.clients]
            self.assertTrue(all(pid_alive(pid) for pid in pids))
            await session.close()
            self.assertFalse(any(pid_alive(pid) for pid in pids))


if __name__ == "__main__":
    unittest.main()
