import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

import costlens
from costlens.plugins.manifest import resolve_entrypoint, validate_manifest

REPO_ROOT = Path(__file__).resolve().parents[1]


def _valid_manifest() -> dict:
    return {
        "manifest_version": "1.0",
        "name": "aws-public",
        "version": "1.4.0",
        "entrypoint": "bin/aws-public",
        "providers": ["aws"],
        "capabilities": ["costs", "recommendations"],
    }


class TestPluginManifestValidation(unittest.TestCase):
    def test_valid_manifest(self):
        self.assertEqual(validate_manifest(_valid_manifest()), [])

    def test_wildcard_provider_and_missing_optionals(self):
        manifest = _valid_manifest()
        manifest["providers"] = ["*"]
        del manifest["capabilities"]
        self.assertEqual(validate_manifest(manifest), [])

    def test_invalid_capability_and_semver(self):
        manifest = _valid_manifest()
        manifest["version"] = "v1"
        manifest["capabilities"] = ["costs", "budgets"]
        errors = validate_manifest(manifest)
        self.assertTrue(any("semantic version" in e for e in errors))
        self.assertTrue(any("unsupported entries" in e for e in errors))

    def test_bad_name_version_and_entrypoint(self):
        manifest = _valid_manifest()
        manifest["manifest_version"] = "2.0"
        manifest["name"] = "Bad Name"
        manifest["entrypoint"] = ["not", "a", "path"]
        manifest["providers"] = "aws"
        errors = validate_manifest(manifest)
        self.assertEqual(len(errors), 4)

    def test_relative_entrypoint_resolves_next_to_manifest(self):
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "aws-public" / "manifest.json"
            resolved = resolve_entrypoint(manifest_path, "bin/run")
            self.assertEqual(resolved, (Path(tmp) / "aws-public" / "bin" / "run").resolve())
            self.assertEqual(resolve_entrypoint(manifest_path, "/opt/run"), Path("/opt/run").resolve())


class TestPluginManifestCli(unittest.TestCase):
    def _run(self, manifest: dict, *extra: str) -> subprocess.CompletedProcess:
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "manifest.json"
            manifest_path.write_text(json.dumps(manifest), encoding="utf-8")
            env = dict(os.environ)
            env["PYTHONPATH"] = str(Path(costlens.__file__).resolve().parents[1])
            return subprocess.run(
                [sys.executable, "scripts/validate_plugin_manifest.py", str(manifest_path), *extra],
                cwd=REPO_ROOT,
                text=True,
                capture_output=True,
                env=env,
                check=False,
            )

    def test_cli_validation(self):
        result = self._run(_valid_manifest())
        self.assertEqual(result.returncode, 0, result.stderr)
        self.assertIn("passed", result.stdout.lower())

    def test_cli_reports_errors(self):
        manifest = _valid_manifest()
        manifest["version"] = "latest"
        result = self._run(manifest)
        self.assertEqual(result.returncode, 2)
        self.assertIn("semantic version", result.stdout)

    def test_cli_checks_entrypoint_when_asked(self):
        result = self._run(_valid_manifest(), "--check-entrypoint")
        self.assertEqual(result.returncode, 2)
        self.assertIn("not an executable", result.stdout)


if __name__ == "__main__":
    unittest.main()
