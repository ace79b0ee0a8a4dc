#!/usr/bin/env python3
import argparse
import os
import sys
from pathlib import Path

from costlens.plugins.manifest import load_manifest, resolve_entrypoint, validate_manifest


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a costlens plugin manifest.json")
    parser.add_argument("manifest_path", help="Path to the plugin's manifest.json")
    parser.add_argument(
        "--check-entrypoint",
        action="store_true",
        help="Also require the entrypoint to be an executable file",
    )
    args = parser.parse_args()

    manifest_path = Path(args.manifest_path)
    try:
        manifest = load_manifest(manifest_path)
    except (OSError, ValueError) as exc:
        print(f"Invalid manifest JSON: {exc}", file=sys.stderr)
        return 1

    errors = validate_manifest(manifest)
    if not errors and args.check_entrypoint:
        binary = resolve_entrypoint(manifest_path, str(manifest["entrypoint"]))
        if not binary.is_file() or not os.access(binary, os.X_OK):
            errors.append(f"entrypoint {binary} is not an executable file.")
    if errors:
        print("Manifest validation failed:")
        for err in errors:
            print(f"- {err}")
        return 2
    print("Manifest validation passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
