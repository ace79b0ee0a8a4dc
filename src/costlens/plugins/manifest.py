import json
import re
from pathlib import Path
from typing import Any, Dict, List

from costlens.domain.plugins import BASELINE_CAPABILITIES, WILDCARD_PROVIDER

MANIFEST_FILE = "manifest.json"
PLUGIN_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]{1,63}$")
PROVIDER_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")
SEMVER_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+(?:[-+][0-9A-Za-z.-]+)?$")
SUPPORTED_MANIFEST_VERSION = "1.0"

ALLOWED_CAPABILITIES = set(BASELINE_CAPABILITIES)


def load_manifest(path: Path) -> Dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Manifest root must be a JSON object.")
    return data


def validate_manifest(manifest: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    version = str(manifest.get("manifest_version") or "").strip()
    if version != SUPPORTED_MANIFEST_VERSION:
        errors.append(
            f"manifest_version must be '{SUPPORTED_MANIFEST_VERSION}' (got '{version or 'missing'}')."
        )

    name = str(manifest.get("name") or "").strip()
    if not PLUGIN_NAME_RE.match(name):
        errors.append("name must match ^[a-z0-9][a-z0-9_.-]{1,63}$.")

    version_field = str(manifest.get("version") or "").strip()
    if not SEMVER_RE.match(version_field):
        errors.append("version must be semantic version format X.Y.Z.")

    entrypoint = manifest.get("entrypoint")
    if not isinstance(entrypoint, str) or not entrypoint.strip():
        errors.append("entrypoint must be a non-empty path string.")

    providers = manifest.get("providers", [])
    if providers is not None and not isinstance(providers, list):
        errors.append("providers must be an array when provided.")
    elif isinstance(providers, list):
        bad = sorted(
            str(p) for p in providers if str(p) != WILDCARD_PROVIDER and not PROVIDER_RE.match(str(p))
        )
        if bad:
            errors.append(f"providers contains invalid entries: {', '.join(bad)}.")

    capabilities = manifest.get("capabilities", [])
    if capabilities is not None and not isinstance(capabilities, list):
        errors.append("capabilities must be an array when provided.")
    elif isinstance(capabilities, list):
        unknown = sorted({str(c).strip() for c in capabilities} - ALLOWED_CAPABILITIES)
        if unknown:
            errors.append(f"capabilities contains unsupported entries: {', '.join(unknown)}.")

    return errors


def resolve_entrypoint(manifest_path: Path, entrypoint: str) -> Path:
    candidate = Path(entrypoint).expanduser()
    if not candidate.is_absolute():
        candidate = Path(manifest_path).parent / candidate
    return candidate.resolve()
