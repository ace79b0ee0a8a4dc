import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

HOME_KEY = "COSTLENS_HOME"
PLUGIN_DIR_KEY = "COSTLENS_PLUGIN_DIR"
PLUGIN_TIMEOUT_KEY = "COSTLENS_PLUGIN_TIMEOUT_SEC"
MAX_CONCURRENCY_KEY = "COSTLENS_MAX_CONCURRENCY"
STRICT_COMPAT_KEY = "COSTLENS_STRICT_PLUGIN_COMPAT"
PLUGIN_STDERR_KEY = "COSTLENS_PLUGIN_STDERR"

DEFAULT_CONFIG_DIR = Path.home() / ".costlens"
DEFAULT_PLUGIN_TIMEOUT_SEC = 5.0
DISMISSED_FILE = "dismissed.json"
AUDIT_FILE = "audit.jsonl"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class CostlensConfig:
    config_dir: Path
    plugin_dir: Path
    dismissed_path: Path
    audit_path: Path
    plugin_timeout_sec: float
    max_concurrency: int
    strict_plugin_compat: bool
    plugin_stderr: bool


def default_concurrency() -> int:
    return max(1, os.cpu_count() or 1)


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def get_env_value(key: str, env_file: Dict[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def resolve_config_dir(config_dir: Optional[Path] = None) -> Path:
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()
    raw = (os.environ.get(HOME_KEY) or "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return DEFAULT_CONFIG_DIR


def parse_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in _TRUE_VALUES


def parse_positive_float(raw: Optional[str], default: float) -> float:
    value = (raw or "").strip()
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def parse_positive_int(raw: Optional[str], default: int) -> int:
    value = (raw or "").strip()
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(1, parsed)


def load_config(config_dir: Optional[Path] = None) -> CostlensConfig:
    root = resolve_config_dir(config_dir)
    env_file = load_env_file(get_env_path(root))

    plugin_dir_raw = get_env_value(PLUGIN_DIR_KEY, env_file)
    plugin_dir = Path(plugin_dir_raw).expanduser().resolve() if plugin_dir_raw else root / "plugins"

    return CostlensConfig(
        config_dir=root,
        plugin_dir=plugin_dir,
        dismissed_path=root / DISMISSED_FILE,
        audit_path=root / AUDIT_FILE,
        plugin_timeout_sec=parse_positive_float(
            get_env_value(PLUGIN_TIMEOUT_KEY, env_file),
            DEFAULT_PLUGIN_TIMEOUT_SEC,
        ),
        max_concurrency=parse_positive_int(
            get_env_value(MAX_CONCURRENCY_KEY, env_file),
            default_concurrency(),
        ),
        strict_plugin_compat=parse_bool(get_env_value(STRICT_COMPAT_KEY, env_file)),
        plugin_stderr=parse_bool(get_env_value(PLUGIN_STDERR_KEY, env_file)),
    )
