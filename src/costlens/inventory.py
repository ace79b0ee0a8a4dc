import json
from pathlib import Path
from typing import Any, List

from costlens.domain.costs import ResourceDescriptor


class InventoryError(ValueError):
    pass


def provider_from_type(resource_type: str) -> str:
    """``aws:ec2/instance:Instance`` -> ``aws``."""
    head, sep, _ = (resource_type or "").partition(":")
    return head.strip() if sep else ""


def parse_resources(data: Any) -> List[ResourceDescriptor]:
    rows = data.get("resources") if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise InventoryError("inventory must be a JSON list or an object with a 'resources' list")
    resources: List[ResourceDescriptor] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise InventoryError(f"resource #{index} is not an object")
        resource_type = str(row.get("type") or "").strip()
        resource_id = str(row.get("id") or "").strip()
        if not resource_type or not resource_id:
            raise InventoryError(f"resource #{index} needs both 'type' and 'id'")
        provider = str(row.get("provider") or "").strip() or provider_from_type(resource_type)
        resources.append(ResourceDescriptor(type=resource_type, id=resource_id, provider=provider))
    return resources


def load_resources(path: Path) -> List[ResourceDescriptor]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise InventoryError(f"reading inventory {path}: {exc}") from exc
    except ValueError as exc:
        raise InventoryError(f"inventory {path} is not valid JSON: {exc}") from exc
    return parse_resources(data)
