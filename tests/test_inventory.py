import json
import tempfile
import unittest
from pathlib import Path

from costlens.domain.costs import ResourceDescriptor
from costlens.inventory import InventoryError, load_resources, parse_resources, provider_from_type


class TestInventory(unittest.TestCase):
    def test_provider_defaults_to_type_prefix(self):
        self.assertEqual(provider_from_type("aws:ec2/instance:Instance"), "aws")
        self.assertEqual(provider_from_type("custom"), "")

    def test_list_and_object_forms(self):
        rows = [
            {"type": "aws:ec2/instance:Instance", "id": "web-1"},
            {"type": "kubernetes:core/v1:Pod", "id": "pod-1", "provider": "k8s"},
        ]
        expected = [
            ResourceDescriptor("aws:ec2/instance:Instance", "web-1", "aws"),
            ResourceDescriptor("kubernetes:core/v1:Pod", "pod-1", "k8s"),
        ]
        self.assertEqual(parse_resources(rows), expected)
        self.assertEqual(parse_resources({"resources": rows}), expected)

    def test_invalid_rows(self):
        for data in ({"items": []}, [1], [{"type": "aws:x"}], "nope"):
            with self.assertRaises(InventoryError):
                parse_resources(data)

    def test_load_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "resources.json"
            path.write_text(json.dumps([{"type": "gcp:compute/instance:Instance", "id": "vm"}]), encoding="utf-8")
            self.assertEqual(load_resources(path)[0].provider, "gcp")
            path.write_text("[", encoding="utf-8")
            with self.assertRaises(InventoryError):
                load_resources(path)
            with self.assertRaises(InventoryError):
                load_resources(Path(tmp) / "missing.json")


if __name__ == "__main__":
    unittest.main()
