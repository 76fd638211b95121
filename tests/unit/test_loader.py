"""Unit tests for loading deployment units from documents."""

import json

import pytest

from stackplan.config.loader import (
    ConfigNotFoundError,
    ConfigValidationError,
    dump_unit,
    load_unit,
    load_units,
    parse_unit,
)
from stackplan.core.exceptions import DuplicateIdError
from stackplan.models.resources import InputRef, Ref

FILESYSTEM_YAML = """
name: filesystem
cross_unit_inputs:
  network_id: {unit: network, node: vpc, output: id}
resources:
  - id: efs
    kind: file-system
    attributes:
      network_id: {input: network_id}
      performance_mode: generalPurpose
  - id: access-point
    kind: access-point
    attributes:
      file_system_id: {ref: efs.id}
      path: /n8n-data
"""


class TestLoadUnit:
    """Test reading unit documents."""

    def test_yaml_document(self, tmp_path):
        path = tmp_path / "filesystem.yaml"
        path.write_text(FILESYSTEM_YAML)

        unit = load_unit(path)

        assert unit.name == "filesystem"
        assert unit.node_ids == ["efs", "access-point"]
        assert unit.get("efs").attributes["network_id"] == InputRef(name="network_id")
        assert unit.get("access-point").attributes["file_system_id"] == Ref(node="efs", output="id")
        assert unit.upstream_units() == ["network"]

    def test_json_document(self, tmp_path):
        path = tmp_path / "network.json"
        path.write_text(json.dumps({
            "name": "network",
            "resources": [{"id": "vpc", "kind": "network", "attributes": {"cidr_block": "10.0.0.0/16"}}],
        }))

        unit = load_unit(path)

        assert unit.get("vpc").attributes == {"cidr_block": "10.0.0.0/16"}

    def test_duplicate_ids_rejected(self):
        with pytest.raises(DuplicateIdError):
            parse_unit({
                "name": "network",
                "resources": [{"id": "vpc", "kind": "network"}, {"id": "vpc", "kind": "subnet"}],
            })

    def test_invalid_node_id(self):
        with pytest.raises(ConfigValidationError):
            parse_unit({"name": "network", "resources": [{"id": "vpc.main", "kind": "network"}]})

    def test_document_must_be_mapping(self):
        with pytest.raises(ConfigValidationError):
            parse_unit(["not", "a", "unit"])

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigNotFoundError):
            load_unit(tmp_path / "missing.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "unit.toml"
        path.write_text("name = 'network'")

        with pytest.raises(ConfigValidationError):
            load_unit(path)

    def test_unparsable_document(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigValidationError):
            load_unit(path)

    def test_load_units_sorted_by_file_name(self, tmp_path):
        (tmp_path / "02-filesystem.yaml").write_text(FILESYSTEM_YAML)
        (tmp_path / "01-network.yml").write_text("name: network\nresources: []\n")
        (tmp_path / "README.md").write_text("ignored")

        units = load_units(tmp_path)

        assert [unit.name for unit in units] == ["network", "filesystem"]


class TestDumpUnit:
    """Test writing unit documents."""

    def test_dump_then_load_preserves_references(self, tmp_path):
        source = tmp_path / "filesystem.yaml"
        source.write_text(FILESYSTEM_YAML)
        unit = load_unit(source)

        reloaded = load_unit(dump_unit(unit, tmp_path / "copy.json"))

        assert reloaded == unit

    def test_dump_omits_outputs(self, tmp_path):
        source = tmp_path / "filesystem.yaml"
        source.write_text(FILESYSTEM_YAML)

        path = dump_unit(load_unit(source), tmp_path / "copy.json")

        data = json.loads(path.read_text())
        assert "outputs" not in data["resources"][0]
        assert data["resources"][1]["attributes"]["file_system_id"] == {"ref": "efs.id"}
