"""
Deployment unit loader.

Loads DeploymentUnit documents from JSON or YAML files so units can be
authored outside Python. A document looks like:

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
"""

import json
from pathlib import Path
from typing import Any, Union

import structlog
import yaml
from pydantic import ValidationError

from stackplan.core.exceptions import ConfigurationError
from stackplan.models.resources import DeploymentUnit, ResourceNode

logger = structlog.get_logger(__name__)

SUPPORTED_SUFFIXES = (".json", ".yaml", ".yml")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigNotFoundError(ConfigurationError):
    """Raised when a unit document cannot be found."""

    pass


class ConfigValidationError(ConfigurationError):
    """Raised when a unit document fails validation."""

    pass


# =============================================================================
# Loading
# =============================================================================


def _read_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Cannot parse {path.name}: {e}", str(path)) from e


def parse_unit(data: Any, source: str = "<memory>") -> DeploymentUnit:
    """
    Build a DeploymentUnit from a decoded document.

    Nodes are added one by one so duplicate ids raise DuplicateIdError.
    """
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{source}: unit document must be a mapping", source)

    resources = data.get("resources") or []
    try:
        unit = DeploymentUnit.model_validate({**data, "resources": []})
        nodes = [ResourceNode.model_validate(item) for item in resources]
    except ValidationError as e:
        raise ConfigValidationError(f"{source}: invalid unit document: {e}", source) from e

    for node in nodes:
        unit.add_node(node)
    return unit


def load_unit(path: Union[str, Path]) -> DeploymentUnit:
    """
    Load one deployment unit from a .json, .yaml or .yml file.

    Raises:
        ConfigNotFoundError: File missing.
        ConfigValidationError: Unsupported suffix, unparsable or invalid document.
        DuplicateIdError: Two resources share an id.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigNotFoundError(f"Unit document not found: {path}", str(path))
    if path.suffix not in SUPPORTED_SUFFIXES:
        raise ConfigValidationError(
            f"Unsupported unit document type '{path.suffix}' (expected one of {SUPPORTED_SUFFIXES})",
            str(path),
        )

    unit = parse_unit(_read_document(path), str(path))
    logger.info("unit_loaded", unit=unit.name, path=str(path), resources=len(unit.resources))
    return unit


def load_units(directory: Union[str, Path]) -> list[DeploymentUnit]:
    """Load every unit document in a directory, sorted by file name."""
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigNotFoundError(f"Unit directory not found: {directory}", str(directory))
    return [
        load_unit(path)
        for path in sorted(directory.iterdir())
        if path.suffix in SUPPORTED_SUFFIXES
    ]


def dump_unit(unit: DeploymentUnit, path: Union[str, Path]) -> Path:
    """Write a unit document; the format follows the file suffix."""
    path = Path(path)
    data = unit.model_dump(mode="json", exclude={"resources": {"__all__": {"outputs"}}})
    if path.suffix == ".json":
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    elif path.suffix in (".yaml", ".yml"):
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    else:
        raise ConfigValidationError(f"Unsupported unit document type '{path.suffix}'", str(path))
    return path
