"""Pydantic models for declared resources and deployment units."""

from typing import Any, Iterator, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_serializer,
    model_validator,
)

from stackplan.core.exceptions import DuplicateIdError

# Node ids may not contain "." since references are written "<node>.<output>"
NODE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_\-]*$"


# =============================================================================
# References
# =============================================================================


class Ref(BaseModel):
    """Reference to an output of another node in the same unit.

    JSON form: {"ref": "<node_id>.<output>"}
    """

    model_config = ConfigDict(frozen=True)

    node: str
    output: str

    @model_validator(mode="before")
    @classmethod
    def _parse_json_form(cls, data: Any) -> Any:
        if isinstance(data, dict) and set(data) == {"ref"}:
            data = data["ref"]
        if isinstance(data, str):
            node, sep, output = data.rpartition(".")
            if not sep or not node or not output:
                raise ValueError(f"Reference must look like '<node>.<output>', got '{data}'")
            return {"node": node, "output": output}
        return data

    @model_serializer
    def _serialize(self) -> dict[str, str]:
        return {"ref": str(self)}

    def __str__(self) -> str:
        return f"{self.node}.{self.output}"


class InputRef(BaseModel):
    """Reference to one of the unit's cross-unit inputs.

    JSON form: {"input": "<name>"}
    """

    model_config = ConfigDict(frozen=True)

    name: str

    @model_validator(mode="before")
    @classmethod
    def _parse_json_form(cls, data: Any) -> Any:
        if isinstance(data, dict) and set(data) == {"input"}:
            return {"name": data["input"]}
        if isinstance(data, str):
            return {"name": data}
        return data

    @model_serializer
    def _serialize(self) -> dict[str, str]:
        return {"input": self.name}

    def __str__(self) -> str:
        return f"input:{self.name}"


class UnitOutputRef(BaseModel):
    """Points at an output exported by a node of another deployment unit."""

    model_config = ConfigDict(frozen=True)

    unit: str
    node: str
    output: str

    def __str__(self) -> str:
        return f"{self.unit}/{self.node}.{self.output}"


def ref(target: str) -> Ref:
    """Shorthand for Ref("<node>.<output>")."""
    return Ref.model_validate(target)


def parse_references(value: Any) -> Any:
    """Convert JSON-form reference dicts nested anywhere in value into models."""
    if isinstance(value, (Ref, InputRef)):
        return value
    if isinstance(value, dict):
        if set(value) == {"ref"} and isinstance(value["ref"], str):
            return Ref.model_validate(value)
        if set(value) == {"input"} and isinstance(value["input"], str):
            return InputRef.model_validate(value)
        return {key: parse_references(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [parse_references(item) for item in value]
    return value


def iter_references(value: Any) -> Iterator[Ref | InputRef]:
    """Yield every Ref and InputRef nested in value, in document order."""
    if isinstance(value, (Ref, InputRef)):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def to_json_value(value: Any) -> Any:
    """Render a declared value (possibly holding references) as plain JSON data."""
    if isinstance(value, (Ref, InputRef)):
        return value.model_dump()
    if isinstance(value, dict):
        return {key: to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    return value


# =============================================================================
# Resource Nodes
# =============================================================================


class ResourceNode(BaseModel):
    """Declarative description of one desired cloud object."""

    id: str = Field(..., pattern=NODE_ID_PATTERN)
    kind: str = Field(..., min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: set[str] = Field(default_factory=set)
    # Populated only after provisioning succeeds
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("attributes", mode="before")
    @classmethod
    def _parse_attribute_references(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: parse_references(item) for key, item in value.items()}
        return value

    @field_serializer("attributes")
    def _serialize_attributes(self, value: dict[str, Any]) -> dict[str, Any]:
        return to_json_value(value)

    @field_serializer("depends_on")
    def _serialize_depends_on(self, value: set[str]) -> list[str]:
        return sorted(value)

    def references(self) -> list[Ref | InputRef]:
        """All references held by this node's attributes."""
        return list(iter_references(self.attributes))

    def referenced_nodes(self) -> list[str]:
        """Ids of nodes whose outputs this node consumes, first mention first."""
        seen: dict[str, None] = {}
        for item in iter_references(self.attributes):
            if isinstance(item, Ref):
                seen.setdefault(item.node, None)
        return list(seen)

    def declared_attributes(self) -> dict[str, Any]:
        """Attributes in the JSON form stored in state and used for diffing."""
        return to_json_value(self.attributes)


# =============================================================================
# Deployment Units
# =============================================================================


class DeploymentUnit(BaseModel):
    """A named, independently planned and applied group of resource nodes."""

    name: str = Field(..., pattern=NODE_ID_PATTERN)
    resources: list[ResourceNode] = Field(default_factory=list)
    cross_unit_inputs: dict[str, UnitOutputRef] = Field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> ResourceNode:
        """Append a node, rejecting ids already present in the unit."""
        if self.get(node.id) is not None:
            raise DuplicateIdError(node.id, self.name)
        self.resources.append(node)
        return node

    def add(self, node_id: str, kind: str, **attributes: Any) -> ResourceNode:
        """Declare a node inline and return it."""
        return self.add_node(ResourceNode(id=node_id, kind=kind, attributes=attributes))

    def get(self, node_id: str) -> Optional[ResourceNode]:
        for node in self.resources:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.resources]

    def upstream_units(self) -> list[str]:
        """Names of units this unit consumes outputs from, first mention first."""
        seen: dict[str, None] = {}
        for target in self.cross_unit_inputs.values():
            seen.setdefault(target.unit, None)
        return list(seen)
