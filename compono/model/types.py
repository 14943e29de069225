"""
Resolved component model types.

The resolver turns loosely typed YAML documents into these closed,
validated structures:

- ResolvedModel = BasicModel | CompositeModel (discriminated by `type`)
- Connector = LinkConnector | NativeConnector (discriminated by `kind`)
- PublishedEndpoint = InEndpoint | OutEndpoint (discriminated by `direction`)

Each resolved model keeps the document it was resolved from in `raw`
(with remote imports already inlined) so a type can be re-resolved
against a subcomponent's own deployment overrides.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

Direction = Literal["in", "out"]

LINK = "Link"


class EndpointRef(BaseModel):
    """Reference to an endpoint of a sibling subcomponent."""

    subcomponent: str
    endpoint: str

    def __str__(self) -> str:
        return f"{self.subcomponent}.{self.endpoint}"


class Endpoint(BaseModel):
    """Endpoint of a basic model."""

    name: str
    direction: Direction
    protocol: str
    required: str | None = None


class InEndpoint(BaseModel):
    """Published input of a composite, mapped to an entry connector."""

    name: str
    direction: Literal["in"] = "in"
    protocol: str
    required: str | None = None
    mapping: str


class OutEndpoint(BaseModel):
    """Published output of a composite, mapped to inner endpoints."""

    name: str
    direction: Literal["out"] = "out"
    protocol: str
    required: str | None = None
    mapping: list[EndpointRef] = Field(default_factory=list)


PublishedEndpoint = Annotated[Union[InEndpoint, OutEndpoint], Field(discriminator="direction")]


class Volume(BaseModel):
    name: str
    type: str | None = None
    path: str | None = None
    scope: str | None = None
    durability: str | None = None
    url: str | None = None


class Entrypoint(BaseModel):
    """Externally published access point."""

    name: str
    protocol: str
    path: str | None = None
    mapping: str | None = None


class Deployment(BaseModel):
    """Per-deployment overrides applied on top of a model."""

    title: str | None = None
    name: str | None = None
    labels: list[str] = Field(default_factory=list)
    cardinality: str | None = None
    schedule: str | None = None
    domains: list[str] = Field(default_factory=list)
    durability: str | None = None
    runtime: str | None = None
    source: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    volumes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    entrypoints: dict[str, dict[str, Any]] = Field(default_factory=dict)


class _Slot(BaseModel):
    name: str
    type: str
    labels: list[str] = Field(default_factory=list)
    cardinality: str | None = None
    durability: str | None = None
    schedule: str | None = None
    domains: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, Volume] = Field(default_factory=dict)

    def as_deployment(self) -> Deployment:
        """Overrides this slot applies when its type is instantiated."""
        return Deployment(
            name=self.name,
            labels=self.labels,
            cardinality=self.cardinality,
            schedule=self.schedule,
            domains=self.domains,
            durability=self.durability,
            variables=self.variables,
            volumes={name: vol.model_dump(exclude_none=True) for name, vol in self.volumes.items()},
        )


class Subcomponent(_Slot):
    pass


class LinkConnector(BaseModel):
    """Point-to-point wire between one output and one input endpoint."""

    kind: Literal["link"] = "link"
    name: str
    type: Literal["Link"] = LINK
    labels: list[str] = Field(default_factory=list)
    schedule: str | None = None
    domains: list[str] = Field(default_factory=list)
    inputs: list[EndpointRef]
    outputs: list[EndpointRef]


class NativeConnector(_Slot):
    """Connector backed by an imported component type."""

    kind: Literal["native"] = "native"
    inputs: list[EndpointRef] = Field(default_factory=list)
    outputs: list[EndpointRef] = Field(default_factory=list)
    entrypoints: dict[str, Entrypoint] = Field(default_factory=dict)


Connector = Annotated[Union[LinkConnector, NativeConnector], Field(discriminator="kind")]


class _ModelBase(BaseModel):
    name: str | None = None
    title: str | None = None
    labels: list[str] = Field(default_factory=list)
    cardinality: str | None = None
    schedule: str | None = None
    domains: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    entrypoints: dict[str, Entrypoint] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    def endpoint(self, name: str):
        return self.endpoints.get(name)

    def first_endpoint(self, direction: str) -> str | None:
        """Name of the first endpoint with the given direction."""
        for name, endpoint in self.endpoints.items():
            if endpoint.direction == direction:
                return name
        return None


class BasicModel(_ModelBase):
    """Atomic deployable unit."""

    type: Literal["basic"] = "basic"
    durability: str | None = None
    runtime: str | None = None
    source: str | None = None
    events: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, Volume] = Field(default_factory=dict)
    endpoints: dict[str, Endpoint] = Field(default_factory=dict)


class CompositeModel(_ModelBase):
    """Graph of subcomponents wired by connectors."""

    type: Literal["composite"] = "composite"
    imports: dict[str, ResolvedModel] = Field(default_factory=dict)
    subcomponents: dict[str, Subcomponent] = Field(default_factory=dict)
    connectors: dict[str, Connector] = Field(default_factory=dict)
    endpoints: dict[str, PublishedEndpoint] = Field(default_factory=dict)

    def slot(self, *, subcomponent: str | None = None, connector: str | None = None):
        """Return the subcomponent or connector declaration, or None."""
        if subcomponent:
            return self.subcomponents.get(subcomponent)
        if connector:
            return self.connectors.get(connector)
        return None

    def slot_type(self, slot) -> ResolvedModel | None:
        """Imported type of a subcomponent or native connector."""
        if slot is None or isinstance(slot, LinkConnector):
            return None
        return self.imports.get(slot.type)


ResolvedModel = Annotated[Union[BasicModel, CompositeModel], Field(discriminator="type")]

CompositeModel.model_rebuild()
