"""
Stored record types for Compono.

Four core tables hold the desired state produced by the component engine:

- instances: one row per component instance (basic or composite)
- collections: replica sets of one basic slot inside one composite instance
- links: directed dataflow edges between collections
- transactions: status of asynchronous engine and driver operations

The domain tables mirror what has been projected onto each domain. Their
`labels` carry back-references to the core records (`id=<core id>`,
`collection=<core collection id>`).

Records are pydantic models; the store persists `model_dump(mode="json")`
and callers re-validate rows with `Model.model_validate(row)`.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .model.types import ResolvedModel


def new_id() -> str:
    return str(uuid.uuid4())


def now() -> float:
    return time.time()


# =============================================================================
# Table names
# =============================================================================

INSTANCES = "instances"
COLLECTIONS = "collections"
LINKS = "links"
TRANSACTIONS = "transactions"
DOMAINS = "domains"
DOMAIN_COLLECTIONS = "domain_collections"
DOMAIN_INSTANCES = "domain_instances"
DOMAIN_LINKS = "domain_links"


# =============================================================================
# States
# =============================================================================


class InstanceState(str, Enum):
    INIT = "init"
    READY = "ready"
    FAILED = "failed"
    DESTROY = "destroy"


class CollectionState(str, Enum):
    PREINIT = "preinit"
    INIT = "init"
    READY = "ready"
    DESTROY = "destroy"


class TransactionState(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ABORTED = "aborted"


class DomainState(str, Enum):
    INIT = "init"
    READY = "ready"
    FAILED = "failed"


# =============================================================================
# Core records
# =============================================================================


class Instance(BaseModel):
    """A materialized component instance."""

    id: str = Field(default_factory=new_id)
    type: str = Field(..., description="basic | composite")
    title: str = ""
    parent: str = ""
    subcomponent: str = ""
    connector: str = ""
    labels: list[str] = Field(default_factory=list)
    model: ResolvedModel
    collection: str = ""
    domain: str = ""
    addr: str = ""
    proxy_addr: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    state: InstanceState = InstanceState.INIT
    last: float = Field(default_factory=now)

    @property
    def slot(self) -> str:
        """Name of the subcomponent or connector this instance fills."""
        return self.subcomponent or self.connector


class Collection(BaseModel):
    """Replica set of one basic slot within one composite instance."""

    id: str = Field(default_factory=new_id)
    parent: str
    name: str
    kind: str = Field(default="subcomponent", description="subcomponent | connector")
    labels: list[str] = Field(default_factory=list)
    addr: str = ""
    domains: list[str] = Field(default_factory=list)
    publish: bool = False
    publish_inputs: dict[str, dict[str, str]] = Field(default_factory=dict)
    publish_paths: list[str] = Field(default_factory=list)
    inputs: dict[str, str] = Field(default_factory=dict, description="endpoint -> protocol")
    outputs: dict[str, str] = Field(default_factory=dict, description="endpoint -> protocol")
    members: list[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
    state: CollectionState = CollectionState.PREINIT
    last: float = Field(default_factory=now)


class Link(BaseModel):
    """Directed dataflow edge between two collections."""

    id: str = Field(default_factory=new_id)
    labels: list[str] = Field(default_factory=list)
    protocol: str
    src: str
    src_name: str
    dst: str
    dst_name: str
    data: dict[str, Any] = Field(default_factory=dict)
    state: str = "init"
    last: float = Field(default_factory=now)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.src, self.src_name, self.dst, self.dst_name)


class Transaction(BaseModel):
    """Status record of an asynchronous operation."""

    id: str = Field(default_factory=new_id)
    parent: str = ""
    type: str
    target: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    state: TransactionState = TransactionState.STARTED
    err: dict[str, Any] | None = None
    ini: float = Field(default_factory=now)
    last: float = Field(default_factory=now)


# =============================================================================
# Domain records
# =============================================================================


class Domain(BaseModel):
    """An execution environment managed by a driver."""

    id: str = Field(default_factory=new_id)
    type: str
    title: str = ""
    runtimes: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    state: DomainState = DomainState.INIT
    last: float = Field(default_factory=now)


class DomainCollection(BaseModel):
    id: str = Field(default_factory=new_id)
    domain: str
    name: str = ""
    labels: list[str] = Field(default_factory=list)
    proxy: bool = False
    proxy_addr: str = ""
    publish: bool = False
    inputs: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    members: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    state: DomainState = DomainState.INIT
    last: float = Field(default_factory=now)


class DomainInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    domain: str
    collection: str
    labels: list[str] = Field(default_factory=list)
    proxy: bool = False
    proxy_target: str = ""
    runtime: str = ""
    source: str = ""
    durability: str = ""
    variables: dict[str, str] = Field(default_factory=dict)
    events: dict[str, str] = Field(default_factory=dict)
    addr: str = ""
    proxy_addr: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    state: DomainState = DomainState.INIT
    last: float = Field(default_factory=now)


class LinkEnd(BaseModel):
    collection: str
    name: str


class DomainLink(BaseModel):
    id: str = Field(default_factory=new_id)
    domain: str
    labels: list[str] = Field(default_factory=list)
    src: LinkEnd
    dst: LinkEnd
    data: dict[str, Any] = Field(default_factory=dict)
    state: DomainState = DomainState.INIT
    last: float = Field(default_factory=now)


def label_value(labels: list[str], key: str) -> str | None:
    """Return the value of the first `key=value` label, if any."""
    prefix = f"{key}="
    for label in labels:
        if label.startswith(prefix):
            return label[len(prefix) :]
    return None
