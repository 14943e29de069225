"""
Component model: types, cardinality, expressions and resolution.
"""

from .cardinality import DEFAULT_CARDINALITY, Cardinality
from .expressions import evaluate, render
from .fetch import ImportFetcher
from .resolver import ModelResolver, parse_document
from .types import (
    LINK,
    BasicModel,
    CompositeModel,
    Connector,
    Deployment,
    Endpoint,
    EndpointRef,
    Entrypoint,
    InEndpoint,
    LinkConnector,
    NativeConnector,
    OutEndpoint,
    PublishedEndpoint,
    ResolvedModel,
    Subcomponent,
    Volume,
)

__all__ = [
    "LINK",
    "BasicModel",
    "Cardinality",
    "CompositeModel",
    "Connector",
    "DEFAULT_CARDINALITY",
    "Deployment",
    "Endpoint",
    "EndpointRef",
    "Entrypoint",
    "ImportFetcher",
    "InEndpoint",
    "LinkConnector",
    "ModelResolver",
    "NativeConnector",
    "OutEndpoint",
    "PublishedEndpoint",
    "ResolvedModel",
    "Subcomponent",
    "Volume",
    "evaluate",
    "parse_document",
    "render",
]
