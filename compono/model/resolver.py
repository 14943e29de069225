"""
Model Resolver for Compono.

Turns a component model document plus deployment overrides into a fully
resolved, validated model. Resolution happens entirely before any record
is written: a model that fails here never reaches the store.

Resolution steps:
1. Merge variables (deployment over model) and render {{expressions}}
2. Apply deployment overrides (title, name, labels, cardinality, ...)
3. Composite only:
   - fetch remote imports (file/http/https) and resolve every import
   - resolve subcomponents and connectors against their imported types
   - validate connector wiring (directions, protocol agreement)
   - resolve published endpoints and push entrypoints down to their
     entry connectors

Usage:
    resolver = ModelResolver(ImportFetcher())
    model = await resolver.resolve({"variables": {"port": 8080}}, yaml_text)
"""

from __future__ import annotations

import logging
import re
from typing import Any

import yaml
from pydantic import ValidationError

from ..concurrency import gather_all
from ..errors import ModelError
from .cardinality import Cardinality
from .expressions import format_value, has_placeholder, render
from .fetch import ImportFetcher
from .types import (
    LINK,
    BasicModel,
    CompositeModel,
    Deployment,
    Endpoint,
    EndpointRef,
    Entrypoint,
    InEndpoint,
    LinkConnector,
    NativeConnector,
    OutEndpoint,
    ResolvedModel,
    Subcomponent,
    Volume,
)

logger = logging.getLogger(__name__)

PROTOCOL_RE = re.compile(r"^(tcp:\d+|http|https)$")
CARDINALITY_RE = re.compile(r"^\[\d*:\d*\]$")
PATH_RE = re.compile(r"^/.*$")

DURABILITIES = ("ephemeral", "permanent")
SCOPES = ("local", "global")
DIRECTIONS = ("in", "out")
MODEL_TYPES = ("basic", "composite")


def parse_document(text: str, source: str = "model") -> dict[str, Any]:
    """Parse a YAML (or JSON) model document."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ModelError(f"Unable to parse {source}: {e}", cause=e) from e

    if not isinstance(document, dict):
        raise ModelError(f"{source} must be a mapping, got {type(document).__name__}")
    return document


class ModelResolver:
    """Resolves and validates component models."""

    def __init__(self, fetcher: ImportFetcher | None = None):
        self._fetcher = fetcher or ImportFetcher()

    async def resolve(
        self,
        deployment: Deployment | dict[str, Any] | None,
        model: dict[str, Any] | str,
    ) -> ResolvedModel:
        """
        Resolve a model document against deployment overrides.

        Args:
            deployment: Overrides (Deployment or plain mapping)
            model: Model document (mapping or YAML text)

        Returns:
            BasicModel or CompositeModel

        Raises:
            ModelError: If the model is malformed or inconsistent
        """
        if isinstance(model, str):
            model = parse_document(model)
        if not isinstance(deployment, Deployment):
            try:
                deployment = Deployment.model_validate(deployment or {})
            except ValidationError as e:
                raise ModelError(f"Invalid deployment: {e}", cause=e) from e

        try:
            return await self._resolve(deployment, model)
        except ValidationError as e:
            raise ModelError(f"Invalid model: {e}", cause=e) from e

    # =========================================================================
    # Attribute evaluation
    # =========================================================================

    def _text(
        self,
        value: Any,
        variables: dict[str, Any],
        *,
        att: str | None = None,
        required: bool = False,
        values: tuple[str, ...] | None = None,
        pattern: re.Pattern | None = None,
        ignore_case: bool = False,
    ) -> str | None:
        if value is None or value == "":
            if required:
                raise ModelError(f"Missing required attribute {att}", attribute=att)
            return None
        if isinstance(value, (dict, list)):
            raise ModelError(f"Attribute {att} must be a scalar", attribute=att)

        text = render(format_value(value), variables)
        if ignore_case:
            text = text.lower()

        # Checks only apply once every placeholder is bound
        if has_placeholder(text):
            return text
        if values is not None and text not in values:
            raise ModelError(f"Unsupported value {text!r} for attribute {att}", attribute=att)
        if pattern is not None and not pattern.match(text):
            raise ModelError(f"Malformed value {text!r} for attribute {att}", attribute=att)
        return text

    def _texts(self, items: Any, variables: dict[str, Any], att: str) -> list[str]:
        if items is None:
            return []
        if not isinstance(items, list):
            raise ModelError(f"Attribute {att} must be a list", attribute=att)
        return [self._text(item, variables, att=att) or "" for item in items]

    def _cardinality(self, value: Any, variables: dict[str, Any]) -> str | None:
        text = self._text(value, variables, att="cardinality", pattern=CARDINALITY_RE)
        if text is not None and not has_placeholder(text):
            Cardinality.parse(text)
        return text

    def _volume(self, name: str, spec: Any, variables: dict[str, Any]) -> Volume:
        spec = spec or {}
        if not isinstance(spec, dict):
            raise ModelError(f"Volume {name} must be a mapping", attribute="volumes")
        return Volume(
            name=name,
            type=self._text(spec.get("type"), variables, att="type"),
            path=self._text(spec.get("path"), variables, att="path"),
            scope=self._text(spec.get("scope"), variables, att="scope", values=SCOPES),
            durability=self._text(
                spec.get("durability"), variables, att="durability", values=DURABILITIES
            ),
            url=self._text(spec.get("url"), variables, att="url"),
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    async def _resolve(self, deployment: Deployment, model: dict[str, Any]) -> ResolvedModel:
        model_vars = model.get("variables") or {}
        if not isinstance(model_vars, dict):
            raise ModelError("Attribute variables must be a mapping", attribute="variables")

        context = {**model_vars, **deployment.variables}
        kind = self._text(model.get("type"), context, att="type", required=True, values=MODEL_TYPES)

        common: dict[str, Any] = {
            "title": self._text(deployment.title or model.get("title"), context, att="title"),
            "name": self._text(deployment.name or model.get("name"), context, att="name"),
            "labels": self._texts(
                list(model.get("labels") or []) + deployment.labels, context, "labels"
            ),
            "cardinality": self._cardinality(
                deployment.cardinality or model.get("cardinality"), context
            ),
            "schedule": self._text(
                deployment.schedule or model.get("schedule"), context, att="schedule"
            ),
            "domains": self._texts(deployment.domains or model.get("domains"), context, "domains"),
            "variables": {name: format_value(value) for name, value in context.items()},
        }

        if kind == "basic":
            return self._resolve_basic(deployment, model, context, common)
        return await self._resolve_composite(deployment, model, context, common)

    def _resolve_basic(
        self,
        deployment: Deployment,
        model: dict[str, Any],
        context: dict[str, Any],
        common: dict[str, Any],
    ) -> BasicModel:
        volumes = {}
        for name, spec in (model.get("volumes") or {}).items():
            merged = {**(spec or {}), **deployment.volumes.get(name, {})}
            volumes[name] = self._volume(name, merged, context)

        endpoints = {}
        for name, spec in (model.get("endpoints") or {}).items():
            spec = spec or {}
            endpoints[name] = Endpoint(
                name=name,
                direction=self._text(
                    spec.get("type"), context, att="type", required=True, values=DIRECTIONS
                ),
                protocol=self._text(
                    spec.get("protocol"),
                    context,
                    att="protocol",
                    required=True,
                    pattern=PROTOCOL_RE,
                    ignore_case=True,
                ),
                required=self._text(spec.get("required"), context, att="required"),
            )

        entrypoints = {}
        for name, spec in (model.get("entrypoints") or {}).items():
            spec = spec or {}
            entrypoints[name] = Entrypoint(
                name=name,
                protocol=self._text(
                    spec.get("protocol"),
                    context,
                    att="protocol",
                    required=True,
                    pattern=PROTOCOL_RE,
                    ignore_case=True,
                ),
                path=self._text(spec.get("path"), context, att="path", pattern=PATH_RE),
                mapping=spec.get("mapping"),
            )

        return BasicModel(
            **common,
            durability=self._text(
                deployment.durability or model.get("durability"),
                context,
                att="durability",
                values=DURABILITIES,
            ),
            runtime=self._text(deployment.runtime or model.get("runtime"), context, att="runtime"),
            source=self._text(deployment.source or model.get("source"), context, att="source"),
            events={
                name: self._text(command, context, att="events") or ""
                for name, command in (model.get("events") or {}).items()
            },
            volumes=volumes,
            endpoints=endpoints,
            entrypoints=entrypoints,
            raw=model,
        )

    async def _resolve_composite(
        self,
        deployment: Deployment,
        model: dict[str, Any],
        context: dict[str, Any],
        common: dict[str, Any],
    ) -> CompositeModel:
        imports_raw = await self._load_imports(model.get("imports") or {})
        names = list(imports_raw)
        resolved_imports = await gather_all(
            self._resolve_import(name, imports_raw[name]) for name in names
        )
        imports = dict(zip(names, resolved_imports))

        subcomponents: dict[str, Subcomponent] = {}
        for name, spec in (model.get("subcomponents") or {}).items():
            if isinstance(spec, str):
                spec = {"type": spec}
            if not isinstance(spec, dict) or spec.get("type") not in imports:
                type_name = spec.get("type") if isinstance(spec, dict) else spec
                raise ModelError(
                    f"Unknown subcomponent type {type_name} for subcomponent {name}",
                    attribute=f"subcomponents.{name}",
                )
            subcomponents[name] = Subcomponent(
                **self._slot_fields(name, spec, imports_raw[spec["type"]], context, common)
            )

        connectors: dict[str, LinkConnector | NativeConnector] = {}
        published_raw = model.get("endpoints") or {}
        for name, spec in (model.get("connectors") or {}).items():
            connectors[name] = self._resolve_connector(
                name, spec, imports_raw, subcomponents, published_raw, context, common
            )

        endpoints: dict[str, InEndpoint | OutEndpoint] = {}
        for name, spec in published_raw.items():
            endpoints[name] = self._resolve_published(
                name, spec, imports_raw, subcomponents, connectors, context
            )

        entrypoints = {}
        for name, spec in deployment.entrypoints.items():
            entrypoints[name] = self._resolve_entrypoint(
                name, spec, imports, connectors, endpoints, context
            )

        raw = {**model, "imports": {name: imports[name].raw for name in names}}
        return CompositeModel(
            **common,
            imports=imports,
            subcomponents=subcomponents,
            connectors=connectors,
            endpoints=endpoints,
            entrypoints=entrypoints,
            raw=raw,
        )

    async def _load_imports(self, imports: Any) -> dict[str, dict[str, Any]]:
        if not isinstance(imports, dict):
            raise ModelError("Attribute imports must be a mapping", attribute="imports")

        loaded: dict[str, dict[str, Any]] = {}

        async def _load(name: str, spec: Any) -> None:
            if isinstance(spec, str):
                logger.info(f"[resolver] Fetching import {name} from {spec}")
                loaded[name] = parse_document(await self._fetcher.fetch(spec), source=spec)
            elif isinstance(spec, dict):
                loaded[name] = spec
            else:
                raise ModelError(f"Unsupported import {name}", attribute=f"imports.{name}")

        await gather_all(_load(name, spec) for name, spec in imports.items())
        return {name: loaded[name] for name in imports}

    async def _resolve_import(self, name: str, document: dict[str, Any]) -> ResolvedModel:
        try:
            return await self._resolve(Deployment(), document)
        except ModelError as e:
            raise ModelError(
                f"Error in import {name}: {e.message}", attribute=e.attribute, cause=e
            ) from e

    def _slot_fields(
        self,
        name: str,
        spec: dict[str, Any],
        type_raw: dict[str, Any],
        context: dict[str, Any],
        common: dict[str, Any],
    ) -> dict[str, Any]:
        """Fields shared by subcomponents and native connectors."""
        published_vars = type_raw.get("variables") or {}
        variables = {}
        for var_name, value in (spec.get("variables") or {}).items():
            if var_name not in published_vars:
                raise ModelError(
                    f"Variable {var_name} not published by {name}",
                    attribute=f"{name}.variables",
                )
            variables[var_name] = self._text(value, context, att=var_name) or ""

        published_volumes = type_raw.get("volumes") or {}
        volumes = {}
        for vol_name, vol in (spec.get("volumes") or {}).items():
            if vol_name not in published_volumes:
                raise ModelError(
                    f"Volume {vol_name} not published by {name}",
                    attribute=f"{name}.volumes",
                )
            volumes[vol_name] = self._volume(vol_name, vol, context)

        return {
            "name": name,
            "type": spec["type"],
            "labels": self._texts(list(spec.get("labels") or []), context, "labels")
            + common["labels"],
            "cardinality": self._cardinality(spec.get("cardinality"), context),
            "durability": self._text(
                spec.get("durability"), context, att="durability", values=DURABILITIES
            ),
            "schedule": self._text(spec.get("schedule") or common["schedule"], context),
            "domains": self._texts(spec.get("domains"), context, "domains") or common["domains"],
            "variables": variables,
            "volumes": volumes,
        }

    # =========================================================================
    # Wiring validation
    # =========================================================================

    @staticmethod
    def _endpoint_ref(ref: Any, owner: str) -> EndpointRef:
        if isinstance(ref, str):
            subcomponent, _, endpoint = ref.partition(".")
            ref = {"subcomponent": subcomponent, "endpoint": endpoint}
        if not isinstance(ref, dict) or not ref.get("subcomponent") or not ref.get("endpoint"):
            raise ModelError(f"Unsupported endpoint reference {ref!r} in {owner}")
        return EndpointRef(subcomponent=ref["subcomponent"], endpoint=ref["endpoint"])

    def _slot_endpoint(
        self,
        ref: EndpointRef,
        imports_raw: dict[str, dict[str, Any]],
        subcomponents: dict[str, Subcomponent],
        owner: str,
    ) -> tuple[str | None, str | None]:
        """Direction and protocol of a subcomponent endpoint, as the subcomponent sees it."""
        subcomponent = subcomponents.get(ref.subcomponent)
        if subcomponent is None:
            raise ModelError(f"Unresolved endpoint reference {ref} in {owner}")

        type_raw = imports_raw[subcomponent.type]
        endpoint = (type_raw.get("endpoints") or {}).get(ref.endpoint)
        if endpoint is None:
            raise ModelError(f"Unresolved endpoint reference {ref} in {owner}")

        scope = {**(type_raw.get("variables") or {}), **subcomponent.variables}
        return (
            self._text(endpoint.get("type"), scope, att="type"),
            self._text(endpoint.get("protocol"), scope, att="protocol", ignore_case=True),
        )

    def _resolve_connector(
        self,
        name: str,
        spec: Any,
        imports_raw: dict[str, dict[str, Any]],
        subcomponents: dict[str, Subcomponent],
        published_raw: dict[str, Any],
        context: dict[str, Any],
        common: dict[str, Any],
    ) -> LinkConnector | NativeConnector:
        if not isinstance(spec, dict) or not spec.get("type"):
            raise ModelError(f"Missing type for connector {name}", attribute=f"connectors.{name}")

        con_type = spec["type"]
        is_link = con_type == LINK
        if not is_link and con_type not in imports_raw:
            raise ModelError(f"Unknown connector type {con_type} for connector {name}")

        outputs_raw = spec.get("outputs") or []
        if not outputs_raw:
            raise ModelError(f"Orphan connector {name} without outputs")
        if is_link and len(outputs_raw) > 1:
            raise ModelError(f"Link connector {name} can only have one output")

        out_protocol = None
        outputs = []
        for output in outputs_raw:
            ref = self._endpoint_ref(output, f"connector {name}")
            direction, protocol = self._slot_endpoint(ref, imports_raw, subcomponents, name)
            if direction != "in":
                raise ModelError(f"The outputs of connector {name} must connect to in endpoints")
            if out_protocol is None:
                out_protocol = protocol
            elif protocol != out_protocol:
                raise ModelError(f"Incompatible protocols for outputs in connector {name}")
            outputs.append(ref)

        inputs_raw = spec.get("inputs") or []
        if is_link and len(inputs_raw) != 1:
            raise ModelError(f"Link connector {name} must have exactly one input")

        inputs = []
        for input_ in inputs_raw:
            ref = self._endpoint_ref(input_, f"connector {name}")
            direction, protocol = self._slot_endpoint(ref, imports_raw, subcomponents, name)
            if direction != "out":
                raise ModelError(f"The inputs of connector {name} must connect to out endpoints")
            if protocol != out_protocol:
                raise ModelError(f"Incompatible protocols for inputs/outputs in connector {name}")
            inputs.append(ref)

        if not inputs:
            # Only entry connectors of a published in endpoint may lack inputs
            published = next(
                (
                    (ep_name, ep)
                    for ep_name, ep in published_raw.items()
                    if isinstance(ep, dict) and ep.get("mapping") == name
                ),
                None,
            )
            if published is None:
                raise ModelError(f"Orphan connector {name} without inputs")
            ep_name, ep = published
            if self._text(ep.get("type"), context, att="type") != "in":
                raise ModelError(f"Connector {name} does not match published endpoint {ep_name}")
            if self._text(ep.get("protocol"), context, ignore_case=True) != out_protocol:
                raise ModelError(
                    f"Connector {name} protocol does not match published endpoint {ep_name}"
                )

        if is_link:
            return LinkConnector(
                name=name,
                labels=self._texts(list(spec.get("labels") or []), context, "labels")
                + common["labels"],
                schedule=self._text(spec.get("schedule") or common["schedule"], context),
                domains=self._texts(spec.get("domains"), context, "domains") or common["domains"],
                inputs=inputs,
                outputs=outputs,
            )

        return NativeConnector(
            **self._slot_fields(name, spec, imports_raw[con_type], context, common),
            inputs=inputs,
            outputs=outputs,
        )

    def _resolve_published(
        self,
        name: str,
        spec: Any,
        imports_raw: dict[str, dict[str, Any]],
        subcomponents: dict[str, Subcomponent],
        connectors: dict[str, LinkConnector | NativeConnector],
        context: dict[str, Any],
    ) -> InEndpoint | OutEndpoint:
        if not isinstance(spec, dict) or not spec.get("mapping"):
            raise ModelError(f"Missing mapping in endpoint {name}", attribute=f"endpoints.{name}")

        direction = self._text(
            spec.get("type"), context, att="type", required=True, values=DIRECTIONS
        )
        protocol = self._text(
            spec.get("protocol"),
            context,
            att="protocol",
            required=True,
            pattern=PROTOCOL_RE,
            ignore_case=True,
        )
        required = self._text(spec.get("required"), context, att="required")
        mapping = spec["mapping"]

        if direction == "in":
            connector = connectors.get(mapping) if isinstance(mapping, str) else None
            if connector is None:
                raise ModelError(f"Wrong mapping of published endpoint {name}")
            if isinstance(connector, LinkConnector):
                raise ModelError(
                    f"Published in endpoint {name} must map to a native connector, not a Link",
                    attribute=f"endpoints.{name}",
                )
            _, mapped_protocol = self._slot_endpoint(
                connector.outputs[0], imports_raw, subcomponents, name
            )
            if mapped_protocol != protocol:
                raise ModelError(
                    f"Incompatible protocols of published endpoint {name} and mapped connector"
                )
            return InEndpoint(name=name, protocol=protocol, required=required, mapping=mapping)

        if isinstance(mapping, str):
            mappings = [item.strip() for item in mapping.split(",")]
        elif isinstance(mapping, list):
            mappings = mapping
        else:
            mappings = [mapping]

        refs = []
        for item in mappings:
            ref = self._endpoint_ref(item, f"endpoint {name}")
            mapped_direction, mapped_protocol = self._slot_endpoint(
                ref, imports_raw, subcomponents, name
            )
            if mapped_direction != "out":
                raise ModelError(f"Published out endpoint {name} must map to out endpoints")
            if mapped_protocol != protocol:
                raise ModelError(
                    f"Incompatible protocols of published endpoint {name} and mapped endpoint"
                )
            refs.append(ref)

        return OutEndpoint(name=name, protocol=protocol, required=required, mapping=refs)

    def _resolve_entrypoint(
        self,
        name: str,
        spec: dict[str, Any],
        imports: dict[str, ResolvedModel],
        connectors: dict[str, LinkConnector | NativeConnector],
        endpoints: dict[str, InEndpoint | OutEndpoint],
        context: dict[str, Any],
    ) -> Entrypoint:
        if not spec.get("mapping"):
            raise ModelError(f"Missing mapping in entrypoint {name}", attribute="entrypoints")

        protocol = self._text(
            spec.get("protocol"),
            context,
            att="protocol",
            required=True,
            pattern=PROTOCOL_RE,
            ignore_case=True,
        )
        path = self._text(spec.get("path"), context, att="path", pattern=PATH_RE)
        if protocol in ("http", "https") and not path:
            raise ModelError(f"Missing path in entrypoint {name}", attribute="entrypoints")

        published = endpoints.get(spec["mapping"])
        if not isinstance(published, InEndpoint):
            raise ModelError(f"Unresolved mapping in entrypoint {name}", attribute="entrypoints")

        connector = connectors[published.mapping]
        if not isinstance(connector, NativeConnector):
            raise ModelError(f"Entrypoint {name} must map to a native entry connector")

        entrypoint = Entrypoint(
            name=name,
            protocol=protocol,
            path=path,
            mapping=imports[connector.type].first_endpoint("in"),
        )
        connector.entrypoints[name] = entrypoint
        return entrypoint
