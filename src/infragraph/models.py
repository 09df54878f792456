"""Resource model: declarations, references, plans and apply records.

These models provide:
1. Type-safe YAML parsing of resource declarations (pydantic)
2. Cross-resource output references resolved only after planning/apply
3. Canonical parameter hashing for change detection
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import VALID_RESOURCE_ID_PATTERN

# Embedded reference inside a string parameter: "https://${backend.fqdn}/api"
TEMPLATE_REF_PATTERN = re.compile(r"\$\{([a-z][a-z0-9_-]*)\.([A-Za-z0-9_.]+)\}")

# Keys allowed in a reference mapping: {ref: storage.endpoint, fallback: ...}
REF_KEYS = frozenset({"ref", "fallback"})


class ResourceKind(str, Enum):
    """Supported resource kinds."""

    STORAGE_ACCOUNT = "storage-account"
    DATABASE_ACCOUNT = "database-account"
    COMPUTE_SERVICE = "compute-service"
    ENVIRONMENT = "environment"


class PlanAction(str, Enum):
    """What a plan step does to its resource."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    REUSE = "reuse"

    @property
    def calls_backend(self) -> bool:
        """Whether this action needs a backend call."""
        return self in (PlanAction.CREATE, PlanAction.UPDATE)


class ApplyStatus(str, Enum):
    """Last known status of a resource's apply."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


# =============================================================================
# References
# =============================================================================


@dataclass(frozen=True)
class ParameterRef:
    """Reference to another resource's output.

    The output may be a dotted path into nested outputs, e.g.
    ``storage.primaryEndpoints.blob``.
    """

    resource_id: str
    output: str
    fallback: Any = None
    has_fallback: bool = False

    @classmethod
    def parse(cls, expression: str, **kwargs: Any) -> ParameterRef:
        """Parse ``<resource-id>.<output-path>``.

        Args:
            expression: Reference expression.
            **kwargs: ``fallback`` if the reference declares one.

        Raises:
            ValueError: If the expression is malformed.
        """
        if not isinstance(expression, str):
            raise ValueError(f"Reference must be a string, got {type(expression).__name__}")
        resource_id, sep, output = expression.strip().partition(".")
        if not sep or not output or not re.match(VALID_RESOURCE_ID_PATTERN, resource_id):
            raise ValueError(
                f"Invalid reference '{expression}': expected '<resource-id>.<output>'"
            )
        if "fallback" in kwargs:
            return cls(resource_id, output, fallback=kwargs["fallback"], has_fallback=True)
        return cls(resource_id, output)

    @property
    def expression(self) -> str:
        return f"{self.resource_id}.{self.output}"

    def lookup(self, outputs: Mapping[str, Any]) -> tuple[bool, Any]:
        """Walk the output path through ``outputs``.

        Returns:
            Tuple of (found, value).
        """
        current: Any = outputs
        for part in self.output.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def __str__(self) -> str:
        return f"${{{self.expression}}}"


@dataclass(frozen=True)
class TemplateString:
    """String parameter with embedded ``${id.output}`` references."""

    parts: tuple[str | ParameterRef, ...]

    @classmethod
    def parse(cls, value: str) -> str | TemplateString:
        """Split ``value`` into literal and reference parts.

        Returns the string unchanged if it holds no references.
        """
        parts: list[str | ParameterRef] = []
        position = 0
        for match in TEMPLATE_REF_PATTERN.finditer(value):
            if match.start() > position:
                parts.append(value[position : match.start()])
            parts.append(ParameterRef(match.group(1), match.group(2)))
            position = match.end()
        if not any(isinstance(part, ParameterRef) for part in parts):
            return value
        if position < len(value):
            parts.append(value[position:])
        return cls(tuple(parts))

    @property
    def refs(self) -> list[ParameterRef]:
        return [part for part in self.parts if isinstance(part, ParameterRef)]

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


@dataclass(frozen=True)
class DeferredValue:
    """A parameter value that is only known after a dependency is applied."""

    source: ParameterRef | TemplateString

    def __str__(self) -> str:
        return f"(known after apply: {self.source})"


def parse_parameter_value(value: Any) -> Any:
    """Convert raw YAML parameter values into references where declared.

    ``{ref: a.b}`` and ``{ref: a.b, fallback: x}`` become ParameterRef,
    strings containing ``${a.b}`` become TemplateString. Lists and mappings
    are walked recursively.
    """
    if isinstance(value, Mapping):
        keys = set(value.keys())
        if "ref" in keys and keys <= REF_KEYS:
            extra = {"fallback": value["fallback"]} if "fallback" in keys else {}
            return ParameterRef.parse(value["ref"], **extra)
        return {key: parse_parameter_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_parameter_value(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return TemplateString.parse(value)
    return value


def iter_references(value: Any) -> Iterator[ParameterRef]:
    """Yield every ParameterRef inside a parameter value."""
    if isinstance(value, ParameterRef):
        yield value
    elif isinstance(value, TemplateString):
        yield from value.refs
    elif isinstance(value, DeferredValue):
        yield from iter_references(value.source)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, lookup: Callable[[ParameterRef], Any]) -> Any:
    """Replace references in ``value`` using ``lookup``.

    ``lookup`` returns the referenced value, or a DeferredValue when the
    value is not known yet. A template string with any deferred part is
    deferred as a whole.
    """
    if isinstance(value, DeferredValue):
        return resolve_value(value.source, lookup)
    if isinstance(value, ParameterRef):
        return lookup(value)
    if isinstance(value, TemplateString):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, ParameterRef):
                resolved = lookup(part)
                if isinstance(resolved, DeferredValue):
                    return DeferredValue(value)
                rendered.append(resolved if isinstance(resolved, str) else json.dumps(resolved))
            else:
                rendered.append(part)
        return "".join(rendered)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, lookup) for item in value]
    return value


def contains_deferred(value: Any) -> bool:
    """Check whether any part of ``value`` is still deferred."""
    if isinstance(value, DeferredValue):
        return True
    if isinstance(value, Mapping):
        return any(contains_deferred(item) for item in value.values())
    if isinstance(value, list | tuple):
        return any(contains_deferred(item) for item in value)
    return False


def to_display(value: Any) -> Any:
    """Render a parameter snapshot as JSON-compatible data."""
    if isinstance(value, DeferredValue | ParameterRef | TemplateString):
        return str(value)
    if isinstance(value, Mapping):
        return {key: to_display(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [to_display(item) for item in value]
    return value


def compute_parameter_hash(kind: ResourceKind, parameters: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON of a fully resolved snapshot.

    Raises:
        ValueError: If the snapshot still contains deferred values.
    """
    if contains_deferred(parameters):
        raise ValueError("Cannot hash parameters that are known only after apply")
    canonical = json.dumps(
        {"kind": kind.value, "parameters": parameters},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Declarations
# =============================================================================


class ResourceSpec(BaseModel):
    """Declaration of a single resource.

    ``conditional`` is the deploy-new toggle: True deploys and manages the
    resource, False reuses an existing one from recorded state.
    """

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    id: str
    kind: ResourceKind
    parameters: dict[str, Any] = Field(default_factory=dict)
    conditional: bool = Field(alias="deployNew")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    description: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(VALID_RESOURCE_ID_PATTERN, v):
            raise ValueError(f"id must match pattern {VALID_RESOURCE_ID_PATTERN}: {v}")
        return v

    @field_validator("parameters", mode="before")
    @classmethod
    def parse_references(cls, v: Any) -> Any:
        if not isinstance(v, Mapping):
            return v
        return {str(key): parse_parameter_value(item) for key, item in v.items()}

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        result: list[str] = []
        for dep in v:
            if not re.match(VALID_RESOURCE_ID_PATTERN, dep):
                raise ValueError(f"dependsOn entry must be a resource id: {dep}")
            if dep not in result:
                result.append(dep)
        return result

    def references(self) -> list[ParameterRef]:
        """All output references declared in parameters."""
        return list(iter_references(self.parameters))


class DeclarationSet(BaseModel):
    """A set of resource declarations keyed by resource id.

    ``defaultDeployNew`` must be declared for any resource that omits its own
    ``deployNew``; there is no implicit default.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    default_deploy_new: bool | None = Field(None, alias="defaultDeployNew")
    include: list[str] = Field(default_factory=list)
    resources: dict[str, ResourceSpec] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def apply_resource_defaults(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        resources = data.get("resources")
        if not isinstance(resources, Mapping):
            return data

        default = data.get("defaultDeployNew", data.get("default_deploy_new"))
        normalized: dict[str, Any] = {}
        for resource_id, body in resources.items():
            if not isinstance(body, Mapping):
                normalized[resource_id] = body
                continue
            body = dict(body)
            declared_id = body.setdefault("id", resource_id)
            if declared_id != resource_id:
                raise ValueError(
                    f"resource '{resource_id}' declares a different id '{declared_id}'"
                )
            if "deployNew" not in body and "conditional" not in body:
                if default is None:
                    raise ValueError(
                        f"resource '{resource_id}' must set deployNew "
                        "(no defaultDeployNew declared)"
                    )
                body["deployNew"] = default
            normalized[resource_id] = body
        return {**data, "resources": normalized}


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class PlanStep:
    """One resource's planned action with its resolved parameter snapshot."""

    resource_id: str
    kind: ResourceKind
    action: PlanAction
    parameters: dict[str, Any]
    parameter_hash: str | None
    depends_on: tuple[str, ...] = ()
    external_id: str | None = None
    prior_hash: str | None = None
    prior_outputs: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def is_deferred(self) -> bool:
        """Whether some inputs are only known after dependencies apply."""
        return contains_deferred(self.parameters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "kind": self.kind.value,
            "action": self.action.value,
            "reason": self.reason,
            "dependsOn": list(self.depends_on),
            "parameterHash": self.parameter_hash,
            "parameters": to_display(self.parameters),
        }


@dataclass(frozen=True)
class Plan:
    """Ordered plan, one step per resource, in topological order."""

    steps: tuple[PlanStep, ...] = ()

    @property
    def order(self) -> list[str]:
        return [step.resource_id for step in self.steps]

    def step(self, resource_id: str) -> PlanStep:
        for step in self.steps:
            if step.resource_id == resource_id:
                return step
        raise KeyError(resource_id)

    def counts(self) -> dict[str, int]:
        """Number of steps per action."""
        counts = {action.value: 0 for action in PlanAction}
        for step in self.steps:
            counts[step.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(step.action.calls_backend for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "summary": self.counts(),
            "steps": [step.to_dict() for step in self.steps],
        }


# =============================================================================
# Persisted state
# =============================================================================


class ApplyRecord(BaseModel):
    """Last applied state of a resource, persisted across runs.

    ``parameter_hash``, ``outputs`` and ``committed_at`` change only after a
    successful apply; ``status`` and ``error`` also track pending and failed
    attempts.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_id: str = Field(alias="resourceId")
    kind: ResourceKind
    external_id: str | None = Field(None, alias="externalId")
    parameter_hash: str | None = Field(None, alias="parameterHash")
    outputs: dict[str, Any] = Field(default_factory=dict)
    status: ApplyStatus = ApplyStatus.PENDING
    error: str | None = None
    committed_at: datetime | None = Field(None, alias="committedAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="updatedAt")

    @property
    def is_committed(self) -> bool:
        """Whether this resource has ever been applied or adopted successfully."""
        return self.committed_at is not None

    @property
    def succeeded(self) -> bool:
        return self.status == ApplyStatus.SUCCEEDED

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
