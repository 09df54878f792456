"""Declaration file loading with validation.

A declaration file is either flat or Kubernetes-style::

    apiVersion: infragraph/v1
    kind: DeclarationSet
    spec:
      defaultDeployNew: true
      include: [modules/apps.yaml]
      resources: {...}

Included files are resolved relative to the including file and flattened
into one resource mapping. An included file without its own
``defaultDeployNew`` inherits the includer's.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import (
    MAX_DECLARATION_FILE_SIZE_BYTES,
    MAX_INCLUDE_DEPTH,
    MAX_RESOURCES_PER_DECLARATION_SET,
)
from .models import DeclarationSet, ResourceSpec

logger = logging.getLogger(__name__)

DECLARATION_KIND = "DeclarationSet"


class SpecLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def load_declarations(path: Path) -> dict[str, ResourceSpec]:
    """Load and validate a declaration file with all of its includes.

    Args:
        path: Root declaration file.

    Returns:
        Resource specs keyed by resource id.

    Raises:
        SpecLoadError: If any file cannot be loaded, fails validation,
            includes itself, or redeclares a resource id.
    """
    resources: dict[str, ResourceSpec] = {}
    origins: dict[str, Path] = {}
    _load_into(path, resources, origins, stack=[], inherited_default=None)

    if len(resources) > MAX_RESOURCES_PER_DECLARATION_SET:
        raise SpecLoadError(
            f"Declarations define {len(resources)} resources, maximum is "
            f"{MAX_RESOURCES_PER_DECLARATION_SET}"
        )

    logger.info(
        "Loaded declarations",
        extra={
            "path": str(path),
            "resource_count": len(resources),
            "file_count": len(set(origins.values())),
        },
    )
    return resources


def _load_into(
    path: Path,
    resources: dict[str, ResourceSpec],
    origins: dict[str, Path],
    stack: list[Path],
    inherited_default: bool | None,
) -> None:
    resolved = path.resolve()
    if resolved in stack:
        chain = " -> ".join(str(p) for p in [*stack, resolved])
        raise SpecLoadError(f"Include cycle detected: {chain}")
    if len(stack) > MAX_INCLUDE_DEPTH:
        raise SpecLoadError(f"Include depth exceeds {MAX_INCLUDE_DEPTH} at {path}")

    spec_data = _read_spec_section(path)
    if "defaultDeployNew" not in spec_data and inherited_default is not None:
        spec_data = {**spec_data, "defaultDeployNew": inherited_default}

    declaration_set = _validate(path, spec_data)

    for resource_id, spec in declaration_set.resources.items():
        if resource_id in resources:
            raise SpecLoadError(
                f"Resource '{resource_id}' is declared in both {origins[resource_id]} and {path}"
            )
        resources[resource_id] = spec
        origins[resource_id] = path

    for include in declaration_set.include:
        include_path = Path(include)
        if include_path.is_absolute():
            raise SpecLoadError(f"Includes must be relative paths: '{include}' in {path}")
        logger.debug(
            "Loading included declarations",
            extra={"path": str(path), "include": include},
        )
        _load_into(
            path.parent / include_path,
            resources,
            origins,
            stack=[*stack, resolved],
            inherited_default=declaration_set.default_deploy_new,
        )


def _read_spec_section(path: Path) -> dict[str, Any]:
    """Read one YAML file and return its declaration section."""
    if not path.exists():
        raise SpecLoadError(f"Declaration file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Declaration file exceeds maximum size of {MAX_DECLARATION_FILE_SIZE_BYTES} "
            f"bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Declaration file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind", DECLARATION_KIND)
        if kind != DECLARATION_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {path}, expected {DECLARATION_KIND}")
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def _validate(path: Path, spec_data: dict[str, Any]) -> DeclarationSet:
    try:
        return DeclarationSet.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e
