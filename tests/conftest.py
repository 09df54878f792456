"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for backend_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from infragraph.models import DeclarationSet, ResourceSpec  # noqa: E402


def build_specs(data: dict[str, Any]) -> dict[str, ResourceSpec]:
    """Validate a declaration mapping into specs keyed by id."""
    return dict(DeclarationSet.model_validate(data).resources)


@pytest.fixture
def example_declarations() -> dict[str, Any]:
    """Hosting environment, storage and two services wired by references."""
    return {
        "defaultDeployNew": True,
        "resources": {
            "env": {
                "kind": "environment",
                "parameters": {"name": "env"},
            },
            "storage": {
                "kind": "storage-account",
                "parameters": {"name": "storage", "sku": {"name": "Standard_LRS"}},
            },
            "backend": {
                "kind": "compute-service",
                "dependsOn": ["env"],
                "parameters": {
                    "name": "backend",
                    "blobUrl": {"ref": "storage.endpoint"},
                },
            },
            "frontend": {
                "kind": "compute-service",
                "dependsOn": ["env"],
                "parameters": {
                    "name": "frontend",
                    "apiBase": "https://${backend.fqdn}/api",
                },
            },
        },
    }


@pytest.fixture
def example_specs(example_declarations: dict[str, Any]) -> dict[str, ResourceSpec]:
    return build_specs(example_declarations)
