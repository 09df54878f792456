"""Resource backend contract and the Azure Resource Manager implementation.

The executor only sees ``ResourceBackend``: create / read / update per
resource kind, each failing with either a transient error (retried with
backoff) or a permanent one (fails the resource immediately).

The Azure backend drives ARM generic resource operations, so one code path
covers every kind; a kind only contributes its resource type, API version
and the outputs worth exposing to dependents.

SECURITY: Credentials come from security.get_managed_identity_credential();
this module never reads secrets itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, Sku

from .models import ResourceKind

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

logger = logging.getLogger(__name__)

# HTTP status codes that are worth retrying (throttling, timeouts, server side)
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# ARM error codes that are retryable regardless of status code
TRANSIENT_ERROR_CODES = frozenset({"AnotherOperationInProgress", "RetryableError"})

# Parameter keys that form the ARM resource envelope; everything else goes
# into "properties"
ENVELOPE_KEYS = frozenset({"name", "location", "tags", "sku", "identity", "armKind"})


class BackendError(Exception):
    """Base class for backend failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientBackendError(BackendError):
    """Failure expected to succeed on retry (throttling, timeout)."""

    pass


class PermanentBackendError(BackendError):
    """Failure that retrying cannot fix (validation, permission)."""

    pass


class ResourceBackend(ABC):
    """Opaque resource backend.

    Implementations must be safe to retry after a transient failure.
    """

    @abstractmethod
    def create(self, kind: ResourceKind, parameters: Mapping[str, Any]) -> dict[str, Any]:
        """Create the resource and return its outputs (including ``id``)."""

    @abstractmethod
    def read(self, kind: ResourceKind, external_id: str) -> dict[str, Any]:
        """Read an existing resource's outputs."""

    @abstractmethod
    def update(
        self, kind: ResourceKind, external_id: str, parameters: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Update the resource and return its outputs."""


@dataclass(frozen=True)
class ArmResourceType:
    """ARM mapping for one resource kind."""

    resource_type: str
    api_version: str
    # Output name -> dotted path inside the resource's "properties"
    outputs: dict[str, str] = field(default_factory=dict)


ARM_RESOURCE_TYPES: dict[ResourceKind, ArmResourceType] = {
    ResourceKind.STORAGE_ACCOUNT: ArmResourceType(
        resource_type="Microsoft.Storage/storageAccounts",
        api_version="2023-05-01",
        outputs={
            "endpoint": "primaryEndpoints.blob",
            "primaryEndpoints": "primaryEndpoints",
        },
    ),
    ResourceKind.DATABASE_ACCOUNT: ArmResourceType(
        resource_type="Microsoft.DocumentDB/databaseAccounts",
        api_version="2024-05-15",
        outputs={"endpoint": "documentEndpoint"},
    ),
    ResourceKind.COMPUTE_SERVICE: ArmResourceType(
        resource_type="Microsoft.App/containerApps",
        api_version="2024-03-01",
        outputs={
            "fqdn": "configuration.ingress.fqdn",
            "latestRevisionFqdn": "latestRevisionFqdn",
            "outboundIpAddresses": "outboundIpAddresses",
        },
    ),
    ResourceKind.ENVIRONMENT: ArmResourceType(
        resource_type="Microsoft.App/managedEnvironments",
        api_version="2024-03-01",
        outputs={"defaultDomain": "defaultDomain", "staticIp": "staticIp"},
    ),
}


def classify_azure_error(error: Exception, operation: str) -> BackendError:
    """Map an Azure SDK exception to a transient or permanent backend error.

    Args:
        error: Exception raised by the Azure SDK.
        operation: Human-readable operation name for the message.

    Returns:
        The classified BackendError (not raised).
    """
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientBackendError(f"{operation}: network error: {error}")

    if isinstance(error, HttpResponseError):
        status_code = error.status_code
        error_code = getattr(error.error, "code", None) if error.error is not None else None
        message = f"{operation}: HTTP {status_code} {error_code or ''}: {error.message}".strip()
        if status_code in TRANSIENT_STATUS_CODES or error_code in TRANSIENT_ERROR_CODES:
            return TransientBackendError(message, status_code=status_code)
        return PermanentBackendError(message, status_code=status_code)

    return PermanentBackendError(f"{operation}: {type(error).__name__}: {error}")


def _walk(data: Any, path: str) -> tuple[bool, Any]:
    current = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


class AzureResourceBackend(ResourceBackend):
    """ARM-backed resource backend scoped to one resource group.

    Reserved parameters build the ARM envelope:
        name      resource name (required for create)
        location  defaults to the configured location
        tags, sku, identity
        armKind   the ARM "kind" field (e.g. StorageV2)
    All remaining parameters become the resource's ``properties``.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        resource_group_name: str,
        location: str,
        client: Any | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            credential: Managed identity credential.
            subscription_id: Target subscription.
            resource_group_name: Resource group all resources live in.
            location: Default location for created resources.
            client: Pre-built ResourceManagementClient (tests inject mocks).
        """
        self._subscription_id = subscription_id
        self._resource_group_name = resource_group_name
        self._location = location
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    def resource_id_for(self, kind: ResourceKind, name: str) -> str:
        """Build the ARM resource id for a resource name."""
        arm_type = ARM_RESOURCE_TYPES[kind]
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{self._resource_group_name}"
            f"/providers/{arm_type.resource_type}/{name}"
        )

    def create(self, kind: ResourceKind, parameters: Mapping[str, Any]) -> dict[str, Any]:
        name = parameters.get("name")
        if not isinstance(name, str) or not name:
            raise PermanentBackendError(f"create {kind.value}: parameter 'name' is required")
        return self._put(kind, self.resource_id_for(kind, name), parameters, "create")

    def update(
        self, kind: ResourceKind, external_id: str, parameters: Mapping[str, Any]
    ) -> dict[str, Any]:
        return self._put(kind, external_id, parameters, "update")

    def read(self, kind: ResourceKind, external_id: str) -> dict[str, Any]:
        arm_type = ARM_RESOURCE_TYPES[kind]
        try:
            resource = self._client.resources.get_by_id(external_id, arm_type.api_version)
        except AzureError as e:
            raise classify_azure_error(e, f"read {kind.value}") from e

        logger.debug("Read resource", extra={"kind": kind.value, "external_id": external_id})
        return self._outputs(kind, resource)

    def _put(
        self,
        kind: ResourceKind,
        resource_id: str,
        parameters: Mapping[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        arm_type = ARM_RESOURCE_TYPES[kind]
        body = self._build_resource(parameters)

        logger.info(
            "Submitting resource",
            extra={
                "operation": operation,
                "kind": kind.value,
                "resource_id": resource_id,
                "api_version": arm_type.api_version,
            },
        )

        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, arm_type.api_version, body
            )
            resource = poller.result()
        except AzureError as e:
            raise classify_azure_error(e, f"{operation} {kind.value}") from e

        return self._outputs(kind, resource)

    def _build_resource(self, parameters: Mapping[str, Any]) -> GenericResource:
        properties = {
            key: value for key, value in parameters.items() if key not in ENVELOPE_KEYS
        }
        sku = parameters.get("sku")
        identity = parameters.get("identity")
        return GenericResource(
            location=parameters.get("location") or self._location,
            tags=parameters.get("tags"),
            kind=parameters.get("armKind"),
            sku=Sku.from_dict(sku) if isinstance(sku, Mapping) else None,
            identity=Identity.from_dict(identity) if isinstance(identity, Mapping) else None,
            properties=properties,
        )

    def _outputs(self, kind: ResourceKind, resource: Any) -> dict[str, Any]:
        properties = resource.properties if isinstance(resource.properties, Mapping) else {}
        outputs: dict[str, Any] = {
            "id": resource.id,
            "name": resource.name,
            "location": resource.location,
        }
        if "provisioningState" in properties:
            outputs["provisioningState"] = properties["provisioningState"]

        for output_name, path in ARM_RESOURCE_TYPES[kind].outputs.items():
            found, value = _walk(properties, path)
            if found:
                outputs[output_name] = value
        return outputs
