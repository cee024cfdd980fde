"""Domain objects for pod identities, bindings, assignments, pods and nodes."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

CRD_GROUP = "aadpodidentity.k8s.io"
CRD_LABEL_KEY = "aadpodidbinding"
BEHAVIOR_KEY = "aadpodidentity.k8s.io/Behavior"
BEHAVIOR_NAMESPACED = "namespaced"
VMSS_RESOURCE_TYPE = "virtualMachineScaleSets"

_RESOURCE_PATTERN = re.compile(
    r"subscriptions/([^/]+)/resourceGroups/([^/]+)/providers/([^/]+)/([^/]+)/([^/]+)",
    re.IGNORECASE,
)
_USER_IDENTITY_PATTERN = re.compile(
    r"/subscriptions/[^/]+/resourcegroups/[^/]+/providers/[^/]+/[^/]+/[^/]+",
    re.IGNORECASE,
)


class IdentityType(enum.IntEnum):
    """Kind of credential an AzureIdentity describes."""

    USER_ASSIGNED_MSI = 0
    SERVICE_PRINCIPAL = 1
    SERVICE_PRINCIPAL_CERTIFICATE = 2


class AssignedIDState(str, enum.Enum):
    """Lifecycle state of an AzureAssignedIdentity."""

    CREATED = "Created"
    ASSIGNED = "Assigned"
    UNASSIGNED = "Unassigned"


class EventType(enum.Enum):
    """Cluster events that trigger a sync cycle."""

    POD_CREATED = enum.auto()
    POD_DELETED = enum.auto()
    POD_UPDATED = enum.auto()
    IDENTITY_CREATED = enum.auto()
    IDENTITY_DELETED = enum.auto()
    IDENTITY_UPDATED = enum.auto()
    BINDING_CREATED = enum.auto()
    BINDING_DELETED = enum.auto()
    BINDING_UPDATED = enum.auto()
    EXIT = enum.auto()


class InvalidResourceIDError(ValueError):
    """Raised when a resource or provider ID has an unexpected format."""


class NodeNotFoundError(LookupError):
    """Raised when a node is not known to the cluster."""

    def __init__(self, name: str) -> None:
        super().__init__(f"node {name!r} not found")
        self.name = name


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


class _Named:
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def resource_version(self) -> str:
        return self.metadata.resource_version


@dataclass
class AzureIdentity(_Named):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    type: IdentityType = IdentityType.USER_ASSIGNED_MSI
    resource_id: str = ""
    client_id: str = ""
    tenant_id: str = ""
    ad_resource_id: str = ""
    ad_endpoint: str = ""

    def is_user_assigned(self) -> bool:
        return self.type == IdentityType.USER_ASSIGNED_MSI

    @property
    def namespaced(self) -> bool:
        """Whether the identity is annotated to match pods only in its namespace."""
        return self.metadata.annotations.get(BEHAVIOR_KEY) == BEHAVIOR_NAMESPACED


@dataclass
class AzureIdentityBinding(_Named):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    azure_identity: str = ""
    selector: str = ""


@dataclass
class AzureAssignedIdentity(_Named):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    identity: AzureIdentity = field(default_factory=AzureIdentity)
    binding: AzureIdentityBinding = field(default_factory=AzureIdentityBinding)
    pod: str = ""
    pod_namespace: str = ""
    node_name: str = ""
    status: Optional[AssignedIDState] = None
    available_replicas: int = 0


@dataclass
class Pod:
    name: str
    namespace: str
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Node:
    name: str
    provider_id: str = ""


@dataclass(frozen=True)
class ResourceID:
    subscription_id: str
    resource_group: str
    provider: str
    resource_type: str
    resource_name: str


def parse_resource_id(resource_id: str) -> ResourceID:
    """Parse an Azure resource or provider ID into its parts."""
    match = _RESOURCE_PATTERN.search(resource_id)
    if match is None:
        raise InvalidResourceIDError(
            f"parsing failed for {resource_id}. Invalid resource Id format"
        )
    subscription, group, provider, resource_type, name = match.groups()
    return ResourceID(subscription, group, provider, resource_type, name)


def validate_resource_id(resource_id: str) -> None:
    """Raise InvalidResourceIDError unless the ID names a user-assigned identity."""
    if not _USER_IDENTITY_PATTERN.fullmatch(resource_id):
        raise InvalidResourceIDError(f"invalid resource id: {resource_id!r}")


def sort_bindings(bindings: Iterable[AzureIdentityBinding]) -> list[AzureIdentityBinding]:
    """Return the bindings in a deterministic order."""
    return sorted(bindings, key=lambda b: (b.name, b.namespace))