"""Interfaces of the collaborators the controller talks to, and an in-memory node store."""

from __future__ import annotations

import threading
from typing import Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    AssignedIDState,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    Node,
    NodeNotFoundError,
    Pod,
)


@runtime_checkable
class NodeGetter(Protocol):
    """Source of cluster node details."""

    def get(self, name: str) -> Node:
        """Return the named node or raise NodeNotFoundError."""
        ...

    def start(self, exit_event: threading.Event) -> None:
        """Begin keeping node data current until exit_event is set."""
        ...


@runtime_checkable
class CRDClient(Protocol):
    """Access to the identity, binding and assigned-identity resources."""

    def start(self, exit_event: threading.Event) -> None: ...

    def sync_cache_all(self, exit_event: threading.Event, initial: bool) -> None: ...

    def list_bindings(self) -> list[AzureIdentityBinding]: ...

    def list_ids(self) -> list[AzureIdentity]: ...

    def list_assigned_ids(self) -> list[AzureAssignedIdentity]: ...

    def list_assigned_ids_in_map(self) -> dict[str, AzureAssignedIdentity]: ...

    def create_assigned_identity(self, assigned_id: AzureAssignedIdentity) -> None: ...

    def remove_assigned_identity(self, assigned_id: AzureAssignedIdentity) -> None: ...

    def update_assigned_identity(self, assigned_id: AzureAssignedIdentity) -> None: ...

    def update_assigned_identity_status(
        self, assigned_id: AzureAssignedIdentity, status: AssignedIDState
    ) -> None: ...

    def upgrade_all(self) -> None: ...


@runtime_checkable
class CloudClient(Protocol):
    """Operations on the user-assigned identities of VMs and scale sets."""

    def init(self) -> None:
        """Reload the cloud configuration."""
        ...

    def get_cluster_identity(self) -> str: ...

    def get_user_msis(self, name: str, is_vmss: bool) -> list[str]: ...

    def update_user_msi(
        self,
        add: Sequence[str],
        remove: Optional[Sequence[str]],
        name: str,
        is_vmss: bool,
    ) -> None: ...


@runtime_checkable
class PodClient(Protocol):
    """Source of the pods running in the cluster."""

    def start(self, exit_event: threading.Event) -> None: ...

    def get_pods(self) -> list[Pod]: ...


@runtime_checkable
class EventRecorder(Protocol):
    """Sink for events attached to cluster objects."""

    def event(self, obj: object, event_type: str, reason: str, message: str) -> None: ...


@runtime_checkable
class ConfigMapClient(Protocol):
    """Access to config maps in one namespace; data is a plain string mapping."""

    def get(self, name: str) -> dict[str, str]:
        """Return the data of the named config map or raise LookupError."""
        ...

    def create(self, name: str) -> dict[str, str]:
        """Create an empty config map and return its data."""
        ...

    def update(self, name: str, data: Mapping[str, str]) -> None: ...


class InMemoryNodeClient:
    """Thread-safe node store satisfying NodeGetter."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, Node] = {node.name: node for node in nodes}
        self._synced = False

    def get(self, name: str) -> Node:
        with self._lock:
            try:
                return self._nodes[name]
            except KeyError:
                raise NodeNotFoundError(name) from None

    def add(self, node: Node) -> None:
        """Add the node, replacing any node of the same name."""
        with self._lock:
            self._nodes[node.name] = node

    def delete(self, name: str) -> None:
        """Forget the node; unknown names are ignored."""
        with self._lock:
            self._nodes.pop(name, None)

    def start(self, exit_event: threading.Event) -> None:
        """Mark the store as synchronised unless exit was already requested."""
        with self._lock:
            if not exit_event.is_set():
                self._synced = True