"""Pure planning steps of a sync cycle: desired state, diffs and per-node work lists."""

from __future__ import annotations

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from .models import (
    CRD_LABEL_KEY,
    AssignedIDState,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    InvalidResourceIDError,
    ObjectMeta,
    Pod,
    sort_bindings,
    validate_resource_id,
)

log = logging.getLogger(__name__)

AssignedIDMap = dict[str, AzureAssignedIdentity]


@dataclass
class NodeTracking:
    """Work to be done on one node or scale set during a sync cycle."""

    add_user_assigned_msi_ids: list[str] = field(default_factory=list)
    remove_user_assigned_msi_ids: list[str] = field(default_factory=list)
    assigned_ids_to_create: list[AzureAssignedIdentity] = field(default_factory=list)
    assigned_ids_to_delete: list[AzureAssignedIdentity] = field(default_factory=list)
    assigned_ids_to_update: list[AzureAssignedIdentity] = field(default_factory=list)
    is_vmss: bool = False

    def merge(self, other: NodeTracking) -> None:
        """Append all of other's work to this tracking list."""
        self.add_user_assigned_msi_ids.extend(other.add_user_assigned_msi_ids)
        self.remove_user_assigned_msi_ids.extend(other.remove_user_assigned_msi_ids)
        self.assigned_ids_to_create.extend(other.assigned_ids_to_create)
        self.assigned_ids_to_delete.extend(other.assigned_ids_to_delete)
        self.assigned_ids_to_update.extend(other.assigned_ids_to_update)
        self.is_vmss = self.is_vmss or other.is_vmss


def id_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def assigned_id_name(pod_name: str, pod_namespace: str, identity_name: str) -> str:
    return f"{pod_name}-{pod_namespace}-{identity_name}"


def match_assigned_id(x: AzureAssignedIdentity, y: AzureAssignedIdentity) -> bool:
    """Whether two assignments refer to the same binding, identity, pod and node versions."""
    return (
        x.binding.name == y.binding.name
        and x.binding.resource_version == y.binding.resource_version
        and x.identity.name == y.identity.name
        and x.identity.resource_version == y.identity.resource_version
        and x.pod == y.pod
        and x.pod_namespace == y.pod_namespace
        and x.node_name == y.node_name
    )


def convert_id_list_to_map(identities: Iterable[AzureIdentity]) -> dict[str, AzureIdentity]:
    """Index identities by namespace/name, dropping user-assigned ones with bad resource IDs."""
    result: dict[str, AzureIdentity] = {}
    for identity in identities:
        if identity.is_user_assigned():
            try:
                validate_resource_id(identity.resource_id)
            except InvalidResourceIDError as err:
                log.error(
                    "ignoring azure identity %s/%s, error: %s",
                    identity.namespace,
                    identity.name,
                    err,
                )
                continue
        result[id_key(identity.namespace, identity.name)] = identity
    return result


def make_assigned_id(
    identity: AzureIdentity,
    binding: AzureIdentityBinding,
    pod_name: str,
    pod_namespace: str,
    node_name: str,
    namespaced: bool,
) -> AzureAssignedIdentity:
    """Build the assignment of an identity to a pod through a binding."""
    identity_copy = copy.deepcopy(identity)
    binding_copy = copy.deepcopy(binding)
    if namespaced or identity_copy.namespaced:
        namespace = identity.namespace
    else:
        # kept as "default" for compatibility with existing assignments
        namespace = "default"
    return AzureAssignedIdentity(
        metadata=ObjectMeta(
            name=assigned_id_name(pod_name, pod_namespace, identity.name),
            namespace=namespace,
            labels={"nodename": node_name},
        ),
        identity=identity_copy,
        binding=binding_copy,
        pod=pod_name,
        pod_namespace=pod_namespace,
        node_name=node_name,
        available_replicas=1,
    )


def desired_assigned_identities(
    pods: Iterable[Pod],
    bindings: Iterable[AzureIdentityBinding],
    id_map: Mapping[str, AzureIdentity],
    namespaced: bool,
) -> tuple[AssignedIDMap, set[str]]:
    """Compute the assignments the cluster should have and the nodes they reference."""
    binding_list = list(bindings)
    node_refs: set[str] = set()
    desired: AssignedIDMap = {}

    for pod in pods:
        if not pod.node_name:
            log.info("pod %s/%s has no assigned node yet. it will be ignored", pod.namespace, pod.name)
            continue
        selector = pod.labels.get(CRD_LABEL_KEY, "")
        if not selector:
            log.info(
                "pod %s/%s doesn't contain %s label field. it will be ignored",
                pod.namespace,
                pod.name,
                CRD_LABEL_KEY,
            )
            continue

        matched = [binding for binding in binding_list if binding.selector == selector]
        if not matched:
            log.info(
                "No AzureIdentityBinding found for pod %s/%s that matches selector: %s. it will be ignored",
                pod.namespace,
                pod.name,
                selector,
            )
            continue
        node_refs.add(pod.node_name)

        for binding in sort_bindings(matched):
            identity = id_map.get(id_key(binding.namespace, binding.azure_identity))
            if identity is None:
                log.info(
                    "%s identity not found when using %s/%s binding",
                    binding.azure_identity,
                    binding.namespace,
                    binding.name,
                )
                continue
            if namespaced or identity.namespaced:
                if not (identity.namespace == binding.namespace == pod.namespace):
                    log.debug(
                        "identity %s/%s matched via binding %s/%s to %s/%s but namespaced "
                        "identity is enforced, so it will be ignored",
                        identity.namespace,
                        identity.name,
                        binding.namespace,
                        binding.name,
                        pod.namespace,
                        pod.name,
                    )
                    continue
            assigned = make_assigned_id(
                identity, binding, pod.name, pod.namespace, pod.node_name, namespaced
            )
            existing = desired.get(assigned.name)
            if existing is not None:
                log.warning(
                    "AzureIdentity %s exists in both %s and %s namespace. Consider renaming "
                    "it or enabling namespaced mode",
                    identity.name,
                    existing.identity.namespace,
                    identity.namespace,
                )
            else:
                desired[assigned.name] = assigned
    return desired, node_refs


def identities_to_create(old: Mapping[str, AzureAssignedIdentity], new: Mapping[str, AzureAssignedIdentity]) -> AssignedIDMap:
    """Assignments to create, including existing ones still stuck in the Created state."""
    if not old:
        return dict(new)
    create: AssignedIDMap = {}
    for name, new_id in new.items():
        old_id = old.get(name)
        matched = old_id is not None and match_assigned_id(old_id, new_id)
        if matched and old_id.status == AssignedIDState.CREATED:
            # assignment to the node was not completed; retry it
            create[name] = old_id
        if not matched:
            create[name] = new_id
    return create


def identities_to_delete(old: Mapping[str, AzureAssignedIdentity], new: Mapping[str, AzureAssignedIdentity]) -> AssignedIDMap:
    """Existing assignments that have no matching desired assignment."""
    if not old:
        return {}
    if not new:
        return dict(old)
    delete: AssignedIDMap = {}
    for name, old_id in old.items():
        new_id = new.get(name)
        if new_id is not None and match_assigned_id(old_id, new_id):
            continue
        delete[name] = old_id
    return delete


def identities_to_update(add: AssignedIDMap, delete: AssignedIDMap) -> tuple[AssignedIDMap, AssignedIDMap]:
    """Move assignments present in both maps out of them into update maps.

    Returns the assignments as they are now and as they should become; the
    latter keep the metadata of the existing object. Entries moved are removed
    from add and delete in place.
    """
    before: AssignedIDMap = {}
    after: AssignedIDMap = {}
    if not add or not delete:
        return before, after
    for name, add_id in list(add.items()):
        del_id = delete.get(name)
        if del_id is None:
            continue
        before[name] = del_id
        after[name] = dataclasses.replace(add_id, metadata=copy.deepcopy(del_id.metadata))
        del add[name]
        del delete[name]
    return before, after


def split_by_node(
    add: Mapping[str, AzureAssignedIdentity],
    delete: Mapping[str, AzureAssignedIdentity],
    update: Mapping[str, AzureAssignedIdentity],
) -> dict[str, NodeTracking]:
    """Group create, delete and update work by node name."""
    node_map: dict[str, NodeTracking] = {}
    for assigned in add.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).assigned_ids_to_create.append(assigned)
    for assigned in delete.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).assigned_ids_to_delete.append(assigned)
    for assigned in update.values():
        node_map.setdefault(assigned.node_name, NodeTracking()).assigned_ids_to_update.append(assigned)
    return node_map


def unique_ids(ids: Iterable[str]) -> list[str]:
    """Drop duplicates, keeping first occurrences in order."""
    return list(dict.fromkeys(ids))


def identity_assignment_diff(
    current_state: Optional[Mapping[str, Iterable[str]]],
    desired_state: Optional[Mapping[str, Iterable[str]]],
) -> dict[str, list[str]]:
    """Identities each node should have but does not, as sorted lists."""
    current = current_state or {}
    diff: dict[str, list[str]] = {}
    for node_name, resource_ids in (desired_state or {}).items():
        present = set(current.get(node_name, ()))
        missing = sorted(set(resource_ids) - present)
        if missing:
            diff[node_name] = missing
    return diff