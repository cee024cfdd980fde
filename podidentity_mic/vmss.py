"""Grouping of nodes by the virtual machine scale set they belong to."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from .models import (
    VMSS_RESOURCE_TYPE,
    InvalidResourceIDError,
    Node,
    NodeNotFoundError,
    ResourceID,
    parse_resource_id,
)


class _Nodes(Protocol):
    def get(self, name: str) -> Node: ...


@dataclass
class VMSSGroup:
    nodes: set[str] = field(default_factory=set)

    def has_node(self, ref: str) -> bool:
        return ref in self.nodes


@dataclass
class VMSSGroupList:
    groups: dict[str, VMSSGroup] = field(default_factory=dict)
    node_index: dict[str, VMSSGroup] = field(default_factory=dict)

    def add_node(self, vmss: str, node: str) -> None:
        group = self.groups.setdefault(vmss, VMSSGroup())
        group.nodes.add(node)
        self.node_index[node] = group

    def get_by_node(self, ref: str) -> Optional[VMSSGroup]:
        """Return the group the node belongs to, if any."""
        return self.node_index.get(ref)

    def get(self, vmss_id: str) -> Optional[VMSSGroup]:
        return self.groups.get(vmss_id)


def make_vmss_id(resource: ResourceID) -> str:
    parts = (resource.subscription_id, resource.resource_group, resource.resource_name)
    return "/".join(part for part in parts if part)


def get_vmss_name(vmss_id: str) -> str:
    return vmss_id.rpartition("/")[2]


def is_vmss(node: Node) -> Optional[str]:
    """Return the VMSS ID of the node, or None if it is not in a scale set."""
    if not node.provider_id:
        return None
    try:
        resource = parse_resource_id(node.provider_id)
    except InvalidResourceIDError:
        raise
    if resource.resource_type != VMSS_RESOURCE_TYPE:
        return None
    return make_vmss_id(resource)


def vmss_from_node_ref(nodes: _Nodes, ref: str) -> Optional[str]:
    """Look up a node and return its VMSS ID; unknown nodes give None."""
    try:
        node = nodes.get(ref)
    except NodeNotFoundError:
        return None
    return is_vmss(node)


def get_vmss_groups(nodes: _Nodes, refs: Iterable[str]) -> VMSSGroupList:
    """Group node references by VMSS ID; nodes outside a VMSS are left out."""
    groups = VMSSGroupList()
    for ref in refs:
        vmss_id = vmss_from_node_ref(nodes, ref)
        if vmss_id is not None:
            groups.add_node(vmss_id, ref)
    return groups


def get_vmss_group_from_possibly_unreferenced_node(
    nodes: _Nodes, groups: VMSSGroupList, ref: str
) -> Optional[VMSSGroup]:
    """Find the node's group, looking the node up and caching it if needed."""
    group = groups.get_by_node(ref)
    if group is not None:
        return group
    vmss_id = vmss_from_node_ref(nodes, ref)
    if vmss_id is None:
        return None
    groups.add_node(vmss_id, ref)
    return groups.get(vmss_id)