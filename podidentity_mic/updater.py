"""Applying a sync cycle's per-node work to the cloud and the cluster."""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Mapping, MutableMapping, Optional

from .models import (
    AssignedIDState,
    AzureAssignedIdentity,
    InvalidResourceIDError,
    NodeNotFoundError,
)
from .planning import NodeTracking, unique_ids
from .protocols import CloudClient, CRDClient, EventRecorder, NodeGetter
from .vmss import (
    VMSSGroupList,
    get_vmss_group_from_possibly_unreferenced_node,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
)

log = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

AssignedIDMap = Mapping[str, AzureAssignedIdentity]


class NodeUpdater:
    """Decides which identities to assign or remove per node and carries that out.

    At most ``create_delete_batch`` cluster requests for one node are in
    flight at any time.
    """

    def __init__(
        self,
        node_client: NodeGetter,
        cloud_client: CloudClient,
        crd_client: CRDClient,
        event_recorder: EventRecorder,
        create_delete_batch: int,
        immutable_user_msis: Optional[Iterable[str]] = None,
    ) -> None:
        if create_delete_batch < 1:
            raise ValueError("create_delete_batch must be at least 1")
        self.node_client = node_client
        self.cloud_client = cloud_client
        self.crd_client = crd_client
        self.event_recorder = event_recorder
        self.create_delete_batch = create_delete_batch
        self.immutable_user_msis = frozenset(immutable_user_msis or ())
        self.stats: Counter[str] = Counter()
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------ checks

    def is_in_use(
        self,
        assigned_id: AzureAssignedIdentity,
        assigned_ids: AssignedIDMap,
        vmss_groups: VMSSGroupList,
    ) -> bool:
        """Whether another pod on the same node or scale set uses the same identity."""
        check = assigned_id.identity
        for other in assigned_ids.values():
            # only user-assigned identities are bound to nodes
            if not check.is_user_assigned():
                continue
            if assigned_id.pod == other.pod:
                continue
            if check.client_id != other.identity.client_id:
                continue
            if assigned_id.node_name == other.node_name:
                return True
            group = get_vmss_group_from_possibly_unreferenced_node(
                self.node_client, vmss_groups, assigned_id.node_name
            )
            # scale-set identities apply to every instance of the set
            if group is not None and group.has_node(other.node_name):
                return True
        return False

    def is_immutable(self, client_id: str) -> bool:
        """Whether the identity must never be removed from nodes."""
        return client_id in self.immutable_user_msis

    # ---------------------------------------------------------------- planning

    def plan_removals(
        self,
        delete_list: AssignedIDMap,
        before_update: AssignedIDMap,
        after_update: AssignedIDMap,
        new_assigned_ids: AssignedIDMap,
        node_map: MutableMapping[str, NodeTracking],
        node_refs: Iterable[str],
    ) -> None:
        """Queue removal of identities no longer used on their nodes."""
        try:
            vmss_groups = get_vmss_groups(self.node_client, node_refs)
        except InvalidResourceIDError as err:
            log.error("failed to get VMSS groups, error: %s", err)
            return
        still_used = {**new_assigned_ids, **after_update}
        for assigned in [*delete_list.values(), *before_update.values()]:
            try:
                self._plan_removal(assigned, still_used, node_map, vmss_groups)
            except InvalidResourceIDError as err:
                log.error("failed to check if identity should be removed, error: %s", err)

    def _plan_removal(
        self,
        assigned: AzureAssignedIdentity,
        still_used: AssignedIDMap,
        node_map: MutableMapping[str, NodeTracking],
        vmss_groups: VMSSGroupList,
    ) -> None:
        in_use = self.is_in_use(assigned, still_used, vmss_groups)
        identity = assigned.identity
        # an empty status is treated as Assigned for backward compatibility
        if assigned.status in (AssignedIDState.ASSIGNED, None):
            if (
                not in_use
                and identity.is_user_assigned()
                and not self.is_immutable(identity.client_id)
            ):
                node_map.setdefault(
                    assigned.node_name, NodeTracking()
                ).remove_user_assigned_msi_ids.append(identity.resource_id)

    def plan_assignments(
        self,
        add_list: AssignedIDMap,
        update_list: AssignedIDMap,
        node_map: MutableMapping[str, NodeTracking],
    ) -> None:
        """Queue user-assigned identities to be added to their nodes."""
        for assigned in [*add_list.values(), *update_list.values()]:
            if assigned.status in (None, AssignedIDState.CREATED) and assigned.identity.is_user_assigned():
                node_map.setdefault(
                    assigned.node_name, NodeTracking()
                ).add_user_assigned_msi_ids.append(assigned.identity.resource_id)

    def consolidate_vmss_nodes(self, node_map: MutableMapping[str, NodeTracking]) -> None:
        """Merge the work of scale-set instances under the scale set's name.

        Nodes no longer in the cluster have their assignments cleaned up and
        are dropped from the map.
        """
        vmss_map: dict[str, list[str]] = {}
        for node_name, tracking in list(node_map.items()):
            try:
                node = self.node_client.get(node_name)
            except NodeNotFoundError as err:
                log.warning(
                    "failed to get node %s while updating user-assigned identities, error: %s",
                    node_name,
                    err,
                )
                self.clean_up_node(node_name, tracking)
                del node_map[node_name]
                continue
            except Exception as err:  # noqa: BLE001 - collaborator failure
                log.error("failed to get node %s, error: %s", node_name, err)
                continue
            try:
                vmss_id = is_vmss(node)
            except InvalidResourceIDError as err:
                log.error("failed to check if node %s is VMSS, error: %s", node_name, err)
                continue
            if vmss_id is not None:
                vmss_map.setdefault(vmss_id, []).append(node_name)

        for vmss_id, members in vmss_map.items():
            merged = NodeTracking(is_vmss=True)
            for member in members:
                merged.merge(node_map.pop(member, NodeTracking()))
            node_map[get_vmss_name(vmss_id)] = merged

    # -------------------------------------------------------------- execution

    def clean_up_node(self, node_name: str, tracking: NodeTracking) -> None:
        """Delete every assignment queued for deletion on a vanished node."""
        log.info("deleting all assigned identities for %s as node not found", node_name)
        for assigned in tracking.assigned_ids_to_delete:
            binding = assigned.binding
            try:
                self.crd_client.remove_assigned_identity(assigned)
            except Exception as err:  # noqa: BLE001
                message = (
                    f"failed to remove AzureIdentityBinding {binding.namespace}/{binding.name} "
                    f"from node {assigned.node_name} for pod {assigned.pod_namespace}/{assigned.pod}, "
                    f"error: {err}"
                )
                self.event_recorder.event(binding, EVENT_WARNING, "binding remove error", message)
                log.error(message)
                continue
            self.event_recorder.event(
                binding,
                EVENT_NORMAL,
                "binding removed",
                f"Binding {binding.name} removed from node {assigned.node_name} for pod {assigned.pod}",
            )

    def update_user_msi(
        self,
        new_assigned_ids: AssignedIDMap,
        node_name: str,
        tracking: NodeTracking,
        node_refs: Iterable[str],
    ) -> None:
        """Create assignments, update the node's identities and settle statuses."""
        node_refs = set(node_refs)
        log.info(
            "processing node %s, add [%d], del [%d], update [%d]",
            node_name,
            len(tracking.assigned_ids_to_create),
            len(tracking.assigned_ids_to_delete),
            len(tracking.assigned_ids_to_update),
        )

        self._run_batch(self._create_record, tracking.assigned_ids_to_create)
        self._run_batch(self._update_record, tracking.assigned_ids_to_update)

        add_ids = unique_ids(tracking.add_user_assigned_msi_ids)
        remove_ids = unique_ids(tracking.remove_user_assigned_msi_ids)
        create_or_update = [*tracking.assigned_ids_to_create, *tracking.assigned_ids_to_update]

        try:
            self.cloud_client.update_user_msi(add_ids, remove_ids, node_name, tracking.is_vmss)
        except Exception as err:  # noqa: BLE001
            log.error(
                "failed to update user-assigned identities on node %s (add [%d], del [%d], "
                "update [%d]), error: %s",
                node_name,
                len(tracking.assigned_ids_to_create),
                len(tracking.assigned_ids_to_delete),
                len(tracking.assigned_ids_to_update),
                err,
            )
            self._recover_from_failure(new_assigned_ids, node_name, tracking, node_refs, create_or_update, err)
            return

        self._run_batch(self._mark_assigned, create_or_update)
        self._run_batch(self._unassign_and_remove, tracking.assigned_ids_to_delete)

        self._count("created", len(tracking.assigned_ids_to_create))
        self._count("updated", len(tracking.assigned_ids_to_update))
        self._count("deleted", len(tracking.assigned_ids_to_delete))

    def _recover_from_failure(
        self,
        new_assigned_ids: AssignedIDMap,
        node_name: str,
        tracking: NodeTracking,
        node_refs: set[str],
        create_or_update: list[AzureAssignedIdentity],
        cause: Exception,
    ) -> None:
        """Settle each assignment by what the node actually holds after a failed update."""
        try:
            on_node = {msi.lower() for msi in self.cloud_client.get_user_msis(node_name, tracking.is_vmss)}
        except Exception as err:  # noqa: BLE001
            log.error(
                "failed to get a list of user-assigned identities from node %s, error: %s",
                node_name,
                err,
            )
            return

        for assigned in create_or_update:
            identity = assigned.identity
            binding = assigned.binding
            is_create = any(assigned is queued for queued in tracking.assigned_ids_to_create)
            if identity.is_user_assigned() and identity.resource_id.lower() not in on_node:
                message = (
                    f"failed to apply binding {binding.namespace}/{binding.name} node "
                    f"{assigned.node_name} for pod {assigned.pod_namespace}/{assigned.pod}, "
                    f"error: {cause}"
                )
                self.event_recorder.event(binding, EVENT_WARNING, "binding apply error", message)
                log.error(message)
                continue
            self.event_recorder.event(
                binding,
                EVENT_NORMAL,
                "binding applied",
                f"binding {binding.name} applied on node {assigned.node_name} for pod {assigned.name}",
            )
            log.info(
                "identity %s/%s has successfully been assigned to node %s",
                identity.namespace,
                identity.name,
                assigned.node_name,
            )
            work = copy.copy(assigned)
            try:
                self.crd_client.update_assigned_identity_status(work, AssignedIDState.ASSIGNED)
            except Exception as err:  # noqa: BLE001
                message = (
                    f"failed to update AzureAssignedIdentity {work.namespace}/{work.name} status to "
                    f"{AssignedIDState.ASSIGNED.value} for pod {work.pod_namespace}/{work.pod}, error: {err}"
                )
                self.event_recorder.event(work, EVENT_WARNING, "status update error", message)
                log.error(message)
            self._count("created" if is_create else "updated", 1)

        for assigned in tracking.assigned_ids_to_delete:
            identity = assigned.identity
            exists_on_node = identity.resource_id.lower() in on_node
            try:
                vmss_groups = get_vmss_groups(self.node_client, node_refs)
                in_use = self.is_in_use(assigned, new_assigned_ids, vmss_groups)
            except InvalidResourceIDError as err:
                log.error("failed to check if identity is in use, error: %s", err)
                continue
            if identity.is_user_assigned() and not in_use and exists_on_node:
                log.error(
                    "failed to remove AzureIdentityBinding %s from node %s for pod %s/%s, error: %s",
                    assigned.binding.name,
                    assigned.node_name,
                    assigned.pod_namespace,
                    assigned.pod,
                    cause,
                )
                continue
            log.info(
                "updating msis on node %s failed, but identity %s/%s has successfully been removed from node",
                assigned.node_name,
                identity.namespace,
                identity.name,
            )
            try:
                self.crd_client.remove_assigned_identity(assigned)
            except Exception as err:  # noqa: BLE001
                log.error("failed to remove AzureAssignedIdentity %s, error: %s", assigned.name, err)
                continue
            log.info("deleted assigned identity %s/%s", assigned.namespace, assigned.name)
            self._count("deleted", 1)

    # ------------------------------------------------------------ batch tasks

    def _create_record(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status is not None:
            return
        work = dataclasses.replace(assigned, status=AssignedIDState.CREATED)
        try:
            self.crd_client.create_assigned_identity(work)
        except Exception as err:  # noqa: BLE001
            message = (
                f"failed to create AzureAssignedIdentity {work.namespace}/{work.name} for pod "
                f"{work.pod_namespace}/{work.pod}, error: {err}"
            )
            self.event_recorder.event(work.binding, EVENT_WARNING, "binding apply error", message)
            log.error(message)

    def _update_record(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status is not None:
            return
        work = dataclasses.replace(assigned, status=AssignedIDState.CREATED)
        try:
            self.crd_client.update_assigned_identity(work)
        except Exception as err:  # noqa: BLE001
            message = (
                f"failed to update AzureAssignedIdentity {work.namespace}/{work.name} for pod "
                f"{work.pod_namespace}/{work.pod}, error: {err}"
            )
            self.event_recorder.event(work.binding, EVENT_WARNING, "binding apply error", message)
            log.error(message)

    def _mark_assigned(self, assigned: AzureAssignedIdentity) -> None:
        work = copy.copy(assigned)
        try:
            self.crd_client.update_assigned_identity_status(work, AssignedIDState.ASSIGNED)
        except Exception as err:  # noqa: BLE001
            message = (
                f"failed to update AzureAssignedIdentity {work.namespace}/{work.name} status to "
                f"{AssignedIDState.ASSIGNED.value} for pod {work.pod}, error: {err}"
            )
            self.event_recorder.event(work, EVENT_WARNING, "status update error", message)
            log.error(message)
            return
        self.event_recorder.event(
            work.binding,
            EVENT_NORMAL,
            "binding applied",
            f"Binding {work.binding.name} applied on node {work.node_name} for pod {work.name}",
        )

    def _unassign_and_remove(self, assigned: AzureAssignedIdentity) -> None:
        work = copy.copy(assigned)
        try:
            # marking Unassigned first lets the next cycle only delete the record
            self.crd_client.update_assigned_identity_status(work, AssignedIDState.UNASSIGNED)
        except Exception as err:  # noqa: BLE001
            message = (
                f"failed to update AzureAssignedIdentity {work.namespace}/{work.name} status to "
                f"{AssignedIDState.UNASSIGNED.value} for pod {work.pod_namespace}/{work.pod}, error: {err}"
            )
            self.event_recorder.event(work, EVENT_WARNING, "status update error", message)
            log.error(message)
            return
        try:
            self.crd_client.remove_assigned_identity(work)
        except Exception as err:  # noqa: BLE001
            log.error(
                "failed to remove AzureAssignedIdentity %s/%s, error: %s", work.namespace, work.name, err
            )
            return
        log.debug("deleted assigned identity %s/%s", work.namespace, work.name)

    def _run_batch(
        self, task: Callable[[AzureAssignedIdentity], None], items: Iterable[AzureAssignedIdentity]
    ) -> None:
        items = list(items)
        if not items:
            return
        with ThreadPoolExecutor(max_workers=self.create_delete_batch) as pool:
            list(pool.map(task, items))

    def _count(self, key: str, amount: int) -> None:
        with self._stats_lock:
            self.stats[key] += amount