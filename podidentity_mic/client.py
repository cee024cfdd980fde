"""The controller that keeps identity assignments in line with pods and bindings."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import (
    AssignedIDState,
    EventType,
    InvalidResourceIDError,
    NodeNotFoundError,
)
from .planning import (
    convert_id_list_to_map,
    desired_assigned_identities,
    identities_to_create,
    identities_to_delete,
    identities_to_update,
    identity_assignment_diff,
    split_by_node,
)
from .protocols import (
    CloudClient,
    ConfigMapClient,
    CRDClient,
    EventRecorder,
    NodeGetter,
    PodClient,
)
from .updater import NodeUpdater
from .vmss import get_vmss_name, is_vmss

log = logging.getLogger(__name__)

DEFAULT_VERSION = "v0.0.0-dev"
_POLL_INTERVAL = 0.05
_STATS_EVERY = 1000


@dataclass
class TypeUpgradeConfig:
    """Whether to upgrade stored resource types, and the config map key recording it."""

    type_upgrade_status_key: str = "type_upgrade_status"
    enable_type_upgrade: bool = False


@dataclass
class ConfigMapConfig:
    """Location of the config map the controller keeps its own state in."""

    namespace: str = ""
    name: str = ""


class MICClient:
    """Runs sync cycles that turn pods, identities and bindings into node assignments."""

    def __init__(
        self,
        *,
        crd_client: CRDClient,
        cloud_client: CloudClient,
        pod_client: PodClient,
        node_client: NodeGetter,
        event_recorder: EventRecorder,
        events: Optional[queue.Queue[EventType]] = None,
        is_namespaced: bool = False,
        sync_retry_interval: float = 3600.0,
        create_delete_batch: int = 20,
        immutable_user_msis: Iterable[str] = (),
        identity_assignment_reconcile_interval: float = 180.0,
        type_upgrade_cfg: Optional[TypeUpgradeConfig] = None,
        cm_cfg: Optional[ConfigMapConfig] = None,
        cm_client: Optional[ConfigMapClient] = None,
        version: str = DEFAULT_VERSION,
        post_work_delay: float = 0.2,
    ) -> None:
        self.crd_client = crd_client
        self.cloud_client = cloud_client
        self.pod_client = pod_client
        self.node_client = node_client
        self.event_recorder = event_recorder
        self.events: queue.Queue[EventType] = events if events is not None else queue.Queue()
        self.is_namespaced = is_namespaced
        self.sync_retry_interval = sync_retry_interval
        self.identity_assignment_reconcile_interval = identity_assignment_reconcile_interval
        self.type_upgrade_cfg = type_upgrade_cfg or TypeUpgradeConfig()
        self.cm_cfg = cm_cfg or ConfigMapConfig()
        self.cm_client = cm_client
        self.version = version
        self.post_work_delay = post_work_delay
        if self.type_upgrade_cfg.enable_type_upgrade and cm_client is None:
            raise ValueError("type upgrade is enabled but no config map client was given")

        immutable = {item.lower() for item in immutable_user_msis}
        # the cluster identity is used for cloud operations and must never be removed
        cluster_identity = cloud_client.get_cluster_identity()
        if cluster_identity:
            immutable.add(cluster_identity)
        self.immutable_user_msis = frozenset(immutable)

        self.updater = NodeUpdater(
            node_client,
            cloud_client,
            crd_client,
            event_recorder,
            create_delete_batch,
            self.immutable_user_msis,
        )
        self.sync_loop_started = False
        self.total_sync_cycles = 0
        self.total_work_done_cycles = 0
        self._sync_lock = threading.Lock()
        self._syncing = False
        self._exit_event = threading.Event()

    def upgrade_type_if_required(self) -> None:
        """Upgrade all stored resources once, recording completion in the config map."""
        cfg = self.type_upgrade_cfg
        if not cfg.enable_type_upgrade or self.cm_client is None:
            return
        name = self.cm_cfg.name
        where = f"{self.cm_cfg.namespace}/{name}"
        try:
            data = self.cm_client.get(name)
        except LookupError:
            try:
                data = self.cm_client.create(name)
            except Exception as err:
                raise RuntimeError(f"failed to create ConfigMap {where}, error: {err}") from err
        except Exception as err:
            raise RuntimeError(f"failed to get ConfigMap {where}, error: {err}") from err

        done_by = data.get(cfg.type_upgrade_status_key)
        if done_by is not None:
            log.info(
                "type upgrade status configmap found from version: %s. Skipping type upgrade!",
                done_by,
            )
            return
        log.info("upgrading the types to work with case sensitive client")
        try:
            self.crd_client.upgrade_all()
        except Exception as err:
            raise RuntimeError(f"failed to upgrade type, error: {err}") from err
        log.info("type upgrade completed")
        updated = dict(data)
        updated[cfg.type_upgrade_status_key] = self.version
        try:
            self.cm_client.update(name, updated)
        except Exception as err:
            raise RuntimeError(
                f"failed to update ConfigMap key {cfg.type_upgrade_status_key}, error: {err}"
            ) from err

    def start(self, exit_event: threading.Event) -> threading.Thread:
        """Start the collaborators, then the sync loop in a background thread."""
        self.upgrade_type_if_required()
        starters = [
            threading.Thread(target=part.start, args=(exit_event,), daemon=True)
            for part in (self.pod_client, self.crd_client, self.node_client)
        ]
        for thread in starters:
            thread.start()
        for thread in starters:
            thread.join()
        sync_thread = threading.Thread(
            target=self.sync, args=(exit_event,), name="mic-sync", daemon=True
        )
        sync_thread.start()
        return sync_thread

    def sync(self, exit_event: threading.Event) -> None:
        """Run sync cycles on events and timers until exit_event is set."""
        with self._sync_lock:
            if self._syncing:
                raise RuntimeError("concurrent syncs")
            self._syncing = True
        self._exit_event = exit_event
        try:
            log.info("sync thread started.")
            self.sync_loop_started = True
            now = time.monotonic()
            next_sync = now + self.sync_retry_interval
            next_reconcile = now + self.identity_assignment_reconcile_interval
            while not exit_event.is_set():
                now = time.monotonic()
                if now >= next_reconcile:
                    next_reconcile = now + self.identity_assignment_reconcile_interval
                    log.debug("reconciling identity assignment on Azure")
                    self.reconcile_identity_assignment()
                    continue
                if now >= next_sync:
                    next_sync = now + self.sync_retry_interval
                    log.debug("running periodic sync loop")
                else:
                    timeout = min(next_sync, next_reconcile, now + _POLL_INTERVAL) - now
                    try:
                        event = self.events.get(timeout=max(timeout, 0.0))
                    except queue.Empty:
                        continue
                    log.debug("received event: %s", event)
                self.sync_cycle()
        finally:
            with self._sync_lock:
                self._syncing = False

    def sync_cycle(self) -> bool:
        """Run one sync cycle; return whether any assignment work was done."""
        self.total_sync_cycles += 1
        begin = time.monotonic()
        self.crd_client.sync_cache_all(self._exit_event, False)

        try:
            pods = self.pod_client.get_pods()
        except Exception as err:  # noqa: BLE001
            log.error("failed to list pods, error: %s", err)
            return False
        try:
            bindings = self.crd_client.list_bindings()
            identities = self.crd_client.list_ids()
            current = self.crd_client.list_assigned_ids_in_map()
        except Exception as err:  # noqa: BLE001
            log.error("failed to list resources, error: %s", err)
            return False
        log.debug(
            "number of bindings: %d, identities: %d, assigned identities: %d",
            len(bindings),
            len(identities),
            len(current),
        )

        id_map = convert_id_list_to_map(identities)
        desired, node_refs = desired_assigned_identities(
            pods, bindings, id_map, self.is_namespaced
        )
        add = identities_to_create(current, desired)
        delete = identities_to_delete(current, desired)
        before_update, after_update = identities_to_update(add, delete)
        log.debug("del: %s, add: %s, update: %s", list(delete), list(add), list(after_update))

        node_map = split_by_node(add, delete, after_update)
        work_done = False
        if delete or before_update:
            work_done = True
            self.updater.plan_removals(
                delete, before_update, after_update, desired, node_map, node_refs
            )
        if add or after_update:
            work_done = True
            self.updater.plan_assignments(add, after_update, node_map)

        self.updater.consolidate_vmss_nodes(node_map)
        if node_map:
            with ThreadPoolExecutor(max_workers=len(node_map)) as pool:
                futures = {
                    name: pool.submit(
                        self.updater.update_user_msi, desired, name, tracking, node_refs
                    )
                    for name, tracking in node_map.items()
                }
            for name, future in futures.items():
                err = future.exception()
                if err is not None:
                    log.error("failed to update node %s, error: %s", name, err)

        if work_done or self.total_sync_cycles % _STATS_EVERY == 0:
            if work_done:
                self.total_work_done_cycles += 1
            log.info(
                "work done: %s. Found %d pods, %d ids, %d bindings",
                work_done,
                len(pods),
                len(identities),
                len(bindings),
            )
            log.info(
                "total work cycles: %d, out of which work was done in: %d, took %.3fs",
                self.total_sync_cycles,
                self.total_work_done_cycles,
                time.monotonic() - begin,
            )
            if work_done and self.post_work_delay > 0:
                # give the cache time to see this cycle's writes
                self._exit_event.wait(self.post_work_delay)
        return work_done

    def generate_identity_assignment_state(
        self,
    ) -> tuple[dict[str, set[str]], dict[str, set[str]], dict[str, bool]]:
        """Current and desired identities per node (or scale set), and which are scale sets."""
        try:
            assigned_ids = self.crd_client.list_assigned_ids()
        except Exception as err:
            raise RuntimeError(f"failed to list AzureAssignedIdentities, error: {err}") from err

        node_cache: dict[str, tuple[str, bool]] = {}
        is_vmss_map: dict[str, bool] = {}
        current: dict[str, set[str]] = {}
        desired: dict[str, set[str]] = {}
        for assigned in assigned_ids:
            if assigned.node_name not in node_cache:
                try:
                    node = self.node_client.get(assigned.node_name)
                except NodeNotFoundError as err:
                    raise RuntimeError(
                        f"failed to get node {assigned.node_name}, error: {err}"
                    ) from err
                try:
                    vmss_id = is_vmss(node)
                except InvalidResourceIDError as err:
                    raise RuntimeError(
                        f"failed to check if node {assigned.node_name} is VMSS, error: {err}"
                    ) from err
                if vmss_id is not None:
                    node_cache[assigned.node_name] = (get_vmss_name(vmss_id), True)
                else:
                    node_cache[assigned.node_name] = (assigned.node_name, False)

            node_name, node_is_vmss = node_cache[assigned.node_name]
            is_vmss_map[node_name] = node_is_vmss

            # Created assignments are still being applied or failing; only Assigned count
            if (
                assigned.status == AssignedIDState.ASSIGNED
                and assigned.identity.is_user_assigned()
            ):
                desired.setdefault(node_name, set()).add(assigned.identity.resource_id)

            if node_name not in current:
                try:
                    on_node = self.cloud_client.get_user_msis(node_name, node_is_vmss)
                except Exception as err:
                    raise RuntimeError(
                        f"failed to get a list of user-assigned identities from node "
                        f"{node_name}, error: {err}"
                    ) from err
                current[node_name] = set(on_node)
        return current, desired, is_vmss_map

    def reconcile_identity_assignment(self) -> dict[str, list[str]]:
        """Assign identities that assignments say a node should hold but it lacks.

        Returns the identities that were to be assigned per node.
        """
        try:
            current, desired, is_vmss_map = self.generate_identity_assignment_state()
        except RuntimeError as err:
            log.error("failed to generate identity assignment state, error: %s", err)
            return {}
        diff = identity_assignment_diff(current, desired)
        for node_name, to_assign in diff.items():
            log.info("reconciling identity assignment for %s on node %s", to_assign, node_name)
            try:
                self.cloud_client.update_user_msi(
                    to_assign, None, node_name, is_vmss_map.get(node_name, False)
                )
            except Exception as err:  # noqa: BLE001
                log.error(
                    "failed to update user-assigned identities on node %s, error: %s",
                    node_name,
                    err,
                )
        return diff