# podidentity-mic

This package is a managed identity controller. It reads pods, identity
definitions (`AzureIdentity`) and identity bindings (`AzureIdentityBinding`).
From these it works out which identities each pod should hold. It then keeps
two things in step with that result:

- the `AzureAssignedIdentity` records in the cluster, which it creates,
  updates and removes, and
- the user-assigned identities attached to each node or virtual machine
  scale set in the cloud.

It is a library. You supply the clients that talk to your cluster and your
cloud, and the controller plans and reconciles through them.

## Installing

```
pip install .
```

The package needs only the standard library. To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `podidentity_mic.models` holds the data types and helpers:
  - the data types `ObjectMeta`, `AzureIdentity`, `AzureIdentityBinding`,
    `AzureAssignedIdentity`, `Pod`, `Node` and `ResourceID`;
  - the enums `IdentityType`, `AssignedIDState` and `EventType`;
  - the helpers `parse_resource_id`, `validate_resource_id` and
    `sort_bindings`;
  - the exceptions `InvalidResourceIDError` and `NodeNotFoundError`.
- `podidentity_mic.vmss` groups nodes by the scale set they belong to. It
  provides `VMSSGroup`, `VMSSGroupList`, `is_vmss`, `vmss_from_node_ref`,
  `get_vmss_groups`, `make_vmss_id`, `get_vmss_name` and
  `get_vmss_group_from_possibly_unreferenced_node`.
- `podidentity_mic.protocols` defines the interfaces the controller uses:
  `NodeGetter`, `CRDClient`, `CloudClient`, `PodClient`, `EventRecorder` and
  `ConfigMapClient`. It also has `InMemoryNodeClient`, a thread-safe node
  store that satisfies `NodeGetter`.
- `podidentity_mic.planning` holds the pure planning steps:
  - `desired_assigned_identities`, `convert_id_list_to_map` and
    `make_assigned_id` work out the desired assignments;
  - `identities_to_create`, `identities_to_delete` and
    `identities_to_update` compare the desired assignments with the
    existing ones;
  - `split_by_node` and `NodeTracking` group the work by node;
  - `match_assigned_id`, `unique_ids`, `identity_assignment_diff`, `id_key`
    and `assigned_id_name` are supporting helpers.
- `podidentity_mic.updater` holds `NodeUpdater`, which applies a plan to
  each node or scale set:
  - `plan_removals` and `plan_assignments` queue identities to remove from
    or add to each node.
  - `consolidate_vmss_nodes` folds the members of a scale set under the
    scale set's name. It also cleans up nodes that no longer exist.
  - `update_user_msi` creates the records, makes one cloud update per node,
    and then sets each record to `Assigned`, or to `Unassigned` before
    removing it. If the cloud update fails, it checks which identities the
    node actually holds and settles each record by that.
  - At most `create_delete_batch` cluster requests for one node run at the
    same time.
- `podidentity_mic.client` holds `MICClient`, `TypeUpgradeConfig` and
  `ConfigMapConfig`.

## Example: working out what to assign

```python
from podidentity_mic.models import (
    AzureIdentity, AzureIdentityBinding, IdentityType, ObjectMeta, Pod,
)
from podidentity_mic.planning import convert_id_list_to_map, desired_assigned_identities

resource_id = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourcegroups/rg"
    "/providers/Microsoft.ManagedIdentity/userAssignedIdentities/identity1"
)
identity = AzureIdentity(
    metadata=ObjectMeta(name="test-id", namespace="default"),
    type=IdentityType.USER_ASSIGNED_MSI,
    resource_id=resource_id,
    client_id="test-client-id",
)
binding = AzureIdentityBinding(
    metadata=ObjectMeta(name="testbinding", namespace="default"),
    azure_identity="test-id",
    selector="test-select",
)
pod = Pod(
    name="test-pod",
    namespace="default",
    node_name="test-node",
    labels={"aadpodidbinding": "test-select"},
)

id_map = convert_id_list_to_map([identity])
assigned, node_refs = desired_assigned_identities([pod], [binding], id_map, namespaced=False)
print(sorted(assigned))   # ['test-pod-default-test-id']
print(node_refs)          # {'test-node'}
```

`convert_id_list_to_map` drops user-assigned identities whose resource ID is
not well formed. A pod is considered only when it has a node and carries an
`aadpodidbinding` label. The label's value must equal a binding's `selector`.

## Example: running the controller

Build an `MICClient` with keyword arguments. It needs `crd_client`,
`cloud_client`, `pod_client`, `node_client` and `event_recorder`, each an
object that satisfies the matching protocol. It also takes these optional
settings:

- `events`, a `queue.Queue` of `EventType`;
- `is_namespaced`;
- `sync_retry_interval` and `identity_assignment_reconcile_interval`, both
  in seconds;
- `create_delete_batch`;
- `immutable_user_msis`, the client IDs that are never removed from nodes
  (the cloud client's cluster identity is always added to them);
- `type_upgrade_cfg`, `cm_cfg` and `cm_client`;
- `version`;
- `post_work_delay`.

There are three ways to run it:

- `sync_cycle()` runs one cycle. It returns whether any work was done.
- `sync(exit_event)` runs cycles until the `threading.Event` is set. A cycle
  runs on every queued event and also every `sync_retry_interval` seconds.
  Every `identity_assignment_reconcile_interval` seconds it also runs
  `reconcile_identity_assignment()`.
- `start(exit_event)` first runs `upgrade_type_if_required()`. It then
  starts the pod, CRD and node clients and runs `sync` in a background
  thread, which it returns.

Each cycle:

1. Lists pods, bindings, identities and existing assigned identities.
2. Computes the desired assigned identities.
3. Splits the difference into create, delete and update work per node, and
   folds scale set members into their scale set.
4. Asks the cloud client to add and remove user-assigned identities, then
   records the resulting states (`Created`, `Assigned`, `Unassigned`) on the
   assigned identity records.

`generate_identity_assignment_state()` uses the assigned identity records
as the source of truth. It returns three values:

- the identities each node or scale set currently holds;
- the identities each one should hold;
- which of them are scale sets.

`reconcile_identity_assignment()` re-attaches the identities that are
missing. It returns them per node.

`upgrade_type_if_required()` runs only when
`TypeUpgradeConfig.enable_type_upgrade` is set. It calls
`crd_client.upgrade_all()` once, then records the version under the
configured key in the config map, so later runs skip the upgrade.

## What this package does not do

The package has no command-line program. It also contains no clients for a
real cluster API or a real cloud: apart from `InMemoryNodeClient`, you must
provide every collaborator yourself. It does not do:

- leader election between controller replicas;
- watching the cloud configuration file;
- exporting metrics.

To run more than one controller replica, or to reload the cloud
configuration, arrange that around `MICClient` yourself.