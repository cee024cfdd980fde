import pytest

from podidentity_mic.models import (
    BEHAVIOR_KEY,
    BEHAVIOR_NAMESPACED,
    CRD_LABEL_KEY,
    AssignedIDState,
    AzureIdentity,
    AzureIdentityBinding,
    IdentityType,
    ObjectMeta,
    Pod,
)
from podidentity_mic.planning import (
    NodeTracking,
    assigned_id_name,
    convert_id_list_to_map,
    desired_assigned_identities,
    id_key,
    identities_to_create,
    identities_to_delete,
    identities_to_update,
    identity_assignment_diff,
    make_assigned_id,
    match_assigned_id,
    split_by_node,
    unique_ids,
)

TEST_RESOURCE_ID = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourcegroups/rg/providers/"
    "Microsoft.ManagedIdentity/userAssignedIdentities/identity1"
)


def make_identity(name, ns="default", rid=TEST_RESOURCE_ID, client_id="cid", rv="", type_=IdentityType.USER_ASSIGNED_MSI, annotations=None):
    return AzureIdentity(
        metadata=ObjectMeta(name=name, namespace=ns, resource_version=rv, annotations=annotations or {}),
        type=type_,
        resource_id=rid,
        client_id=client_id,
    )


def make_binding(name, ns, id_name, selector, rv=""):
    return AzureIdentityBinding(
        metadata=ObjectMeta(name=name, namespace=ns, resource_version=rv),
        azure_identity=id_name,
        selector=selector,
    )


def make_pod(name, ns, node, selector):
    labels = {CRD_LABEL_KEY: selector} if selector else {}
    return Pod(name=name, namespace=ns, node_name=node, labels=labels)


def assignment(pod="test-pod", node="test-node", id_rv="", binding_rv="", status=None):
    a = make_assigned_id(
        make_identity("test-id", rv=id_rv),
        make_binding("testbinding", "default", "test-id", "sel", rv=binding_rv),
        pod,
        "default",
        node,
        False,
    )
    a.status = status
    return a


# carried over from the source's identity map test
ID_LIST = [
    make_identity("testazid1", "default"),
    make_identity("testazid2", "ns00"),
    make_identity("testazid3", "default", rid="testResourceID"),
    make_identity("testazid5", "default", rid="", client_id="clientid", type_=IdentityType.SERVICE_PRINCIPAL),
]


@pytest.mark.parametrize(
    "name,ns,should_exist",
    [
        ("testazid1", "default", True),
        ("testazid2", "ns00", True),
        ("testazid3", "default", False),
        ("testazid4", "default", False),
        ("testazid1", "ns00", False),
        ("testazid5", "default", True),
    ],
)
def test_convert_id_list_to_map(name, ns, should_exist):
    id_map = convert_id_list_to_map(ID_LIST)
    found = id_map.get(id_key(ns, name))
    assert (found is not None) == should_exist
    if should_exist:
        assert (found.name, found.namespace) == (name, ns)


@pytest.mark.parametrize(
    "current,desired,expected",
    [
        ({"node-0": {"id-0"}}, {"node-0": {"id-0"}}, {}),
        (
            {"node-1": {"id-1"}},
            {"node-0": {"id-0"}, "node-1": {"id-0", "id-1"}},
            {"node-0": ["id-0"], "node-1": ["id-0"]},
        ),
        (None, {"node-0": {"id-0"}}, {"node-0": ["id-0"]}),
        ({"node-0": {"id-0"}}, None, {}),
    ],
)
def test_identity_assignment_diff(current, desired, expected):
    assert identity_assignment_diff(current, desired) == expected


def test_id_key_and_assigned_name():
    assert id_key("ns", "name") == "ns/name"
    assert assigned_id_name("test-pod", "default", "test-id") == "test-pod-default-test-id"


def test_make_assigned_id_fields():
    identity = make_identity("test-id", ns="idns")
    binding = make_binding("testbinding", "default", "test-id", "sel")
    a = make_assigned_id(identity, binding, "test-pod", "default", "test-node", False)
    assert a.name == "test-pod-default-test-id"
    assert a.namespace == "default"
    assert a.metadata.labels == {"nodename": "test-node"}
    assert a.available_replicas == 1
    assert a.status is None
    assert a.identity == identity and a.identity is not identity
    assert a.binding.name == "testbinding"


def test_make_assigned_id_namespaced_uses_identity_namespace():
    identity = make_identity("test-id", ns="idns")
    binding = make_binding("b", "idns", "test-id", "sel")
    assert make_assigned_id(identity, binding, "p", "idns", "n", True).namespace == "idns"
    annotated = make_identity("x", ns="other", annotations={BEHAVIOR_KEY: BEHAVIOR_NAMESPACED})
    assert make_assigned_id(annotated, binding, "p", "idns", "n", False).namespace == "other"


def test_match_assigned_id():
    assert match_assigned_id(assignment(), assignment())
    assert not match_assigned_id(assignment(), assignment(id_rv="rv2"))
    assert not match_assigned_id(assignment(), assignment(binding_rv="rv2"))
    assert not match_assigned_id(assignment(), assignment(node="other"))
    assert not match_assigned_id(assignment(), assignment(pod="other"))


def test_desired_assigned_identities_basic():
    id_map = convert_id_list_to_map([make_identity("test-id")])
    bindings = [make_binding("testbinding", "default", "test-id", "test-select")]
    pods = [
        make_pod("test-pod", "default", "test-node", "test-select"),
        make_pod("no-node", "default", "", "test-select"),
        make_pod("no-label", "default", "other-node", ""),
        make_pod("no-match", "default", "third-node", "unknown"),
    ]
    desired, refs = desired_assigned_identities(pods, bindings, id_map, False)
    assert list(desired) == ["test-pod-default-test-id"]
    a = desired["test-pod-default-test-id"]
    assert (a.pod, a.pod_namespace, a.node_name) == ("test-pod", "default", "test-node")
    assert a.binding.name == "testbinding"
    assert a.identity.name == "test-id"
    assert refs == {"test-node"}


def test_desired_missing_identity_still_refs_node():
    bindings = [make_binding("b", "default", "gone", "sel")]
    desired, refs = desired_assigned_identities([make_pod("p", "default", "n1", "sel")], bindings, {}, False)
    assert desired == {}
    assert refs == {"n1"}


def test_desired_namespaced_mode_requires_matching_namespaces():
    id_map = convert_id_list_to_map([make_identity("test-id1", "default"), make_identity("test-id1", "default2")])
    bindings = [
        make_binding("testbinding1", "default", "test-id1", "test-select1"),
        make_binding("testbinding1", "default2", "test-id1", "test-select1"),
    ]
    pods = [
        make_pod("test-pod1", "default", "test-node1", "test-select1"),
        make_pod("test-pod2", "default2", "test-node1", "test-select1"),
    ]
    desired, _ = desired_assigned_identities(pods, bindings, id_map, True)
    assert set(desired) == {"test-pod1-default-test-id1", "test-pod2-default2-test-id1"}
    assert desired["test-pod1-default-test-id1"].namespace == "default"
    assert desired["test-pod2-default2-test-id1"].namespace == "default2"


def test_desired_duplicate_identity_name_keeps_first():
    id_map = convert_id_list_to_map([make_identity("dup", "a", client_id="ca"), make_identity("dup", "b", client_id="cb")])
    bindings = [make_binding("bind", "b", "dup", "sel"), make_binding("bind", "a", "dup", "sel")]
    desired, _ = desired_assigned_identities([make_pod("p", "a", "n", "sel")], bindings, id_map, False)
    assert list(desired) == ["p-a-dup"]
    assert desired["p-a-dup"].identity.client_id == "ca"


def test_identities_to_create():
    new = {"x": assignment()}
    assert identities_to_create({}, new) == new
    stuck = assignment(status=AssignedIDState.CREATED)
    result = identities_to_create({"x": stuck}, new)
    assert result["x"] is stuck
    done = assignment(status=AssignedIDState.ASSIGNED)
    assert identities_to_create({"x": done}, new) == {}
    changed = {"x": assignment(id_rv="rv2")}
    assert identities_to_create({"x": done}, changed)["x"].identity.resource_version == "rv2"


def test_identities_to_delete():
    old = {"x": assignment(), "y": assignment(pod="gone")}
    assert identities_to_delete({}, {"x": assignment()}) == {}
    assert identities_to_delete(old, {}) == old
    assert set(identities_to_delete(old, {"x": assignment()})) == {"y"}
    assert set(identities_to_delete(old, {"x": assignment(id_rv="new")})) == {"x", "y"}


def test_identities_to_update_moves_entries():
    existing = assignment()
    existing.metadata.resource_version = "objrv"
    updated = assignment(id_rv="rv2")
    add = {"x": updated, "a": assignment(pod="a")}
    delete = {"x": existing, "d": assignment(pod="d")}
    before, after = identities_to_update(add, delete)
    assert before == {"x": existing}
    assert after["x"].identity.resource_version == "rv2"
    assert after["x"].metadata.resource_version == "objrv"
    assert set(add) == {"a"}
    assert set(delete) == {"d"}


def test_identities_to_update_empty():
    add = {"x": assignment()}
    assert identities_to_update(add, {}) == ({}, {})
    assert set(add) == {"x"}


def test_split_by_node():
    add = {"a": assignment(pod="a", node="n1")}
    delete = {"d": assignment(pod="d", node="n1"), "e": assignment(pod="e", node="n2")}
    update = {"u": assignment(pod="u", node="n3")}
    node_map = split_by_node(add, delete, update)
    assert set(node_map) == {"n1", "n2", "n3"}
    assert [a.pod for a in node_map["n1"].assigned_ids_to_create] == ["a"]
    assert [a.pod for a in node_map["n1"].assigned_ids_to_delete] == ["d"]
    assert [a.pod for a in node_map["n2"].assigned_ids_to_delete] == ["e"]
    assert [a.pod for a in node_map["n3"].assigned_ids_to_update] == ["u"]


def test_unique_ids():
    assert unique_ids(["a", "b", "a", "c", "b"]) == ["a", "b", "c"]
    assert unique_ids([]) == []


def test_node_tracking_merge():
    first = NodeTracking(add_user_assigned_msi_ids=["r1"], assigned_ids_to_create=[assignment(pod="a")])
    second = NodeTracking(
        add_user_assigned_msi_ids=["r2"],
        remove_user_assigned_msi_ids=["r3"],
        assigned_ids_to_delete=[assignment(pod="d")],
        is_vmss=True,
    )
    first.merge(second)
    assert first.add_user_assigned_msi_ids == ["r1", "r2"]
    assert first.remove_user_assigned_msi_ids == ["r3"]
    assert [a.pod for a in first.assigned_ids_to_create] == ["a"]
    assert [a.pod for a in first.assigned_ids_to_delete] == ["d"]
    assert first.is_vmss is True