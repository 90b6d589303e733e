from secretsync.diff import diff
from secretsync.model import (
    Payload,
    PlanItem,
    RemoteSecretState,
    SecretDocument,
)


def document(name, **values):
    payload = Payload(values)
    return SecretDocument(name, payload, "sha256:source")


def remote(name, version, **values):
    return RemoteSecretState(name, version, Payload(values).checksum())


def actions(plan):
    return [(item.action, item.name) for item in plan]


def test_empty_inputs_give_empty_plan():
    assert diff([], []) == []


def test_plan_is_ordered_by_phase_then_name():
    desired = [
        document("z-new", a="1"),
        document("a-new", a="1"),
        document("changed", a="2"),
        document("same", a="1"),
    ]
    observed = [
        remote("same", "1", a="1"),
        remote("changed", "4", a="1"),
        remote("gone-b", "1", a="1"),
        remote("gone-a", "1", a="1"),
    ]
    plan = diff(desired, observed, prune_unmanaged=True)
    assert actions(plan) == [
        ("create", "a-new"),
        ("create", "z-new"),
        ("update", "changed"),
        ("delete", "gone-a"),
        ("delete", "gone-b"),
        ("noop", "same"),
    ]


def test_plan_does_not_depend_on_input_order():
    desired = [document("b", a="1"), document("a", a="2")]
    observed = [remote("b", "1", a="0"), remote("c", "1")]
    forward = diff(desired, observed, prune_unmanaged=True)
    backward = diff(desired[::-1], observed[::-1], prune_unmanaged=True)
    assert actions(forward) == actions(backward)


def test_update_carries_observed_version_and_checksums():
    doc = document("app", password="new")
    state = remote("app", "7", password="old")
    [item] = diff([doc], [state])
    assert item.action == PlanItem.UPDATE
    assert item.expected_version == "7"
    assert item.checksum_before == state.checksum
    assert item.checksum_after == doc.checksum
    assert item.payload is doc.payload


def test_create_has_no_expected_version():
    [item] = diff([document("app", a="b")], [])
    assert item.action == PlanItem.CREATE
    assert item.expected_version is None
    assert item.checksum_before is None


def test_unknown_remote_checksum_means_update():
    state = RemoteSecretState("app", "3", None)
    [item] = diff([document("app", a="b")], [state])
    assert item.action == PlanItem.UPDATE


def test_unmanaged_secrets_are_kept_without_prune():
    plan = diff([], [remote("foreign", "1", a="b")])
    assert plan == []


def test_unmanaged_secrets_are_deleted_with_prune():
    [item] = diff([], [remote("foreign", "2", a="b")], prune_unmanaged=True)
    assert item.action == PlanItem.DELETE
    assert item.expected_version == "2"
    assert item.payload is None


def test_protected_names_are_never_pruned(output):
    plan = diff([], [remote("broken", "1"), remote("foreign", "1")],
                prune_unmanaged=True, protected={"broken"})
    assert actions(plan) == [("delete", "foreign")]
    assert output.backend.output == (
        "WARNING: not pruning broken: its source document failed to load\n")


def test_accepts_mappings():
    plan = diff({"app": document("app", a="b")},
                {"app": remote("app", "1", a="b")})
    assert actions(plan) == [("noop", "app")]


def test_names_below_protected_prefixes_are_never_pruned(output):
    plan = diff([], [remote("app/dev", "1"), remote("app/db/main", "1"),
                     remote("application", "1")],
                prune_unmanaged=True, protected_prefixes={"app/"})
    assert actions(plan) == [("delete", "application")]
    assert output.backend.output == (
        "WARNING: not pruning app/db/main: its source directory could not "
        "be read\n"
        "WARNING: not pruning app/dev: its source directory could not "
        "be read\n")


def test_empty_protected_prefix_protects_everything():
    plan = diff([], [remote("a", "1"), remote("b/c", "1")],
                prune_unmanaged=True, protected_prefixes={""})
    assert plan == []
