import mock
import pytest
import requests

from secretsync import (
    ConfigError,
    InvalidPayload,
    NotFound,
    StoreAccessDenied,
    TransientStoreError,
    VersionConflict,
)
from secretsync.config import ConfigSection, ReconcileOptions
from secretsync.engine import ReconcilerEngine
from secretsync.model import ItemResult, Payload, PlanItem
from secretsync.reconcile import reconcile
from secretsync.store.vault import (
    CHECKSUM_KEY,
    CHECKSUM_VERSION_KEY,
    VaultKVStore,
)

ADDRESS = "https://vault.example.com:8200"


def response(status, body=None):
    r = mock.Mock(status_code=status)
    if body is None:
        r.json.side_effect = ValueError("no JSON")
    else:
        r.json.return_value = body
    return r


class FakeVault(object):
    """Just enough of the KV version 2 HTTP API."""

    def __init__(self, mount="secret"):
        self.base = "{}/v1/{}".format(ADDRESS, mount)
        self.secrets = {}
        self.requests = []
        self.fail = []
        # One-off responses for the next request of a (method, kind).
        self.fail_on = {}
        self.deleted = set()

    def __call__(self, method, url, timeout=None, json=None):
        assert url.startswith(self.base)
        kind, _, path = url[len(self.base) + 1:].partition("/")
        self.requests.append((method, kind, path))
        if self.fail:
            error = self.fail.pop(0)
            if isinstance(error, Exception):
                raise error
            return error
        if (method, kind) in self.fail_on:
            return self.fail_on.pop((method, kind))
        return getattr(self, "{}_{}".format(method.lower(), kind))(
            path, json)

    def current(self, path):
        secret = self.secrets.get(path)
        return secret["current_version"] if secret else 0

    def list_metadata(self, path, body):
        prefix = path + "/" if path else ""
        keys = set()
        for name in self.secrets:
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            head, sep, _ = rest.partition("/")
            keys.add(head + sep)
        if not keys:
            return response(404, {"errors": []})
        return response(200, {"data": {"keys": sorted(keys)}})

    def get_metadata(self, path, body):
        if path not in self.secrets:
            return response(404, {"errors": []})
        secret = self.secrets[path]
        return response(200, {"data": {
            "current_version": secret["current_version"],
            "custom_metadata": dict(secret["custom_metadata"]),
            "updated_time": "2024-01-01T00:00:00Z",
            "versions": {
                str(n): {
                    "deletion_time": "2024-01-02T00:00:00Z"
                    if (path, n) in self.deleted else "",
                    "destroyed": False}
                for n in secret["versions"]},
        }})

    def get_data(self, path, body):
        if path not in self.secrets:
            return response(404, {"errors": []})
        secret = self.secrets[path]
        if (path, secret["current_version"]) in self.deleted:
            return response(404, {"errors": []})
        data = secret["versions"][secret["current_version"]]
        return response(200, {"data": {"data": data, "metadata": {}}})

    def post_data(self, path, body):
        cas = body["options"]["cas"]
        if cas != self.current(path):
            return response(400, {"errors": [
                "check-and-set parameter did not match the current version"]})
        if not isinstance(body["data"], dict):
            return response(400, {"errors": ["no data provided"]})
        secret = self.secrets.setdefault(path, {
            "current_version": 0, "versions": {}, "custom_metadata": {}})
        secret["current_version"] += 1
        secret["versions"][secret["current_version"]] = dict(body["data"])
        return response(200, {"data": {
            "version": secret["current_version"]}})

    def post_metadata(self, path, body):
        self.secrets[path]["custom_metadata"] = dict(body["custom_metadata"])
        return response(204)

    def soft_delete(self, path):
        self.deleted.add((path, self.current(path)))

    def delete_metadata(self, path, body):
        self.secrets.pop(path, None)
        return response(204)


@pytest.fixture
def vault():
    fake = FakeVault()
    with mock.patch.object(requests.Session, "request", fake):
        yield fake


@pytest.fixture
def store(vault):
    return VaultKVStore(ADDRESS, "s.token")


def test_put_and_list(store, vault):
    payload = Payload({"password": "s3cr3t"})
    assert store.put("app/dev", payload, None) == "1"
    assert vault.secrets["app/dev"]["custom_metadata"] == {
        CHECKSUM_KEY: payload.checksum(),
        CHECKSUM_VERSION_KEY: "1"}
    vault.requests[:] = []
    [state] = store.list()
    assert state.name == "app/dev"
    assert state.version == "1"
    assert state.checksum == payload.checksum()
    assert state.last_modified == "2024-01-01T00:00:00Z"
    # Listing never reads secret values.
    assert [r for r in vault.requests if r[1] == "data"] == []


def test_get(store):
    store.put("app", Payload({"a": "1"}), None)
    assert store.get("app") == Payload({"a": "1"})
    with pytest.raises(NotFound):
        store.get("missing")


def test_list_recurses_and_handles_empty_mount(store, vault):
    assert store.list() == []
    for name in ["b", "a/x", "a/y/z"]:
        store.put(name, Payload({"k": name}), None)
    assert sorted(s.name for s in store.list()) == ["a/x", "a/y/z", "b"]


def test_prefix_is_hidden_from_names(vault):
    store = VaultKVStore(ADDRESS, "t", prefix="/team/")
    store.put("app", Payload({"a": "1"}), None)
    assert list(vault.secrets) == ["team/app"]
    assert [s.name for s in store.list()] == ["app"]


def test_foreign_writes_have_no_checksum(store, vault):
    store.put("app", Payload({"a": "1"}), None)
    vault.post_data("app", {"options": {"cas": 1}, "data": {"a": "2"}})
    [state] = store.list()
    assert state.version == "2"
    assert state.checksum is None


def test_create_conflicts_with_existing_secret(store):
    store.put("app", Payload({"a": "1"}), None)
    with pytest.raises(VersionConflict) as e:
        store.put("app", Payload({"a": "2"}), None)
    assert e.value.expected is None
    assert e.value.actual == "1"


def test_update_uses_check_and_set(store, vault):
    store.put("app", Payload({"a": "1"}), None)
    assert store.put("app", Payload({"a": "2"}), "1") == "2"
    with pytest.raises(VersionConflict) as e:
        store.put("app", Payload({"a": "3"}), "1")
    assert e.value.actual == "2"
    assert vault.secrets["app"]["versions"][2] == {"a": "2"}


def test_delete_checks_version(store, vault):
    store.put("app", Payload({"a": "1"}), None)
    with pytest.raises(VersionConflict):
        store.delete("app", "5")
    store.delete("app", "1")
    assert vault.secrets == {}
    with pytest.raises(NotFound):
        store.delete("app", "1")


@pytest.mark.parametrize("failure,error", [
    (response(503, {"errors": ["Vault is sealed"]}), TransientStoreError),
    (response(429, {"errors": []}), TransientStoreError),
    (requests.ConnectionError("refused"), TransientStoreError),
    (requests.Timeout("slow"), TransientStoreError),
    (response(403, {"errors": ["permission denied"]}), StoreAccessDenied),
    (response(400, {"errors": ["bad"]}), InvalidPayload),
])
def test_error_mapping(store, vault, failure, error):
    vault.fail.append(failure)
    with pytest.raises(error) as e:
        store.put("app", Payload({"a": "1"}), None)
    assert "s3cr3t" not in str(e.value)


def test_error_without_json_body(store, vault):
    vault.fail.append(response(502))
    with pytest.raises(TransientStoreError) as e:
        store.list()
    assert str(e.value) == "HTTP 502"


def test_session_headers(vault):
    store = VaultKVStore(ADDRESS, "s.token", namespace="ns1")
    assert store.session.headers["X-Vault-Token"] == "s.token"
    assert store.session.headers["X-Vault-Namespace"] == "ns1"


def test_from_config_section_uses_environment(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", ADDRESS + "/")
    monkeypatch.setenv("VAULT_TOKEN", "s.env")
    store = VaultKVStore.from_config_section(
        ConfigSection(method="vault", mount="kv", timeout="2.5"))
    assert store.address == ADDRESS
    assert store.token == "s.env"
    assert store.mount == "kv"
    assert store.timeout == 2.5


@pytest.mark.parametrize("section,option", [
    ({}, "store.address"),
    ({"address": ADDRESS}, "store.token"),
    ({"address": ADDRESS, "token": "t", "timeout": "soon"}, "store.timeout"),
])
def test_from_config_section_errors(section, option):
    with pytest.raises(ConfigError) as e:
        VaultKVStore.from_config_section(ConfigSection(section))
    assert e.value.option == option


def test_written_version_survives_a_failing_checksum_write(
        store, vault, output):
    store.put("app", Payload({"a": "1"}), None)
    vault.fail_on[("POST", "metadata")] = response(
        503, {"errors": ["Vault is sealed"]})
    assert store.put("app", Payload({"a": "2"}), "1") == "2"
    assert vault.secrets["app"]["versions"][2] == {"a": "2"}
    [state] = store.list()
    assert state.version == "2"
    assert state.checksum is None
    assert ("app: version 2 written, but its checksum could not be stored "
            "(transient)") in output.backend.output


def test_failing_checksum_write_is_not_retried_as_a_conflict(store, vault):
    store.put("app", Payload({"a": "1"}), None)
    vault.fail_on[("POST", "metadata")] = response(503)
    item = PlanItem(PlanItem.UPDATE, "app", Payload({"a": "2"}), "1")
    engine = ReconcilerEngine(store, actor="tester@host")
    result = engine.apply([item])
    applied = result.by_name("app")
    assert applied.outcome == ItemResult.APPLIED
    assert applied.version == "2"
    assert applied.attempts == 1
    assert [r for r in vault.requests if r[:2] == ("POST", "data")] == [
        ("POST", "data", "app"), ("POST", "data", "app")]


def test_soft_deleted_secrets_are_listed_without_checksum(store, vault):
    store.put("app", Payload({"a": "1"}), None)
    vault.soft_delete("app")
    [state] = store.list()
    assert state.version == "1"
    assert state.checksum is None
    with pytest.raises(NotFound):
        store.get("app")
    assert store.put("app", Payload({"a": "1"}), state.version) == "2"
    assert store.get("app") == Payload({"a": "1"})


def test_soft_deleted_secrets_are_restored(source, store, vault):
    source.write("app.yaml", "a: b\n")
    reconcile(source.path, ReconcileOptions(), store, decryptors={})
    vault.soft_delete("app")
    result = reconcile(source.path, ReconcileOptions(), store, decryptors={})
    item = result.by_name("app")
    assert item.action == "update"
    assert item.outcome == "applied"
    assert store.get("app") == Payload({"a": "b"})
