"""HashiCorp Vault KV (version 2) secret store.

Checksums are kept in the secret's ``custom_metadata`` together with the
version they describe, so that listing never transfers secret values.
Writes use KV v2 check-and-set.

"""
import os
import threading

import requests

from secretsync import (
    ConfigError,
    InvalidPayload,
    NotFound,
    StoreAccessDenied,
    StoreError,
    TransientStoreError,
    VersionConflict,
    output,
)
from secretsync.model import Payload, RemoteSecretState
from secretsync.store import RemoteStore

CHECKSUM_KEY = "secretsync-checksum"
CHECKSUM_VERSION_KEY = "secretsync-version"

TRANSIENT_STATUS = (429, 500, 502, 503, 504)


class VaultKVStore(RemoteStore):

    def __init__(self, address, token, mount="secret", prefix="",
                 namespace=None, timeout=10):
        self.address = address.rstrip("/")
        self.token = token
        self.mount = mount.strip("/")
        self.prefix = prefix.strip("/")
        self.namespace = namespace
        self.timeout = timeout
        self._local = threading.local()

    @classmethod
    def from_config_section(cls, section):
        address = section.get("address") or os.environ.get("VAULT_ADDR")
        token = section.get("token") or os.environ.get("VAULT_TOKEN")
        if not address:
            raise ConfigError.from_context(
                "no Vault address (set `address` or VAULT_ADDR)",
                option="store.address")
        if not token:
            raise ConfigError.from_context(
                "no Vault token (set `token` or VAULT_TOKEN)",
                option="store.token")
        try:
            timeout = float(section.get("timeout", 10))
        except ValueError:
            raise ConfigError.from_context(
                "timeout must be a number", option="store.timeout")
        return cls(
            address, token,
            mount=section.get("mount", "secret"),
            prefix=section.get("prefix", ""),
            namespace=section.get("namespace"),
            timeout=timeout)

    @property
    def session(self):
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["X-Vault-Token"] = self.token
            if self.namespace:
                session.headers["X-Vault-Namespace"] = self.namespace
            self._local.session = session
        return session

    def _path(self, name):
        if self.prefix:
            return self.prefix + "/" + name
        return name

    def _url(self, kind, name=""):
        path = "/".join(x for x in [self.mount, kind, name] if x)
        return "{}/v1/{}".format(self.address, path)

    def _request(self, method, url, name=None, **kw):
        output.annotate("vault: {} {}".format(method, url), debug=True)
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, **kw)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientStoreError.from_context(
                name, "{} talking to Vault".format(e.__class__.__name__))
        status = response.status_code
        if status < 400:
            return response
        errors = []
        try:
            errors = response.json().get("errors", [])
        except ValueError:
            pass
        message = "; ".join(errors) or "HTTP {}".format(status)
        if status in TRANSIENT_STATUS:
            raise TransientStoreError.from_context(name, message)
        if status in (401, 403):
            raise StoreAccessDenied.from_context(name, message)
        if status == 404:
            raise NotFound.from_context(name)
        if status == 400 and "check-and-set" in message:
            raise VersionConflict.from_context(name, None, None)
        if status == 400:
            raise InvalidPayload.from_context(name, message)
        raise StoreError.from_context(name, message)

    def _list_keys(self, path):
        try:
            response = self._request("LIST", self._url("metadata", path))
        except NotFound:
            return []
        keys = []
        for key in response.json()["data"]["keys"]:
            child = path + "/" + key if path else key
            if key.endswith("/"):
                keys.extend(self._list_keys(child.rstrip("/")))
            else:
                keys.append(child)
        return keys

    def _metadata(self, name):
        response = self._request(
            "GET", self._url("metadata", self._path(name)), name)
        return response.json()["data"]

    def _state(self, name, metadata):
        version = metadata.get("current_version", 0)
        if not version:
            return None
        details = metadata.get("versions", {}).get(str(version), {})
        checksum = None
        # A deleted or destroyed current version holds no value. It is
        # still reported so that a write can use its version for cas.
        if not (details.get("deletion_time") or details.get("destroyed")):
            custom = metadata.get("custom_metadata") or {}
            if custom.get(CHECKSUM_VERSION_KEY) == str(version):
                checksum = custom.get(CHECKSUM_KEY)
        return RemoteSecretState(
            name, str(version), checksum, metadata.get("updated_time"))

    def list(self):
        result = []
        for path in self._list_keys(self.prefix):
            name = path[len(self.prefix) + 1:] if self.prefix else path
            try:
                state = self._state(name, self._metadata(name))
            except NotFound:
                continue
            if state is not None:
                result.append(state)
        return result

    def get(self, name):
        response = self._request(
            "GET", self._url("data", self._path(name)), name)
        data = response.json()["data"]["data"]
        if data is None:
            raise NotFound.from_context(name)
        return Payload(data)

    def put(self, name, payload, expected_version):
        cas = int(expected_version) if expected_version is not None else 0
        try:
            response = self._request(
                "POST", self._url("data", self._path(name)), name,
                json={"options": {"cas": cas}, "data": payload.as_dict()})
        except VersionConflict:
            actual = None
            try:
                state = self._state(name, self._metadata(name))
                actual = state.version if state else None
            except NotFound:
                pass
            raise VersionConflict.from_context(
                name, expected_version, actual)
        version = str(response.json()["data"]["version"])
        try:
            self._request(
                "POST", self._url("metadata", self._path(name)), name,
                json={"custom_metadata": {
                    CHECKSUM_KEY: payload.checksum(),
                    CHECKSUM_VERSION_KEY: version}})
        except StoreError as e:
            # The value is written. Without a checksum the next run plans
            # an update.
            output.warn(
                "{}: version {} written, but its checksum could not be "
                "stored ({})".format(name, version, e.reason))
        return version

    def delete(self, name, expected_version):
        # KV v2 has no check-and-set for deletes. This narrows the window
        # but can not close it.
        state = self._state(name, self._metadata(name))
        if state is None:
            raise NotFound.from_context(name)
        if state.version != expected_version:
            raise VersionConflict.from_context(
                name, expected_version, state.version)
        self._request(
            "DELETE", self._url("metadata", self._path(name)), name)
