"""Remote secret stores.

A store implements:

``list()``
    all :py:class:`secretsync.model.RemoteSecretState` objects, without
    secret values.

``get(name)``
    the :py:class:`secretsync.model.Payload` of a secret or
    :py:class:`secretsync.NotFound`.

``put(name, payload, expected_version)``
    write a new version and return its token. ``expected_version=None``
    means the secret must not exist yet. Raises
    :py:class:`secretsync.VersionConflict` if the remote version differs.

``delete(name, expected_version)``
    remove the secret, same conflict semantics as ``put``.

Stores signal retryable problems with
:py:class:`secretsync.TransientStoreError`. They must be safe to use from
several threads as long as the names differ.

"""
from typing import List, Optional

from importlib_metadata import entry_points

from secretsync import ConfigError
from secretsync.model import Payload, RemoteSecretState


class RemoteStore(object):

    #: Whether the backend can hold a secret without any keys.
    accepts_empty = True

    @classmethod
    def from_config_section(cls, section):
        return cls()

    def list(self) -> List[RemoteSecretState]:
        raise NotImplementedError("list() not implemented.")

    def get(self, name: str) -> Payload:
        raise NotImplementedError("get() not implemented.")

    def put(self, name: str, payload: Payload,
            expected_version: Optional[str]) -> str:
        raise NotImplementedError("put() not implemented.")

    def delete(self, name: str, expected_version: Optional[str]) -> None:
        raise NotImplementedError("delete() not implemented.")


def get_store(section) -> RemoteStore:
    """Instantiate the store named by the `method` of a config section."""
    method = section.get("method")
    if not method:
        raise ConfigError.from_context(
            "no store method configured", option="store.method")
    try:
        factory = entry_points(group="secretsync.stores")[method].load()
    except KeyError:
        raise ConfigError.from_context(
            "unknown store method `{}`".format(method),
            option="store.method")
    return factory.from_config_section(section)
