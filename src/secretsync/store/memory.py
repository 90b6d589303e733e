import datetime
import threading

from secretsync import InvalidPayload, NotFound, VersionConflict
from secretsync.model import Payload, RemoteSecretState
from secretsync.store import RemoteStore


class MemoryStore(RemoteStore):
    """A process-local store.

    Versions are increasing integers (as strings) per name and are never
    reused, not even after a delete.

    """

    def __init__(self, accepts_empty=True):
        self.accepts_empty = accepts_empty
        self._lock = threading.Lock()
        self._secrets = {}
        self._counters = {}
        self.calls = []

    @classmethod
    def from_config_section(cls, section):
        accepts_empty = section.get("accepts_empty", "true").lower()
        return cls(accepts_empty=accepts_empty in ("1", "true", "yes", "on"))

    def _now(self):
        return datetime.datetime.now(datetime.timezone.utc).isoformat()

    def _current(self, name):
        entry = self._secrets.get(name)
        return entry[0] if entry else None

    def list(self):
        with self._lock:
            self.calls.append(("list",))
            return [
                RemoteSecretState(name, version, payload.checksum(), modified)
                for name, (version, payload, modified)
                in sorted(self._secrets.items())
            ]

    def get(self, name):
        with self._lock:
            self.calls.append(("get", name))
            if name not in self._secrets:
                raise NotFound.from_context(name)
            return self._secrets[name][1]

    def put(self, name, payload, expected_version):
        if not isinstance(payload, Payload):
            raise InvalidPayload.from_context(name, "not a payload")
        if not self.accepts_empty and not len(payload):
            raise InvalidPayload.from_context(name, "empty secret")
        with self._lock:
            self.calls.append(("put", name, expected_version))
            current = self._current(name)
            if current != expected_version:
                raise VersionConflict.from_context(
                    name, expected_version, current)
            version = str(self._counters.get(name, 0) + 1)
            self._counters[name] = int(version)
            self._secrets[name] = (version, payload, self._now())
            return version

    def delete(self, name, expected_version):
        with self._lock:
            self.calls.append(("delete", name, expected_version))
            current = self._current(name)
            if current is None:
                raise NotFound.from_context(name)
            if current != expected_version:
                raise VersionConflict.from_context(
                    name, expected_version, current)
            del self._secrets[name]

    def mutations(self):
        return [c for c in self.calls if c[0] in ("put", "delete")]
