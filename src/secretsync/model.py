"""The data passed between source, differ, engine and stores.

Plaintext only ever lives inside :py:class:`Payload`. Everything else
carries names, version tokens and checksums.

"""
from typing import Dict, Iterable, List, Optional, Tuple

from secretsync.utils import canonical_checksum


class Payload(object):
    """An ordered mapping of secret keys to plaintext values.

    The values are deliberately hidden from ``repr()`` and ``str()`` so that
    a payload that ends up in a log message, an exception or an audit event
    does not leak. Use :py:meth:`as_dict` to explicitly unwrap it when
    handing it to a store.

    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[Tuple[str, str]] = ()):
        if isinstance(items, dict):
            items = items.items()
        data: Dict[str, str] = {}
        for key, value in items:
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError("Payload keys and values must be strings.")
            data[key] = value
        self._items = data

    def keys(self) -> List[str]:
        return list(self._items)

    def items(self):
        return self._items.items()

    def as_dict(self) -> Dict[str, str]:
        return dict(self._items)

    def checksum(self) -> str:
        return canonical_checksum(self._items)

    def __len__(self):
        return len(self._items)

    def __eq__(self, other):
        if isinstance(other, Payload):
            return self._items == other._items
        return NotImplemented

    def __hash__(self):
        return hash(self.checksum())

    def __repr__(self):
        return "<Payload keys={} {}>".format(
            sorted(self._items), self.checksum())

    __str__ = __repr__


class SecretDocument(object):
    """A secret as declared in the source tree."""

    def __init__(self, name: str, payload: Payload, source_checksum: str,
                 path: str = None, format_version: int = 1):
        self.name = name
        self.payload = payload
        self.source_checksum = source_checksum
        self.path = path
        self.format_version = format_version

    @property
    def checksum(self) -> str:
        return self.payload.checksum()

    def __repr__(self):
        return "<SecretDocument {} {}>".format(self.name, self.checksum)


class RemoteSecretState(object):
    """What the remote store tells us about a secret, without its value."""

    def __init__(self, name: str, version: str, checksum: Optional[str],
                 last_modified: Optional[str] = None):
        self.name = name
        self.version = version
        self.checksum = checksum
        self.last_modified = last_modified

    def __repr__(self):
        return "<RemoteSecretState {} @{} {}>".format(
            self.name, self.version, self.checksum)


class PlanItem(object):

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"

    #: Order in which phases are applied.
    PHASES = (CREATE, UPDATE, DELETE, NOOP)

    def __init__(self, action: str, name: str,
                 payload: Optional[Payload] = None,
                 expected_version: Optional[str] = None,
                 checksum_before: Optional[str] = None):
        if action not in self.PHASES:
            raise ValueError("Unknown plan action `{}`".format(action))
        if action in (self.CREATE, self.UPDATE) and payload is None:
            raise ValueError("{} of {} needs a payload".format(action, name))
        self.action = action
        self.name = name
        self.payload = payload
        self.expected_version = expected_version
        self.checksum_before = checksum_before

    @property
    def checksum_after(self) -> Optional[str]:
        if self.action == self.DELETE:
            return None
        if self.payload is None:
            return self.checksum_before
        return self.payload.checksum()

    @property
    def mutating(self) -> bool:
        return self.action != self.NOOP

    def __repr__(self):
        version = ""
        if self.expected_version is not None:
            version = " @" + self.expected_version
        return "<PlanItem {} {}{}>".format(self.action, self.name, version)


class ItemResult(object):

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"

    #: Action recorded for documents that never made it into the plan.
    SCAN = "scan"

    def __init__(self, name: str, action: str, outcome: str,
                 reason: Optional[str] = None, message: Optional[str] = None,
                 attempts: int = 0, version: Optional[str] = None,
                 checksum_before: Optional[str] = None,
                 checksum_after: Optional[str] = None):
        self.name = name
        self.action = action
        self.outcome = outcome
        self.reason = reason
        self.message = message
        self.attempts = attempts
        self.version = version
        self.checksum_before = checksum_before
        self.checksum_after = checksum_after

    @classmethod
    def from_item(cls, item: PlanItem, outcome: str, **kw):
        return cls(item.name, item.action, outcome,
                   checksum_before=item.checksum_before,
                   checksum_after=item.checksum_after, **kw)

    def __repr__(self):
        reason = "({})".format(self.reason) if self.reason else ""
        return "<ItemResult {} {} {}{}>".format(
            self.action, self.name, self.outcome, reason)


class ReconciliationResult(object):

    def __init__(self, plan=(), items=(), scan_errors=(), dry_run=False):
        self.plan: List[PlanItem] = list(plan)
        self.items: List[ItemResult] = list(items)
        self.scan_errors = list(scan_errors)
        self.dry_run = dry_run

    def names(self, outcome):
        return [i.name for i in self.items if i.outcome == outcome]

    def by_name(self, name):
        for item in self.items:
            if item.name == name:
                return item
        raise KeyError(name)

    @property
    def applied(self):
        return self.names(ItemResult.APPLIED)

    @property
    def skipped(self):
        return self.names(ItemResult.SKIPPED)

    @property
    def failed(self):
        return self.names(ItemResult.FAILED)

    @property
    def summary(self):
        counts = {ItemResult.APPLIED: 0, ItemResult.SKIPPED: 0,
                  ItemResult.FAILED: 0}
        for item in self.items:
            counts[item.outcome] += 1
        return counts

    @property
    def degraded(self):
        return bool(self.failed)

    def __repr__(self):
        return "<ReconciliationResult {}>".format(self.summary)
