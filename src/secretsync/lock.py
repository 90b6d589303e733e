"""Advisory per-name locks with expiry.

A lock that outlives its TTL may be taken over by the next ``acquire``.
Releasing compares the handle's token, so a holder whose lock was taken
over can not release the new holder's lock.

"""
import contextlib
import json
import os
import threading
import time
import uuid
from typing import Dict, Optional

from secretsync import LockBusy, output
from secretsync.utils import locked


class LockHandle(object):

    def __init__(self, name, token, owner, expires):
        self.name = name
        self.token = token
        self.owner = owner
        self.expires = expires

    def expired(self, now=None):
        if now is None:
            now = time.time()
        return now >= self.expires

    def as_dict(self):
        return {"token": self.token, "owner": self.owner,
                "expires": self.expires}

    @classmethod
    def from_dict(cls, name, data):
        return cls(name, data["token"], data.get("owner"), data["expires"])

    def __repr__(self):
        return "<LockHandle {} {} until {}>".format(
            self.name, self.owner, self.expires)


def default_owner():
    return "{}:{}:{}".format(
        os.uname()[1], os.getpid(), threading.current_thread().name)


class LockManager(object):

    poll_interval = 0.05

    def __init__(self, clock=time.time):
        self.clock = clock

    def acquire(self, name, ttl, wait=0, owner=None) -> LockHandle:
        """Acquire the lock for `name` or raise :py:class:`LockBusy`.

        Waits up to `wait` seconds for a busy lock to become free.

        """
        deadline = time.monotonic() + wait
        owner = owner or default_owner()
        while True:
            handle = self.try_acquire(name, ttl, owner)
            if handle is not None:
                output.annotate(
                    "lock {} acquired by {}".format(name, owner), debug=True)
                return handle
            if time.monotonic() >= deadline:
                current = self.holder(name)
                raise LockBusy.from_context(
                    name, current.owner if current else None)
            time.sleep(self.poll_interval)

    def _new_handle(self, name, ttl, owner):
        return LockHandle(
            name, uuid.uuid4().hex, owner, self.clock() + ttl)

    def try_acquire(self, name, ttl, owner) -> Optional[LockHandle]:
        raise NotImplementedError("try_acquire() not implemented.")

    def release(self, handle) -> bool:
        """Release the lock if `handle` still owns it.

        Returns whether anything was released.

        """
        raise NotImplementedError("release() not implemented.")

    def holder(self, name) -> Optional[LockHandle]:
        raise NotImplementedError("holder() not implemented.")


class MemoryLockManager(LockManager):
    """Lock table for all reconciliations within one process."""

    def __init__(self, clock=time.time):
        super().__init__(clock)
        self._mutex = threading.Lock()
        self._table: Dict[str, LockHandle] = {}

    def try_acquire(self, name, ttl, owner):
        with self._mutex:
            current = self._table.get(name)
            if current is not None and not current.expired(self.clock()):
                return None
            if current is not None:
                output.annotate(
                    "lock {} of {} expired, taking over".format(
                        name, current.owner), debug=True)
            handle = self._new_handle(name, ttl, owner)
            self._table[name] = handle
            return handle

    def release(self, handle):
        with self._mutex:
            current = self._table.get(handle.name)
            if current is None or current.token != handle.token:
                return False
            del self._table[handle.name]
            return True

    def holder(self, name):
        with self._mutex:
            current = self._table.get(name)
            if current is None or current.expired(self.clock()):
                return None
            return current


class FileLockManager(LockManager):
    """Lock table in a JSON file shared by processes on one host."""

    def __init__(self, path, clock=time.time):
        super().__init__(clock)
        self.path = path

    def _read(self, lockfile):
        content = lockfile.read()
        if not content.strip():
            return {}
        try:
            return json.loads(content)
        except ValueError:
            output.warn(
                "Lock table {} is corrupt, starting over.".format(self.path))
            return {}

    def _write(self, lockfile, table):
        lockfile.seek(0)
        lockfile.truncate()
        json.dump(table, lockfile, sort_keys=True)

    def try_acquire(self, name, ttl, owner):
        with locked(self.path) as lockfile:
            table = self._read(lockfile)
            now = self.clock()
            table = {
                k: v for k, v in table.items()
                if not LockHandle.from_dict(k, v).expired(now)}
            if name in table:
                return None
            handle = self._new_handle(name, ttl, owner)
            table[name] = handle.as_dict()
            self._write(lockfile, table)
            return handle

    def release(self, handle):
        with locked(self.path) as lockfile:
            table = self._read(lockfile)
            current = table.get(handle.name)
            if current is None or current["token"] != handle.token:
                return False
            del table[handle.name]
            self._write(lockfile, table)
            return True

    def holder(self, name):
        with locked(self.path) as lockfile:
            table = self._read(lockfile)
        if name not in table:
            return None
        handle = LockHandle.from_dict(name, table[name])
        if handle.expired(self.clock()):
            return None
        return handle


@contextlib.contextmanager
def held(manager, name, ttl, wait=0, owner=None):
    handle = manager.acquire(name, ttl, wait, owner)
    try:
        yield handle
    finally:
        manager.release(handle)


# Shared by every engine in this process that is not given its own manager.
default_manager = MemoryLockManager()
