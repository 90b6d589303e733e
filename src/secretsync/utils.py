import contextlib
import fcntl
import hashlib
import json
import os
import sys
import time

from importlib_metadata import version as distribution_version

from secretsync import output


def self_id():
    template = "secretsync/{version} ({python}, {system})"
    system = os.uname()
    system = " ".join([system[0], system[2], system[4]])
    version = distribution_version("secretsync")
    python = sys.implementation.name
    python += " {0}.{1}.{2}-{3}{4}".format(*sys.version_info)
    return template.format(**locals())


@contextlib.contextmanager
def locked(filename):
    """Hold an exclusive lock on `filename` and yield the open file.

    Blocks until the lock is available. The file is created if needed and
    is left in place afterwards.

    """
    with open(filename, "a+") as lockfile:
        fcntl.lockf(lockfile, fcntl.LOCK_EX)
        try:
            lockfile.seek(0)
            yield lockfile
        finally:
            lockfile.flush()
            fcntl.lockf(lockfile, fcntl.LOCK_UN)


def canonical_json(mapping):
    return json.dumps(
        mapping, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def canonical_checksum(mapping):
    """Checksum that does not depend on key order."""
    data = canonical_json(mapping).encode("utf-8")
    return "sha256:" + hashlib.sha256(data).hexdigest()


class Timer(object):

    def __init__(self, note):
        self.note = note
        self.started = time.time()
        self.durations = {}

    @contextlib.contextmanager
    def step(self, name):
        started = time.time()
        try:
            yield
        finally:
            duration = time.time() - started
            self.durations[name] = self.durations.get(name, 0) + duration
            output.annotate(
                "{} {} took {:.3f}s".format(self.note, name, duration),
                debug=True)

    def humanize(self, *names):
        result = []
        for name in names:
            if name == "total":
                duration = time.time() - self.started
            else:
                duration = self.durations.get(name, 0)
            result.append("{}={:.2f}s".format(name, duration))
        return " ".join(result)
