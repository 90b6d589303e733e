import errno
import os

import mock
import pytest

from secretsync.engine import Backoff
from secretsync.store.memory import MemoryStore


def pytest_assertrepr_compare(op, left, right):
    if left.__class__.__name__ == "Ellipsis":
        return left.compare(right).diff
    elif right.__class__.__name__ == "Ellipsis":
        return right.compare(left).diff


@pytest.fixture(autouse=True)
def output(monkeypatch):
    from secretsync import output
    from secretsync._output import TestBackend

    backend = TestBackend()
    monkeypatch.setattr(output, "backend", backend)
    monkeypatch.setattr(output, "enable_debug", False)
    return output


@pytest.fixture
def source(tmp_path):
    """A writable source tree: ``source.write("app/dev.yaml", "...")``."""
    root = tmp_path / "secrets"
    root.mkdir()

    class Source(object):

        path = str(root)

        def write(self, relpath, content):
            target = root / relpath
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content)
            return str(target)

        def remove(self, relpath):
            os.unlink(str(root / relpath))

    return Source()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sleeps():
    """Delays requested by a backoff that never actually sleeps."""
    return []


@pytest.fixture
def backoff(sleeps):
    return Backoff(0.5, 8.0, sleep=sleeps.append,
                   jitter=lambda low, high: high)


@pytest.fixture
def unreadable():
    """Directory names that ``os.walk`` reports as permission denied."""
    names = set()
    walk = os.walk

    def denying_walk(top, onerror=None, **kw):
        for dirpath, dirnames, filenames in walk(top, onerror=onerror, **kw):
            for name in sorted(names.intersection(dirnames)):
                dirnames.remove(name)
                onerror(PermissionError(
                    errno.EACCES, "Permission denied",
                    os.path.join(dirpath, name)))
            yield dirpath, dirnames, filenames

    with mock.patch("os.walk", denying_walk):
        yield names
