import os.path
from typing import Optional

from ._output import output

with open(os.path.dirname(__file__) + "/version.txt") as f:
    __version__ = f.read().strip()


def prepare_error(error):
    return f"{error.__class__.__name__}: {error}"


class ReportingException(Exception):
    """Exceptions that support user-readable reporting.

    Messages must never carry secret values: only logical names, paths,
    checksums and backend metadata.

    """

    #: Short, stable identifier recorded as the failure reason of an item.
    reason = "error"

    sort_key = (-99,)

    def __str__(self):
        raise NotImplementedError()

    def report(self):
        raise NotImplementedError()


class ScanError(ReportingException):
    """A source document could not be turned into a secret document."""

    reason = "scan"
    sort_key = (1,)

    path: str
    problem: str
    name: Optional[str]
    # Set for unreadable directories: names below it are unknown.
    prefix: Optional[str] = None

    @classmethod
    def from_context(cls, path, problem, name=None):
        self = cls()
        self.path = str(path)
        self.problem = problem
        self.name = name
        return self

    def __str__(self):
        return f"{self.path}: {self.problem}"

    def report(self):
        output.error("Could not read secret document")
        output.tabular("File", self.path, red=True)
        if self.name:
            output.tabular("Name", self.name, red=True)
        output.tabular("Problem", self.problem, red=True)


class DuplicateSecretName(ScanError):
    """Two source files map to the same logical name."""

    reason = "duplicate"

    @classmethod
    def from_context(cls, path, name, other):
        self = super().from_context(
            path, f"logical name also claimed by {other}", name
        )
        self.other = str(other)
        return self


class DecryptError(ScanError):
    """The key management backend refused or failed to decrypt a file."""

    reason = "decrypt"

    def report(self):
        output.error("Could not decrypt secret document")
        output.tabular("File", self.path, red=True)
        output.tabular("Problem", self.problem, red=True)


class KeyUnavailable(DecryptError):
    """No usable key for the ciphertext was found."""

    reason = "key-unavailable"


class AccessDenied(DecryptError):
    """The key exists but we are not allowed to use it."""

    reason = "access-denied"


class CorruptCiphertext(DecryptError):
    """The ciphertext could not be parsed or failed authentication."""

    reason = "corrupt-ciphertext"


class StoreError(ReportingException):
    """The remote secret store rejected an operation."""

    reason = "store"
    sort_key = (2,)
    transient = False

    name: Optional[str]
    message: str

    @classmethod
    def from_context(cls, name, message):
        self = cls()
        self.name = name
        self.message = message
        return self

    def __str__(self):
        if self.name:
            return f"{self.name}: {self.message}"
        return self.message

    def report(self):
        output.error("Remote store error")
        if self.name:
            output.tabular("Name", self.name, red=True)
        output.tabular("Message", self.message, red=True)


class VersionConflict(StoreError):
    """The remote secret changed since it was observed."""

    reason = "stale"

    expected: Optional[str]
    actual: Optional[str]

    @classmethod
    def from_context(cls, name, expected, actual):
        self = super().from_context(
            name, f"expected version {expected}, found {actual}"
        )
        self.expected = expected
        self.actual = actual
        return self


class NotFound(StoreError):
    """The named secret does not exist in the remote store."""

    reason = "not-found"

    @classmethod
    def from_context(cls, name):
        return super().from_context(name, "secret does not exist")


class TransientStoreError(StoreError):
    """Timeouts, throttling and other errors that may go away."""

    reason = "transient"
    transient = True


class StoreAccessDenied(StoreError):
    reason = "access-denied"


class InvalidPayload(StoreError):
    reason = "invalid-payload"


class LockBusy(ReportingException):
    """A logical name is locked by somebody else."""

    reason = "lock-busy"
    sort_key = (3,)

    name: str
    holder: Optional[str]

    @classmethod
    def from_context(cls, name, holder=None):
        self = cls()
        self.name = name
        self.holder = holder
        return self

    def __str__(self):
        if self.holder:
            return f"Lock for {self.name} is held by {self.holder}"
        return f"Lock for {self.name} is held by another process"

    def report(self):
        output.error("Secret is locked")
        output.tabular("Name", self.name, red=True)
        if self.holder:
            output.tabular("Holder", self.holder, red=True)


class ConfigError(ReportingException):
    """Invalid options. Aborts the whole run before anything is changed."""

    reason = "config"
    sort_key = (0,)

    message: str
    option: Optional[str]

    @classmethod
    def from_context(cls, message, option=None):
        self = cls()
        self.message = message
        self.option = option
        return self

    def __str__(self):
        if self.option:
            return f"{self.option}: {self.message}"
        return self.message

    def report(self):
        output.error("Invalid configuration")
        if self.option:
            output.tabular("Option", self.option, red=True)
        output.tabular("Message", self.message, red=True)


class SourceUnavailable(ReportingException):
    """The source root itself can not be read."""

    reason = "source"
    sort_key = (0,)

    @classmethod
    def from_context(cls, root, error):
        self = cls()
        self.root = str(root)
        self.error = prepare_error(error)
        return self

    def __str__(self):
        return f"Can not read secret source {self.root}: {self.error}"

    def report(self):
        output.error("Can not read secret source")
        output.tabular("Root", self.root, red=True)
        output.tabular("Message", self.error, red=True)
