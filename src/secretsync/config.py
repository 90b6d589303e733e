import getpass
import os
import os.path
from configparser import Error as ConfigParserError
from configparser import RawConfigParser

from secretsync import ConfigError
from secretsync.audit import (
    BufferedAuditSink,
    JSONLinesAuditSink,
    LoggingAuditSink,
)
from secretsync import lock

DEFAULT_CONFIG = "secretsync.cfg"

TRUE = ("1", "yes", "true", "on")
FALSE = ("0", "no", "false", "off")


class ConfigSection(dict):

    def as_list(self, option):
        result = self[option]
        if "," in result:
            result = [x.strip() for x in result.split(",")]
        elif "\n" in result:
            result = (x.strip() for x in result.split("\n"))
            result = [x for x in result if x]
        else:
            result = [result]
        return result


class Config(object):

    def __init__(self, path):
        config = RawConfigParser()
        config.optionxform = lambda optionstr: optionstr
        if path:  # Test support
            try:
                config.read(path)
            except ConfigParserError as e:
                raise ConfigError.from_context(
                    "can not parse {}: {}".format(path, e.__class__.__name__))
        self.config = config

    def __contains__(self, section):
        return self.config.has_section(section)

    def __getitem__(self, section):
        if section not in self:
            raise KeyError(section)
        return ConfigSection(
            (x, self.config.get(section, x))
            for x in self.config.options(section)
        )

    def __iter__(self):
        return iter(self.config.sections())

    def get(self, section, default=None):
        try:
            return self[section]
        except KeyError:
            return default


def default_actor():
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return "{}@{}".format(user, os.uname()[1])


def parse_bool(value, option):
    if isinstance(value, bool):
        return value
    value = str(value).strip().lower()
    if value in TRUE:
        return True
    if value in FALSE:
        return False
    raise ConfigError.from_context(
        "`{}` is not a boolean".format(value), option=option)


def parse_number(value, option, kind=int, minimum=None):
    try:
        value = kind(value)
    except (TypeError, ValueError):
        raise ConfigError.from_context(
            "`{}` is not a valid {}".format(value, kind.__name__),
            option=option)
    if minimum is not None and value < minimum:
        raise ConfigError.from_context(
            "must be at least {}".format(minimum), option=option)
    return value


class ReconcileOptions(object):
    """Options for a single reconciliation run."""

    prune_unmanaged = False
    concurrency_limit = 4
    dry_run = False
    max_attempts = 3
    backoff_base = 0.5
    backoff_max = 8.0
    lock_ttl = 60.0
    lock_wait = 10.0
    actor = None

    BOOLEANS = ("prune_unmanaged", "dry_run")
    INTEGERS = ("concurrency_limit", "max_attempts")
    FLOATS = ("backoff_base", "backoff_max", "lock_ttl", "lock_wait")

    def __init__(self, **kw):
        for key, value in kw.items():
            if not hasattr(self.__class__, key):
                raise ConfigError.from_context(
                    "unknown option", option=key)
            if value is not None:
                setattr(self, key, value)
        if self.actor is None:
            self.actor = default_actor()

    @classmethod
    def from_config(cls, config, **overrides):
        section = config.get("reconcile", {})
        kw = {}
        for key, value in section.items():
            if not hasattr(cls, key) or key.startswith("_"):
                raise ConfigError.from_context(
                    "unknown option", option="reconcile." + key)
            kw[key] = value
        kw.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kw)

    def validate(self):
        """Convert and check all options. Raises ConfigError."""
        for key in self.BOOLEANS:
            setattr(self, key, parse_bool(getattr(self, key), key))
        for key in self.INTEGERS:
            setattr(self, key, parse_number(getattr(self, key), key, int, 1))
        for key in self.FLOATS:
            setattr(
                self, key, parse_number(getattr(self, key), key, float, 0))
        if self.lock_ttl <= 0:
            raise ConfigError.from_context(
                "must be greater than 0", option="lock_ttl")
        if self.backoff_max < self.backoff_base:
            raise ConfigError.from_context(
                "must not be smaller than backoff_base", option="backoff_max")
        if not self.actor:
            raise ConfigError.from_context("must not be empty", option="actor")
        return self

    def __repr__(self):
        return "<ReconcileOptions {}>".format(", ".join(
            "{}={!r}".format(k, getattr(self, k))
            for k in self.BOOLEANS + self.INTEGERS + self.FLOATS))


def load_config(path=None):
    """Read the configuration file.

    An explicitly given file must exist, the default one is optional.

    """
    if path is None:
        path = DEFAULT_CONFIG if os.path.exists(DEFAULT_CONFIG) else None
    elif not os.path.exists(path):
        raise ConfigError.from_context(
            "configuration file {} does not exist".format(path))
    return Config(path)


def key_refs(config):
    section = config.get("decrypt", ConfigSection())
    age = ""
    if section.get("age_identities"):
        # One identity per line or comma separated.
        age = ",".join(section.as_list("age_identities"))
    return {
        "age": age,
        "gpg": section.get("gpg_homedir", ""),
        "sops": section.get("sops_key", ""),
    }


def build_lock_manager(config):
    section = config.get("locks", {})
    method = section.get("method", "memory")
    if method == "memory":
        return lock.default_manager
    if method == "file":
        path = section.get("path", ".secretsync-locks")
        return lock.FileLockManager(path)
    raise ConfigError.from_context(
        "unknown lock method `{}`".format(method), option="locks.method")


def build_audit_sink(config):
    section = config.get("audit", {})
    path = section.get("path")
    if path:
        delegate = JSONLinesAuditSink(path)
    else:
        delegate = LoggingAuditSink()
    maxlen = parse_number(
        section.get("buffer", 1000), "audit.buffer", int, 1)
    return BufferedAuditSink(delegate, maxlen)
