import configparser
import hashlib
import json
import os
import os.path
import re
from typing import Dict, List, Optional, Set

import yaml
from configupdater import ConfigUpdater

from secretsync import (
    ConfigError,
    DecryptError,
    DuplicateSecretName,
    KeyUnavailable,
    ScanError,
    SourceUnavailable,
    output,
)
from secretsync.model import Payload, SecretDocument

# Document suffix -> parser.
FORMATS = {
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".cfg": "ini",
    ".ini": "ini",
}

# Encryption wrapper suffix -> decryptor.
WRAPPERS = {
    ".age": "age",
    ".gpg": "gpg",
}

SOPS_MARKER = ".sops"

SUPPORTED_FORMAT_VERSIONS = (1,)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)*$")

# Section holding document metadata in INI documents.
META_SECTION = "secretsync"


def classify(relpath):
    """Split a relative source path into (logical name, format, wrapper).

    Returns ``None`` for files that are not secret documents.

    >>> classify("app/dev.yaml")
    ('app/dev', 'yaml', None)
    >>> classify("app/dev.json.age")
    ('app/dev', 'json', 'age')
    >>> classify("app/dev.sops.yaml")
    ('app/dev', 'yaml', 'sops')

    """
    relpath = relpath.replace(os.sep, "/")
    stem, suffix = os.path.splitext(relpath)
    wrapper = WRAPPERS.get(suffix)
    if wrapper is not None:
        stem, suffix = os.path.splitext(stem)
        if suffix not in FORMATS:
            return (stem + suffix, None, wrapper)
    if suffix not in FORMATS:
        return None
    fmt = FORMATS[suffix]
    if wrapper is None and stem.endswith(SOPS_MARKER):
        stem = stem[:-len(SOPS_MARKER)]
        wrapper = "sops"
    return (stem, fmt, wrapper)


def normalize_value(key, value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(
        "value of `{}` must be a scalar, got {}".format(
            key, type(value).__name__))


def build_payload(data):
    """Turn a parsed mapping into a payload and its format version."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(
            "document must be a mapping, got {}".format(type(data).__name__))
    format_version = 1
    items = []
    for key, value in data.items():
        if not isinstance(key, str):
            raise ValueError("key {!r} is not a string".format(key))
        if key == "_format":
            format_version = value
            continue
        if key.startswith("_"):
            raise ValueError("reserved key `{}`".format(key))
        items.append((key, normalize_value(key, value)))
    try:
        format_version = int(format_version)
    except (TypeError, ValueError):
        raise ValueError("invalid _format")
    if format_version not in SUPPORTED_FORMAT_VERSIONS:
        raise ValueError(
            "unsupported _format {}".format(format_version))
    return Payload(items), format_version


def parse_yaml(text):
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = " at line {}".format(mark.line + 1) if mark else ""
        raise ValueError("invalid YAML" + where)
    return build_payload(data)


def parse_json(text):
    try:
        data = json.loads(text) if text.strip() else {}
    except ValueError as e:
        raise ValueError(
            "invalid JSON at line {}".format(getattr(e, "lineno", "?")))
    return build_payload(data)


def parse_ini(text):
    config = ConfigUpdater()
    config.optionxform = lambda optionstr: optionstr
    try:
        config.read_string(text)
    except configparser.Error as e:
        raise ValueError("invalid INI: {}".format(e.__class__.__name__))
    data = {}
    for section in config.sections():
        if section == META_SECTION:
            option = config[section].get("format")
            if option is not None and option.value is not None:
                data["_format"] = option.value.strip()
            continue
        for key, option in config[section].items():
            if option.value is None:
                raise ValueError(
                    "option `{}.{}` has no value".format(section, key))
            data["{}.{}".format(section, key)] = option.value
    return build_payload(data)


PARSERS = {
    "yaml": parse_yaml,
    "json": parse_json,
    "ini": parse_ini,
}


class ScanResult(object):

    def __init__(self, root):
        self.root = root
        self.documents: Dict[str, SecretDocument] = {}
        self.errors: List[ScanError] = []

    @property
    def failed_names(self) -> Set[str]:
        return {e.name for e in self.errors if e.name}

    @property
    def failed_prefixes(self) -> Set[str]:
        return {e.prefix for e in self.errors if e.prefix is not None}

    def __iter__(self):
        return iter(self.documents.values())

    def __len__(self):
        return len(self.documents)


class SecretSource(object):
    """Reads a directory tree of secret documents.

    Problems with single files are collected in the scan result and do not
    stop the scan. Only an unreadable root aborts.

    """

    def __init__(self, decryptors=None, key_refs=None, accepts_empty=True):
        self.decryptors = decryptors if decryptors is not None else {}
        self.key_refs = key_refs or {}
        self.accepts_empty = accepts_empty

    def scan(self, root) -> ScanResult:
        root = os.path.abspath(root)
        try:
            os.listdir(root)
        except OSError as e:
            raise SourceUnavailable.from_context(root, e)

        result = ScanResult(root)
        claims: Dict[str, List[str]] = {}

        def walk_error(error):
            scan_error = ScanError.from_context(
                error.filename, "unreadable directory")
            relpath = os.path.relpath(error.filename, root)
            scan_error.prefix = "" if relpath == "." else \
                relpath.replace(os.sep, "/") + "/"
            result.errors.append(scan_error)

        for dirpath, dirnames, filenames in os.walk(root, onerror=walk_error):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                path = os.path.join(dirpath, filename)
                relpath = os.path.relpath(path, root)
                classified = classify(relpath)
                if classified is None:
                    output.annotate(
                        "skipping {}".format(relpath), debug=True)
                    continue
                name, fmt, wrapper = classified
                claims.setdefault(name, []).append(path)
                document = self._read(path, name, fmt, wrapper, result)
                if document is not None:
                    result.documents[name] = document

        for name, paths in sorted(claims.items()):
            if len(paths) < 2:
                continue
            result.documents.pop(name, None)
            for path in paths:
                other = ", ".join(p for p in paths if p != path)
                result.errors.append(
                    DuplicateSecretName.from_context(path, name, other))

        if not self.accepts_empty:
            for document in result:
                if not len(document.payload):
                    raise ConfigError.from_context(
                        "empty secret `{}` is not accepted by the store"
                        .format(document.name),
                        option=document.path)

        return result

    def _read(self, path, name, fmt, wrapper, result) -> Optional[
            SecretDocument]:
        if not NAME_PATTERN.match(name):
            result.errors.append(
                ScanError.from_context(path, "invalid logical name", name))
            return None
        if fmt is None:
            result.errors.append(
                ScanError.from_context(
                    path, "unknown document format", name))
            return None
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            result.errors.append(
                ScanError.from_context(
                    path, "unreadable file: {}".format(e.strerror), name))
            return None
        source_checksum = "sha256:" + hashlib.sha256(raw).hexdigest()

        if wrapper is not None:
            try:
                raw = self.decrypt(raw, wrapper)
            except DecryptError as e:
                result.errors.append(
                    type(e).from_context(path, e.problem, name))
                return None
            except Exception as e:
                result.errors.append(
                    DecryptError.from_context(
                        path, "decryptor failed with {}".format(
                            e.__class__.__name__), name))
                return None

        try:
            text = raw.decode("utf-8")
            payload, format_version = PARSERS[fmt](text)
        except UnicodeDecodeError:
            result.errors.append(
                ScanError.from_context(path, "not UTF-8 encoded", name))
            return None
        except ValueError as e:
            result.errors.append(ScanError.from_context(path, str(e), name))
            return None

        return SecretDocument(
            name, payload, source_checksum,
            path=path, format_version=format_version)

    def decrypt(self, ciphertext, wrapper):
        decryptor = self.decryptors.get(wrapper)
        if decryptor is None:
            raise KeyUnavailable.from_context(
                "", "no {} decryptor configured".format(wrapper))
        return decryptor.decrypt(ciphertext, self.key_refs.get(wrapper, ""))


def scan(root, decryptors=None, key_refs=None) -> ScanResult:
    return SecretSource(decryptors, key_refs).scan(root)
