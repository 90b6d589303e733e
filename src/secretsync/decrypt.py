"""Decryptors turn the ciphertext of a source document into plaintext.

A decryptor is a capability: ``decrypt(ciphertext, key_ref)`` returns the
plaintext bytes or raises one of :py:class:`secretsync.KeyUnavailable`,
:py:class:`secretsync.AccessDenied` or
:py:class:`secretsync.CorruptCiphertext`. The returned bytes are handed to the
document parser and never written anywhere.

"""
import os
import subprocess
import sys
import tempfile
from typing import Dict, List, Optional

import pyrage
from cryptography.hazmat.primitives import serialization

from secretsync import (
    AccessDenied,
    CorruptCiphertext,
    KeyUnavailable,
    output,
)

debug = False


class Decryptor(object):

    #: The file suffix (without dot) this decryptor is registered for.
    suffix: Optional[str] = None

    def decrypt(self, ciphertext: bytes, key_ref: str = "") -> bytes:
        raise NotImplementedError("decrypt() not implemented")


DEFAULT_SSH_IDENTITIES = [
    "~/.ssh/id_rsa",
    "~/.ssh/id_ecdsa",
    "~/.ssh/id_ecdsa_sk",
    "~/.ssh/id_ed25519",
    "~/.ssh/id_ed25519_sk",
    "~/.ssh/id_dsa",
]

AGE_HEADERS = (b"age-encryption.org/v1", b"-----BEGIN AGE ENCRYPTED FILE-----")


class AgeDecryptor(Decryptor):
    """Decrypt age files with SSH or native age identities.

    The key reference is a comma separated list of identity files. If it is
    empty, ``SECRETSYNC_AGE_IDENTITIES`` is consulted and finally the usual
    SSH private keys in ``~/.ssh``.

    """

    suffix = "age"

    def __init__(self):
        self._identities: Dict[str, list] = {}

    def identity_paths(self, key_ref: str = "") -> List[str]:
        candidates = key_ref or os.environ.get("SECRETSYNC_AGE_IDENTITIES", "")
        candidates = [x.strip() for x in candidates.split(",") if x.strip()]
        if not candidates:
            candidates = DEFAULT_SSH_IDENTITIES
        return [
            os.path.expanduser(x)
            for x in candidates
            if os.path.exists(os.path.expanduser(x))
        ]

    def load_identity(self, path):
        with open(path, "rb") as f:
            key_content = f.read()
        if key_content.lstrip().startswith(b"AGE-SECRET-KEY-") or (
                b"\nAGE-SECRET-KEY-" in key_content):
            for line in key_content.decode("ascii").splitlines():
                if line.startswith("AGE-SECRET-KEY-"):
                    return pyrage.x25519.Identity.from_str(line.strip())
        try:
            priv_key = serialization.load_ssh_private_key(key_content, None)
        except (TypeError, ValueError):
            passphrase = os.environ.get("SECRETSYNC_AGE_IDENTITY_PASSPHRASE")
            if not passphrase:
                raise
            priv_key = serialization.load_ssh_private_key(
                key_content, passphrase.encode("utf-8"))
        pkey = priv_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.OpenSSH,
            serialization.NoEncryption(),
        )
        return pyrage.ssh.Identity.from_buffer(pkey)

    def identities(self, key_ref: str = ""):
        if key_ref in self._identities:
            return self._identities[key_ref]
        identities = []
        for path in self.identity_paths(key_ref):
            try:
                identities.append(self.load_identity(path))
            except Exception as e:
                output.warn(
                    "Ignoring age identity {}: {}".format(
                        path, e.__class__.__name__),
                    debug=True)
                continue
        if debug:
            print(f"Loaded {len(identities)} age identities", file=sys.stderr)
        self._identities[key_ref] = identities
        return identities

    def decrypt(self, ciphertext, key_ref=""):
        if not ciphertext.lstrip().startswith(AGE_HEADERS):
            raise CorruptCiphertext.from_context(
                "", "not an age encrypted file")
        identities = self.identities(key_ref)
        if not identities:
            raise KeyUnavailable.from_context(
                "", "no usable age identity found")
        try:
            return pyrage.decrypt(ciphertext, identities)
        except pyrage.DecryptError as e:
            message = str(e)
            if "header" in message.lower() or "parse" in message.lower():
                raise CorruptCiphertext.from_context("", message) from e
            raise KeyUnavailable.from_context(
                "", "none of the age identities matched") from e


class GPGDecryptor(Decryptor):
    """Decrypt with the gpg binary.

    A non-empty key reference is used as the GnuPG home directory.

    """

    suffix = "gpg"

    _gpg = None
    GPG_BINARY_CANDIDATES = ["gpg", "gpg2"]

    @classmethod
    def gpg(cls):
        if cls._gpg is not None:
            return cls._gpg
        with tempfile.TemporaryFile() as null:
            for gpg in cls.GPG_BINARY_CANDIDATES:
                args = [gpg, "--version"]
                try:
                    subprocess.check_call(args, stdout=null, stderr=null)
                except (subprocess.CalledProcessError, OSError):
                    pass
                else:
                    cls._gpg = gpg
                    return cls._gpg
        raise KeyUnavailable.from_context(
            "",
            "Could not find gpg binary."
            " Is GPG installed? I tried looking for: {}".format(
                ", ".join("`{}`".format(x) for x in cls.GPG_BINARY_CANDIDATES)
            ),
        )

    def decrypt(self, ciphertext, key_ref=""):
        args = [self.gpg(), "--batch", "--quiet", "--decrypt"]
        if key_ref:
            args[1:1] = ["--homedir", key_ref]

        if debug:
            print(f"Running `{args}`", file=sys.stderr)

        p = subprocess.run(
            args,
            input=ciphertext,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        if p.returncode == 0:
            return p.stdout
        stderr = p.stderr.decode("ascii", errors="replace")
        problem = "gpg exited with {}: {}".format(
            p.returncode, " ".join(stderr.strip().splitlines()[-1:]))
        lowered = stderr.lower()
        if "no secret key" in lowered or "no pinentry" in lowered:
            raise KeyUnavailable.from_context("", problem)
        if "permission denied" in lowered or "operation cancelled" in lowered:
            raise AccessDenied.from_context("", problem)
        raise CorruptCiphertext.from_context("", problem)


# sops exit codes, see sops' cmd/sops/codes package.
SOPS_KEY_ERRORS = (128, 111)
SOPS_CORRUPT_ERRORS = (4, 24, 25, 51, 52)


class SopsDecryptor(Decryptor):
    """Decrypt SOPS documents (YAML or JSON) with the sops binary.

    The master key (KMS, age, PGP, ...) is taken from the document itself.
    A key reference of the form ``aws:<profile>`` selects an AWS profile,
    any other non-empty reference is used as ``SOPS_AGE_KEY_FILE``.

    """

    suffix = "sops"
    binary = "sops"

    def input_type(self, ciphertext):
        if ciphertext.lstrip().startswith(b"{"):
            return "json"
        return "yaml"

    def environment(self, key_ref):
        env = os.environ.copy()
        if key_ref.startswith("aws:"):
            env["AWS_PROFILE"] = key_ref[len("aws:"):]
        elif key_ref:
            env["SOPS_AGE_KEY_FILE"] = os.path.expanduser(key_ref)
        return env

    def decrypt(self, ciphertext, key_ref=""):
        input_type = self.input_type(ciphertext)
        # Only ciphertext touches the disk here.
        with tempfile.NamedTemporaryFile(suffix="." + input_type) as f:
            f.write(ciphertext)
            f.flush()
            args = [
                self.binary, "--decrypt",
                "--input-type", input_type,
                "--output-type", input_type,
                f.name]
            if debug:
                print(f"Running `{args}`", file=sys.stderr)
            try:
                p = subprocess.run(
                    args,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=self.environment(key_ref),
                )
            except OSError as e:
                raise KeyUnavailable.from_context(
                    "", "Could not find sops binary. Is sops installed?"
                ) from e
        if p.returncode == 0:
            return p.stdout
        stderr = p.stderr.decode("utf-8", errors="replace")
        problem = "sops exited with {}".format(p.returncode)
        if "AccessDenied" in stderr or "not authorized" in stderr:
            raise AccessDenied.from_context("", problem)
        if p.returncode in SOPS_KEY_ERRORS:
            raise KeyUnavailable.from_context("", problem)
        raise CorruptCiphertext.from_context("", problem)


def default_decryptors() -> Dict[str, Decryptor]:
    return {
        d.suffix: d
        for d in [AgeDecryptor(), GPGDecryptor(), SopsDecryptor()]
    }
