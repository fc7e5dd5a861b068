# Script: kw_state.py
# Part of Keywarden: directory group -> local accounts + authorized_keys
#
# What we last applied, per account. This file is trusted over the live OS:
# a missing file means "nothing applied yet", a damaged one stops the daemon.

import base64
import binascii
import hashlib
import json
import logging
import os
import stat
import tempfile

import kw_config as cfg
from kw_identity import Identity

STATE_VERSION = 1

#================#
# Errors         #
#================#

class StateError(Exception):
    pass

class CorruptState(StateError):
    """State file exists but can't be trusted. Operator has to look at it."""

class StateWriteError(StateError):
    pass

#================#
# Serialisation  #
#================#

def _canonical(users_doc: dict) -> str:
    return json.dumps(users_doc, sort_keys=True, separators=(",", ":"))

def _checksum(users_doc: dict) -> str:
    return hashlib.sha256(_canonical(users_doc).encode()).hexdigest()

# Function: fncEncodeState
# Purpose : Turn the applied map into the on-disk JSON text.
# Notes   : Deterministic (sorted keys, fixed indent) so save(load()) is byte-identical.
def fncEncodeState(users: dict[str, Identity]) -> str:
    users_doc = {
        uid: {
            "fingerprint": ident.fingerprint,
            "public_keys": [base64.b64encode(k).decode("ascii") for k in ident.public_keys],
        }
        for uid, ident in users.items()
    }
    doc = {"checksum": _checksum(users_doc), "users": users_doc, "version": STATE_VERSION}
    return json.dumps(doc, sort_keys=True, indent=2) + "\n"

# Function: fncDecodeState
# Purpose : Parse and verify on-disk JSON text back into the applied map.
# Notes   : Any doubt -> CorruptState. Never returns a partial map.
def fncDecodeState(text: str) -> dict[str, Identity]:
    try:
        doc = json.loads(text)
    except ValueError as e:
        raise CorruptState(f"not valid JSON: {e}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("users"), dict):
        raise CorruptState("missing users mapping")
    if doc.get("version") != STATE_VERSION:
        raise CorruptState(f"unsupported state version: {doc.get('version')!r}")
    users_doc = doc["users"]
    if doc.get("checksum") != _checksum(users_doc):
        raise CorruptState("checksum mismatch")

    users: dict[str, Identity] = {}
    for uid, entry in users_doc.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("public_keys"), list):
            raise CorruptState(f"{uid}: malformed entry")
        try:
            keys = tuple(base64.b64decode(k, validate=True) for k in entry["public_keys"])
        except (binascii.Error, TypeError, ValueError) as e:
            raise CorruptState(f"{uid}: bad key encoding: {e}") from e
        ident = Identity(uid, keys)
        if ident.fingerprint != entry.get("fingerprint"):
            raise CorruptState(f"{uid}: fingerprint does not match stored keys")
        users[uid] = ident
    return users

#================#
# Store          #
#================#

class StateStore:
    """Single JSON file, replaced atomically on every save."""

    def __init__(self, path: str | None = None):
        self.path = path or cfg.STATE_PATH

    def _check_regular(self):
        try:
            st = os.lstat(self.path)
        except FileNotFoundError:
            return False
        if not stat.S_ISREG(st.st_mode):
            raise CorruptState(f"{self.path} is not a regular file")
        return True

    def load(self) -> dict[str, Identity]:
        if not self._check_regular():
            logging.info("No state at %s; starting empty", self.path)
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                text = f.read()
        except UnicodeDecodeError as e:
            raise CorruptState(f"{self.path}: not UTF-8: {e}") from e
        except OSError as e:
            raise CorruptState(f"{self.path}: unreadable: {e}") from e
        try:
            users = fncDecodeState(text)
        except CorruptState as e:
            raise CorruptState(f"{self.path}: {e}") from e
        logging.info("Loaded state for %d account(s) from %s", len(users), self.path)
        return users

    def save(self, users: dict[str, Identity]) -> None:
        data = fncEncodeState(users).encode("utf-8")
        d = os.path.dirname(os.path.abspath(self.path))
        tmp = None
        try:
            os.makedirs(d, mode=0o750, exist_ok=True)
            st = None
            try:
                st = os.lstat(self.path)
            except FileNotFoundError:
                pass
            if st is not None and stat.S_ISLNK(st.st_mode):
                raise OSError(f"refusing to overwrite symlink: {self.path}")

            fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=d)
            try:
                os.write(fd, data)
                os.fchmod(fd, 0o600)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp, self.path)
            tmp = None

            dfd = os.open(d, os.O_RDONLY)
            try:
                os.fsync(dfd)
            finally:
                os.close(dfd)
        except OSError as e:
            raise StateWriteError(f"{self.path}: {e}") from e
        finally:
            if tmp is not None:
                try:
                    os.remove(tmp)
                except FileNotFoundError:
                    pass
        logging.debug("Saved state for %d account(s) to %s", len(users), self.path)
