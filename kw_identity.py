# Script: kw_identity.py
# Part of Keywarden: directory group -> local accounts + authorized_keys
#
# Identity model plus the directory side (who should have an account).
# The IAM directory is the stock source; anything with list_group_members()
# can stand in for it.

import hashlib
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import kw_config as cfg

UNIX_LOGIN_RE = re.compile(r"^[a-z_][a-z0-9._-]*$")

#================#
# Errors         #
#================#

class InvalidIdentity(ValueError):
    """Identity record that must never reach the controller."""

class DirectoryError(RuntimeError):
    """Directory unreachable or returned something unusable; abort the cycle."""

#================#
# Identity model #
#================#

# Function: fncKeyFingerprint
# Purpose : Content digest of an ordered key list.
# Notes   : sha256 over keys joined with "\n"; hex so it can live in JSON.
def fncKeyFingerprint(keys) -> str:
    return hashlib.sha256(b"\n".join(keys)).hexdigest()

@dataclass(frozen=True)
class Identity:
    """One directory member: account name plus SSH public keys.

    ``fingerprint`` is derived from ``public_keys`` once, at construction.
    """
    id: str
    public_keys: tuple[bytes, ...] = ()
    fingerprint: str = field(init=False, compare=False)

    def __post_init__(self):
        keys = tuple(bytes(k) for k in self.public_keys)
        object.__setattr__(self, "public_keys", keys)
        object.__setattr__(self, "fingerprint", fncKeyFingerprint(keys))

    def authorized_keys(self) -> bytes:
        """File body: one key per line, newline-terminated, input order."""
        return b"".join(k + b"\n" for k in self.public_keys)

# Function: fncSanitiseUnix
# Purpose : Trim/sanitise a directory name to a Unix login.
# Notes   : Lowercases if configured, non [a-z0-9._-] -> "_", enforces max length.
def fncSanitiseUnix(name: str) -> str:
    name = (name or "").strip()
    if cfg.USERNAME_LOWERCASE:
        name = name.lower()
    name = re.sub(r"[^a-z0-9._-]", "_", name)
    return name[:cfg.USERNAME_MAXLEN]

# Function: fncNewIdentity
# Purpose : Build a validated Identity from raw directory data.
# Notes   : Raises InvalidIdentity for a bad login or when no usable key is left.
def fncNewIdentity(user_id: str, keys) -> Identity:
    if not user_id or not UNIX_LOGIN_RE.match(user_id) or len(user_id) > cfg.USERNAME_MAXLEN:
        raise InvalidIdentity(f"not a usable unix login: {user_id!r}")
    cleaned = []
    for k in keys or []:
        if isinstance(k, str):
            k = k.encode()
        k = k.strip()
        if k:
            cleaned.append(k)
    if not cleaned:
        raise InvalidIdentity(f"{user_id}: no public keys")
    return Identity(user_id, tuple(cleaned))

#=====================#
# Directory contract  #
#=====================#

class Directory(ABC):
    """Authoritative membership source."""

    @abstractmethod
    def list_group_members(self, group_name: str) -> list[Identity]:
        """Return every member of ``group_name`` with at least one key.

        Raises DirectoryError on any failure; partial answers are not allowed.
        """

#==============================================================#
#                          AWS IAM                             #
#==============================================================#

# Function: fncGetAwsSecretKey
# Purpose : Resolve the AWS secret access key from env (plaintext or Fernet-encrypted).
# Notes   : AWS_SECRET_ACCESS_KEY (plain) or KW_AWS_SECRET_ENC="fernet:<token>" with KEYWARDEN_ENC_KEY.
def fncGetAwsSecretKey() -> str | None:
    from cryptography.fernet import Fernet, InvalidToken

    plain = os.getenv("AWS_SECRET_ACCESS_KEY", "").strip()
    if plain:
        return plain

    enc = os.getenv(cfg.ENV_AWS_SECRET_ENC, "").strip()
    if enc.startswith("fernet:"):
        key_b64 = os.getenv(cfg.ENC_KEY_ENV, "").strip()
        if not key_b64:
            logging.error("Missing %s for decrypting %s", cfg.ENC_KEY_ENV, cfg.ENV_AWS_SECRET_ENC)
            return None
        try:
            token = enc.split(":", 1)[1]
            return Fernet(key_b64.encode()).decrypt(token.encode()).decode()
        except (InvalidToken, ValueError) as e:
            logging.error("Failed to decrypt %s: %s", cfg.ENV_AWS_SECRET_ENC, e or type(e).__name__)
            return None
    if enc:
        logging.error("Unknown %s format (expected 'fernet:...').", cfg.ENV_AWS_SECRET_ENC)
    return None

# Function: fncBuildAwsSession
# Purpose : Build the boto3 session the IAM directory talks through.
# Notes   : Explicit key pair when both halves are in env; else boto3's default chain.
def fncBuildAwsSession():
    import boto3

    access = os.getenv("AWS_ACCESS_KEY_ID", "").strip()
    region = os.getenv("AWS_REGION", "").strip() or os.getenv("AWS_DEFAULT_REGION", "").strip() or None
    if access:
        secret = fncGetAwsSecretKey()
        if not secret:
            raise DirectoryError("AWS_ACCESS_KEY_ID set but no usable secret key")
        logging.info("AWS: using explicit credentials (key=%s…)", access[:6])
        return boto3.Session(aws_access_key_id=access, aws_secret_access_key=secret, region_name=region)
    logging.info("AWS: using default credential chain")
    return boto3.Session(region_name=region)

class IamDirectory(Directory):
    """IAM group members with their SSH public keys (SSH encoding)."""

    def __init__(self, session=None, client=None):
        self.iam = client if client is not None else session.client("iam")

    def list_group_members(self, group_name: str) -> list[Identity]:
        from botocore.exceptions import BotoCoreError, ClientError

        members: list[Identity] = []
        owners: dict[str, list[str]] = {}
        try:
            names = []
            for page in self.iam.get_paginator("get_group").paginate(GroupName=group_name):
                names.extend(u["UserName"] for u in page.get("Users", []))

            for name in names:
                unix = fncSanitiseUnix(name)
                if unix != name.lower():
                    logging.warning("IAM user %s mapped to unix login %s", name, unix)
                owners.setdefault(unix, []).append(name)
                keys = self._user_keys(name)
                try:
                    members.append(fncNewIdentity(unix, keys))
                except InvalidIdentity as e:
                    logging.warning("Skipping IAM user %s: %s", name, e)
        except (BotoCoreError, ClientError) as e:
            raise DirectoryError(f"IAM group {group_name}: {e}") from e
        except (KeyError, TypeError, AttributeError) as e:
            raise DirectoryError(f"IAM group {group_name}: malformed IAM response ({type(e).__name__}: {e})") from e

        # two IAM users on one login would hand one person's account to the other
        clashes = {unix: who for unix, who in owners.items() if len(who) > 1}
        if clashes:
            detail = "; ".join(f"{unix} <- {', '.join(who)}" for unix, who in sorted(clashes.items()))
            raise DirectoryError(f"IAM group {group_name}: users collide on unix login: {detail}")

        logging.info("IAM group '%s': members=%d usable=%d", group_name, len(names), len(members))
        return members

    def _user_keys(self, user_name: str) -> list[bytes]:
        keys = []
        for page in self.iam.get_paginator("list_ssh_public_keys").paginate(UserName=user_name):
            for meta in page.get("SSHPublicKeys", []):
                if meta.get("Status") != cfg.IAM_KEY_STATUS:
                    logging.debug("IAM user %s key %s is %s; ignored",
                                  user_name, meta.get("SSHPublicKeyId"), meta.get("Status"))
                    continue
                out = self.iam.get_ssh_public_key(
                    UserName=user_name,
                    SSHPublicKeyId=meta["SSHPublicKeyId"],
                    Encoding="SSH",
                )
                keys.append(out["SSHPublicKey"]["SSHPublicKeyBody"].encode())
        return keys
