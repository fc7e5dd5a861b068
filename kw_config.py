# Script: kw_config.py
# Part of Keywarden: directory group -> local accounts + authorized_keys
#
# Defaults live here and get overlaid from the environment at import time.
# systemd feeds the env from /etc/keywarden.env and /etc/keywarden.key.

import json
import logging
import os
import re

#=================#
# Global Settings #
#=================#

MIN_PYTHON_VERSION = (3, 10)
ADMIN_REQUIRED = True   # Daemon requires root

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
DEFAULT_INTERVAL = 900              # Seconds between directory polls
DEFAULT_SHELL = "/bin/bash"

GRANT_SUDO = True                   # One-time passwordless sudo for SUDO_GROUP
SUDO_GROUP = "wheel"
ACCOUNT_FLAVOUR = ""                # "" = detect from /etc/os-release

LOG_FILE = "/var/log/keywarden/keywarden.log"
STATE_DIR = "/var/lib/keywarden"
STATE_PATH = os.path.join(STATE_DIR, "state.json")
LOCK_PATH = os.path.join(STATE_DIR, ".lock")
MANAGED_SUDOERS_PREFIX = "/etc/sudoers.d/keywarden-"
OS_RELEASE = "/etc/os-release"

USERNAME_LOWERCASE = True
USERNAME_MAXLEN = 32

# Only keys in this state are provisioned
IAM_KEY_STATUS = "Active"

# Fernet key env var used to decrypt secrets stored in the env file
ENC_KEY_ENV = "KEYWARDEN_ENC_KEY"
ENV_AWS_SECRET_ENC = "KW_AWS_SECRET_ENC"

# System/builtin users we never manage (create/keys/delete)
RESERVED_USERS = {
    "root","daemon","bin","sys","sync","games","man","lp","mail","news",
    "uucp","proxy","www-data","backup","list","irc","gnats","nobody",
    "sshd","systemd-network","systemd-resolve","messagebus","ec2-user","ubuntu",
}

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":  "/usr/sbin/useradd",
  "adduser":  "/usr/sbin/adduser",
  "usermod":  "/usr/sbin/usermod",
  "userdel":  "/usr/sbin/userdel",
  "groupadd": "/usr/sbin/groupadd",
  "visudo":   "/usr/sbin/visudo",
  "id":       "/usr/bin/id",
  "getent":   "/usr/bin/getent",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_int
# Purpose : Read an integer env var with a default.
# Notes   : Logs and falls back on garbage.
def _env_int(name: str, default: int) -> int:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        logging.error("Bad integer in %s: %r", name, v)
        return default

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing/blank.
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name, "")
    if not v.strip():
        return default
    parts = [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]
    return parts or default

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return (v.strip() if v is not None else default)

# Function: _env_json
# Purpose : Parse JSON from an env var (objects/arrays).
# Notes   : Logs and returns default on parse failure.
def _env_json(name: str, default):
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return json.loads(v)
    except ValueError as e:
        logging.error("Bad JSON in %s: %s", name, e)
        return default

#===========================#
# Apply Environment Overrides
#===========================#

DEFAULT_INTERVAL = _env_int ("KW_INTERVAL", DEFAULT_INTERVAL)
DEFAULT_SHELL    = _env_str ("KW_DEFAULT_SHELL", DEFAULT_SHELL)

GRANT_SUDO       = _env_bool("KW_GRANT_SUDO", GRANT_SUDO)
SUDO_GROUP       = _env_str ("KW_SUDO_GROUP", SUDO_GROUP)
ACCOUNT_FLAVOUR  = _env_str ("KW_ACCOUNT_FLAVOUR", ACCOUNT_FLAVOUR).lower()

STATE_PATH       = _env_str ("KW_STATE_PATH", STATE_PATH)
LOG_FILE         = _env_str ("KW_LOG_FILE", LOG_FILE)

# Extra reserved names on top of the builtin list: "deploy ansible"
RESERVED_USERS   = RESERVED_USERS | set(_env_list("KW_RESERVED_USERS", []))

# Pinned binary overrides, e.g. {"adduser": "/usr/bin/adduser"}
BIN.update({k: v for k, v in (_env_json("KW_BIN_OVERRIDES", {}) or {}).items() if k in BIN and v})
