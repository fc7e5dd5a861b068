# Script: kw_accounts.py
# Part of Keywarden: directory group -> local accounts + authorized_keys
#
# Host side: create/delete local accounts and write their authorized_keys.
# Everything privileged goes through pinned binaries (kw_config.BIN) or
# plain fs calls; no shell, no pwd/grp.

import logging
import os
import stat
import subprocess
import tempfile
from abc import ABC, abstractmethod

import kw_config as cfg

#================#
# Errors         #
#================#

class AccountError(Exception):
    """Per-account failure; never fatal for a whole cycle."""

    def __init__(self, user_id: str, detail: str = ""):
        self.user_id = user_id
        self.detail = detail
        super().__init__(f"{user_id}: {detail}" if detail else user_id)

class AccountExists(AccountError):
    pass

class ProvisioningFailed(AccountError):
    pass

class AccountNotFound(AccountError):
    pass

class DeletionFailed(AccountError):
    pass

class AccountLookupFailed(AccountError):
    pass

class FilesystemError(AccountError):
    pass

class PartiallyProvisioned(ProvisioningFailed):
    """Account exists on the host but setup did not finish and could not be undone."""

class SudoersError(RuntimeError):
    """One-time sudo precondition could not be satisfied."""

#================#
# Exec helpers   #
#================#

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Uses BIN map for safety.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = cfg.BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except OSError as e:
        return 127, "", str(e)

def _assert_not_symlink(p: str):
    try:
        st = os.lstat(p)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise OSError(f"refusing to follow symlink: {p}")

#=========================#
# Adapter contract        #
#=========================#

class AccountAdapter(ABC):
    """What the controller needs from the host."""

    @abstractmethod
    def create_account(self, user_id: str) -> None:
        """Raises AccountExists or ProvisioningFailed."""

    @abstractmethod
    def delete_account(self, user_id: str) -> None:
        """Raises AccountNotFound or DeletionFailed."""

    @abstractmethod
    def write_authorized_keys(self, identity) -> None:
        """Raises AccountLookupFailed or FilesystemError."""

#=========================#
# Linux implementation    #
#=========================#

class LinuxAccounts(AccountAdapter):
    """useradd/userdel backed accounts; subclasses pick the create command."""

    flavour = "useradd"

    def __init__(self, runner=None, shell: str | None = None, sudo_group: str | None = None):
        self.run = runner or fncRun
        self.shell = shell or cfg.DEFAULT_SHELL
        self.sudo_group = sudo_group if sudo_group is not None else (cfg.SUDO_GROUP if cfg.GRANT_SUDO else "")

    def _create_command(self, user_id: str) -> tuple[str, list[str]]:
        return "useradd", ["-m", "-s", self.shell, user_id]

    # Function: account_exists
    # Purpose : Check whether a local account exists.
    # Notes   : Uses `id -u`; avoids importing pwd module.
    def account_exists(self, user_id: str) -> bool:
        rc, _, _ = self.run("id", ["-u", user_id])
        return rc == 0

    # Function: lookup
    # Purpose : Resolve (uid, gid, home) for an account.
    # Notes   : Parses `getent passwd`; name:pw:uid:gid:gecos:home:shell.
    def lookup(self, user_id: str) -> tuple[int, int, str]:
        rc, out, err = self.run("getent", ["passwd", user_id])
        if rc != 0 or not out:
            raise AccountLookupFailed(user_id, err or "no passwd entry")
        parts = out.splitlines()[0].split(":")
        if len(parts) < 7 or not parts[5]:
            raise AccountLookupFailed(user_id, f"unparseable passwd entry: {out!r}")
        try:
            return int(parts[2]), int(parts[3]), parts[5]
        except ValueError:
            raise AccountLookupFailed(user_id, f"bad uid/gid in passwd entry: {out!r}")

    def create_account(self, user_id: str) -> None:
        if self.account_exists(user_id):
            raise AccountExists(user_id, "account already exists")
        cmdkey, args = self._create_command(user_id)
        rc, _, err = self.run(cmdkey, args)
        if rc != 0:
            raise ProvisioningFailed(user_id, f"{cmdkey} rc={rc}: {err}")
        if self.sudo_group:
            rc, _, err = self.run("usermod", ["-aG", self.sudo_group, user_id])
            if rc != 0:
                detail = f"usermod -aG {self.sudo_group} rc={rc}: {err}"
                # half-made account: undo it so the next cycle starts clean
                urc, _, uerr = self.run("userdel", ["--remove", user_id])
                if urc != 0:
                    raise PartiallyProvisioned(user_id, f"{detail}; rollback userdel rc={urc}: {uerr}")
                logging.warning("Rolled back half-created account %s", user_id)
                raise ProvisioningFailed(user_id, detail)
        logging.debug("Created local user: %s (%s)", user_id, self.flavour)

    def delete_account(self, user_id: str) -> None:
        if not self.account_exists(user_id):
            raise AccountNotFound(user_id, "no such account")
        rc, _, err = self.run("userdel", ["--remove", user_id])
        if rc != 0:
            raise DeletionFailed(user_id, f"userdel rc={rc}: {err}")
        logging.debug("Deleted local user (and home): %s", user_id)

    # Function: write_authorized_keys
    # Purpose : Replace <home>/.ssh/authorized_keys with the identity's keys.
    # Notes   : mkstemp in .ssh -> fchown/fchmod/fsync -> os.replace; old file survives any failure.
    def write_authorized_keys(self, identity) -> None:
        uid, gid, home = self.lookup(identity.id)
        ssh_dir = os.path.join(home, ".ssh")
        path = os.path.join(ssh_dir, "authorized_keys")
        tmp = None
        try:
            _assert_not_symlink(ssh_dir)
            os.makedirs(ssh_dir, mode=0o700, exist_ok=True)
            os.chmod(ssh_dir, 0o700)
            _assert_not_symlink(path)

            fd, tmp = tempfile.mkstemp(prefix=".authorized_keys-", dir=ssh_dir)
            try:
                os.write(fd, identity.authorized_keys())
                os.fchown(fd, uid, gid)
                os.fchmod(fd, 0o600)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp, path)
            tmp = None
            os.chown(ssh_dir, uid, gid)
        except OSError as e:
            raise FilesystemError(identity.id, f"{path}: {e}") from e
        finally:
            if tmp is not None:
                try:
                    os.remove(tmp)
                except FileNotFoundError:
                    pass
        logging.debug("Wrote %d key(s) to %s", len(identity.public_keys), path)

class UseraddAccounts(LinuxAccounts):
    pass

class DebianAccounts(LinuxAccounts):
    flavour = "debian"

    def _create_command(self, user_id: str) -> tuple[str, list[str]]:
        return "adduser", ["--disabled-password", "--gecos", "", "--shell", self.shell, user_id]

FLAVOURS = {
    "useradd": UseraddAccounts,
    "debian": DebianAccounts,
}

# Function: fncDetectFlavour
# Purpose : Pick the account-creation flavour for this host.
# Notes   : Debian/Ubuntu family -> adduser; everything else -> useradd.
def fncDetectFlavour(os_release: str | None = None) -> str:
    path = os_release or cfg.OS_RELEASE
    try:
        with open(path, "r") as f:
            text = f.read().lower()
    except OSError as e:
        logging.warning("Could not read %s (%s); assuming useradd", path, e)
        return "useradd"
    ids = set()
    for line in text.splitlines():
        if line.startswith(("id=", "id_like=")):
            ids.update(line.split("=", 1)[1].strip().strip('"').split())
    return "debian" if ids & {"debian", "ubuntu"} else "useradd"

# Function: fncAccountsForFlavour
# Purpose : Build the adapter for a flavour name.
# Notes   : Unknown names are a config error (ValueError).
def fncAccountsForFlavour(name: str, **kwargs) -> LinuxAccounts:
    try:
        cls = FLAVOURS[name]
    except KeyError:
        raise ValueError(f"unknown account flavour {name!r} (expected one of {sorted(FLAVOURS)})")
    return cls(**kwargs)

#======================================#
# One-time privilege precondition      #
#======================================#

# Function: fncEnsureGroup
# Purpose : Ensure a Unix group exists (create if missing).
# Notes   : Uses getent for existence check; logs creation.
def fncEnsureGroup(name: str, runner=None) -> None:
    run = runner or fncRun
    rc, _, _ = run("getent", ["group", name])
    if rc == 0:
        return
    rc, _, err = run("groupadd", [name])
    if rc != 0:
        raise SudoersError(f"failed to create group {name}: {err}")
    logging.info("Created group: %s", name)

# Function: fncEnableGroupSudo
# Purpose : Give a group passwordless sudo via a managed sudoers.d drop-in.
# Notes   : Validates with visudo before atomic replace; no-op when already in place.
def fncEnableGroupSudo(group: str, runner=None, prefix: str | None = None) -> bool:
    run = runner or fncRun
    fncEnsureGroup(group, runner=run)

    path = f"{prefix or cfg.MANAGED_SUDOERS_PREFIX}{group}"
    expected = f"%{group} ALL=(ALL) NOPASSWD: ALL\n"

    try:
        _assert_not_symlink(path)
        if os.path.exists(path):
            with open(path, "r") as f:
                if f.read() == expected:
                    logging.debug("Sudoers for %%%s already in place", group)
                    return False

        d = os.path.dirname(path)
        fd, tmp = tempfile.mkstemp(prefix=".keywarden-", dir=d)
        try:
            os.write(fd, expected.encode())
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp, 0o440)

        rc, _, err = run("visudo", ["-cf", tmp])
        if rc != 0:
            os.remove(tmp)
            raise SudoersError(f"visudo validation failed for %{group}: {err}")

        _assert_not_symlink(path)
        os.replace(tmp, path)
    except OSError as e:
        raise SudoersError(f"cannot write {path}: {e}") from e
    logging.info("Enabled passwordless sudo for %%%s at %s", group, path)
    return True
