#!/usr/bin/env python3
import argparse
import hashlib
import os
import re
import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path

from colorama import init as _cinit, Fore as F, Style as S

# ============================
# Paths & constants
# ============================
ROOT_DIR = Path(__file__).resolve().parent
MODULES = ["keywarden.py", "kw_config.py", "kw_identity.py", "kw_accounts.py", "kw_state.py", "kw_reconcile.py"]
REQS = ROOT_DIR / "requirements.txt"
VERSION = "1.0.0"

# System paths
INSTALL_DIR = Path("/opt/keywarden")
SERVICE = Path("/etc/systemd/system/keywarden.service")
LOGDIR = Path("/var/log/keywarden")
STATEDIR = Path("/var/lib/keywarden")
ENVFILE = Path("/etc/keywarden.env")
KEYFILE = Path("/etc/keywarden.key")          # separate env file, 0600
LOGROTATE = Path("/etc/logrotate.d/keywarden")
SUDOERS_GLOB = "/etc/sudoers.d/keywarden-*"
ENC_KEY_ENV = "KEYWARDEN_ENC_KEY"             # the env var name holding the Fernet key
PLAIN_SECRET_ENV = "AWS_SECRET_ACCESS_KEY"
ENC_SECRET_ENV = "KW_AWS_SECRET_ENC"
ENV_ASSIGN_RE = re.compile(r"""^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^\s#]+))\s*(?:#.*)?$""")

BANNER = r"""
  _  __                               _
 | |/ /___ _   ___      ____ _ _ __ __| | ___ _ __
 | ' // _ \ | | \ \ /\ / / _` | '__/ _` |/ _ \ '_ \
 | . \  __/ |_| |\ V  V / (_| | | | (_| |  __/ | | |
 |_|\_\___|\__, | \_/\_/ \__,_|_|  \__,_|\___|_| |_|
           |___/
        Directory group in, local accounts out.
"""

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "blue": F.BLUE,
        "magenta": F.MAGENTA, "cyan": F.CYAN, "white": F.WHITE, "gray": F.LIGHTBLACK_EX,
        "bold": S.BRIGHT, "dim": S.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg)

# ============================
# Core helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        print("[-] This script must be run as root (try sudo)")
        sys.exit(1)

def fncSha256Sum(filepath: Path) -> str:
    h = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()

def fncRun(cmd: list[str]):
    print(f"[*] Running: {' '.join(cmd)}")
    subprocess.run(cmd, check=True)

def fncInstallRequirements():
    if REQS.exists():
        print(f"[*] Found {REQS}, installing dependencies...")
        try:
            fncRun(["pip3", "install", "-r", str(REQS), "--break-system-packages"])
            print("[+] Requirements installed successfully")
        except subprocess.CalledProcessError:
            print("[-] Failed to install requirements.txt")
            sys.exit(1)
    else:
        print("[i] No requirements.txt found, skipping dependency installation.")

def fncPrintBanner():
    print(F.CYAN + BANNER + S.RESET_ALL)
    print(f"Keywarden installer v{VERSION}\n")

def fncShQuote(val: str) -> str:
    """Safe-ish single-quoted value for env files."""
    if val is None:
        val = ""
    return "'" + val.replace("'", "'\"'\"'") + "'"

def fncGenerateKey() -> str:
    from cryptography.fernet import Fernet
    return Fernet.generate_key().decode()

def fncEnsureKeyfile(path: Path = KEYFILE):
    """Ensure the key file exists with a Fernet key (mode 0600)."""
    try:
        if path.exists():
            os.chmod(path, 0o600)
            return
        path.write_text(f"{ENC_KEY_ENV}={fncGenerateKey()}\n")
        os.chmod(path, 0o600)
        fncOk(f"Created encryption key file {path} (mode 0600)")
    except OSError as e:
        fncErr(f"Could not create {path}: {e}")
        sys.exit(1)

def _fncParseKeyfile(path: Path) -> str | None:
    try:
        if not path.exists():
            return None
        for line in path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                k, v = line.split("=", 1)
                if k.strip() == ENC_KEY_ENV:
                    return v.strip()
    except OSError:
        return None
    return None

def fncLoadEncKey(path: Path = KEYFILE) -> str | None:
    """Prefer env (runtime), else the keyfile (installer/update)."""
    val = os.environ.get(ENC_KEY_ENV, "").strip()
    if val:
        return val
    return _fncParseKeyfile(path)

def fncEncryptSecretFernet(secret: str, key_b64: str) -> str:
    from cryptography.fernet import Fernet
    token = Fernet(key_b64.encode()).encrypt(secret.encode()).decode()
    return f"fernet:{token}"

def fncEnvBackupPath(p: Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    return p.with_suffix(p.suffix + f".bak-{ts}")

def fncEncryptIfNeededInEnv(env_path: Path = ENVFILE, key_path: Path = KEYFILE) -> bool:
    """
    If AWS_SECRET_ACCESS_KEY (plaintext) is set, encrypt it into KW_AWS_SECRET_ENC
    and blank the plaintext line. Returns True when the file was rewritten.
    """
    if not env_path.exists():
        fncInfo(f"No env at {env_path}; nothing to migrate.")
        return False

    enc_key = fncLoadEncKey(key_path)
    if not enc_key:
        fncErr(f"Missing encryption key for migration. Expected {key_path} with {ENC_KEY_ENV}. Aborting migration.")
        return False

    lines = env_path.read_text().splitlines(keepends=False)
    plain_val, plain_idx, enc_idx = None, None, None
    for idx, line in enumerate(lines):
        m = ENV_ASSIGN_RE.match(line)
        if not m:
            continue
        key = m.group(1)
        val = m.group(2) or m.group(3) or m.group(4) or ""
        if key == PLAIN_SECRET_ENV and val.strip():
            plain_val, plain_idx = val, idx
        elif key == ENC_SECRET_ENV and val.strip():
            enc_idx = idx

    if plain_val is None:
        fncInfo("Env examined; no changes required.")
        return False

    blob = fncEncryptSecretFernet(plain_val, enc_key)
    if enc_idx is None:
        lines.append(f"{ENC_SECRET_ENV}={fncShQuote(blob)}")
    else:
        lines[enc_idx] = f"{ENC_SECRET_ENV}={fncShQuote(blob)}"
    lines[plain_idx] = f"{PLAIN_SECRET_ENV}=''"

    backup = fncEnvBackupPath(env_path)
    try:
        shutil.copy2(env_path, backup)
        fncInfo(f"Backed up env to {fncColor(str(backup), 'white', 'bold')}")
    except OSError as e:
        fncWarn(f"Could not backup env file ({e}); proceeding carefully.")

    env_path.write_text("\n".join(lines) + "\n")
    os.chmod(env_path, 0o600)
    fncOk("Env migration complete: plaintext secret removed, encrypted value stored.")
    return True

# ============================
# Env file
# ============================
def fncRenderEnvfile(group: str, interval: int, region: str = "", access_key: str = "",
                     secret_blob: str = "", grant_sudo: bool = True, sudo_group: str = "wheel",
                     flavour: str = "") -> str:
    """Env file body. secret_blob is already 'fernet:...'; plaintext never lands here."""
    lines = [
        "# Keywarden runtime configuration (generated by installer.py)",
        f"# {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"KW_GROUP_NAME={fncShQuote(group)}",
        f"KW_INTERVAL={int(interval)}",
        f"KW_GRANT_SUDO={'1' if grant_sudo else '0'}",
        f"KW_SUDO_GROUP={fncShQuote(sudo_group)}",
        f"KW_ACCOUNT_FLAVOUR={fncShQuote(flavour)}",
    ]
    if region:
        lines.append(f"AWS_REGION={fncShQuote(region)}")
    if access_key:
        lines += [
            f"AWS_ACCESS_KEY_ID={fncShQuote(access_key)}",
            f"{PLAIN_SECRET_ENV}=''",
            f"{ENC_SECRET_ENV}={fncShQuote(secret_blob)}",
        ]
    return "\n".join(lines) + "\n"

def fncBuildEnvfileContent() -> str:
    """Interactive wizard around fncRenderEnvfile."""
    from getpass import getpass

    def ask_bool(q: str, default: bool = True) -> bool:
        hint = "Y/n" if default else "y/N"
        while True:
            a = input(f"{fncColor(q, 'cyan', 'bold')} {fncColor(f'[{hint}]', 'gray')}: ").strip().lower()
            if not a:
                return default
            if a in ("y", "yes"):
                return True
            if a in ("n", "no"):
                return False
            fncWarn("Please answer y or n.")

    def ask_nonempty(q: str, default: str | None = None) -> str:
        while True:
            prompt = f"{fncColor(q, 'cyan', 'bold')}{fncColor(f' [{default}]', 'gray') if default else ''}: "
            a = input(prompt).strip()
            if a:
                return a
            if default is not None:
                return default
            fncWarn("Value cannot be empty.")

    print()
    fncHeading("== Keywarden — Runtime configuration ==")
    group = ask_nonempty("IAM group whose members get local accounts")
    while True:
        raw = ask_nonempty("Polling interval in seconds", default="900")
        if raw.isdigit() and int(raw) > 0:
            interval = int(raw)
            break
        fncWarn("Interval must be a positive whole number.")
    region = input(fncColor("AWS region (blank = default chain): ", "cyan", "bold")).strip()
    grant_sudo = ask_bool("Give managed users passwordless sudo via a group?", default=True)
    sudo_group = ask_nonempty("Sudo group", default="wheel") if grant_sudo else "wheel"

    fncHeading("\n== AWS credentials ==")
    access_key, blob = "", ""
    if ask_bool("Store an access key pair (no = instance role / default chain)?", default=False):
        access_key = ask_nonempty("AWS_ACCESS_KEY_ID")
        secret = getpass(fncColor("AWS_SECRET_ACCESS_KEY (hidden): ", "cyan", "bold")).strip()
        enc_key = fncLoadEncKey()
        if not enc_key:
            fncErr(f"No encryption key in {KEYFILE}; cannot store secret.")
            sys.exit(1)
        blob = fncEncryptSecretFernet(secret, enc_key)
        fncOk(f"Encrypted secret stored as {ENC_SECRET_ENV}.")

    return fncRenderEnvfile(group, interval, region=region, access_key=access_key,
                            secret_blob=blob, grant_sudo=grant_sudo, sudo_group=sudo_group)

def fncWriteEnvfile(content: str, path: Path = ENVFILE):
    if path.exists():
        fncInfo(f"Updating {path}")
    else:
        fncOk(f"Creating {path}")
    path.write_text(content)
    os.chmod(path, 0o600)
    fncOk("Wrote config to " + fncColor(str(path), "white", "bold") + " (mode 0600)")

# ============================
# Files & units
# ============================
def fncCopyModules(src_dir: Path = ROOT_DIR, dst_dir: Path = INSTALL_DIR) -> dict[str, str]:
    """Copy daemon modules, verify each copy by sha256; returns {name: sha}."""
    dst_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(dst_dir, 0o700)
    manifest = {}
    for name in MODULES:
        src = src_dir / name
        if not src.exists():
            fncErr(f"Local source not found: {src}")
            sys.exit(1)
        dst = dst_dir / name
        shutil.copy2(src, dst)
        os.chmod(dst, 0o600)
        want, have = fncSha256Sum(src), fncSha256Sum(dst)
        if want != have:
            fncErr(f"Post-copy SHA mismatch for {name}! Aborting.")
            sys.exit(1)
        manifest[name] = have
    os.chmod(dst_dir / "keywarden.py", 0o700)
    return manifest

def fncChangedModules(src_dir: Path = ROOT_DIR, dst_dir: Path = INSTALL_DIR) -> list[str]:
    changed = []
    for name in MODULES:
        dst = dst_dir / name
        if not dst.exists() or fncSha256Sum(src_dir / name) != fncSha256Sum(dst):
            changed.append(name)
    return changed

def fncRenderServiceUnit() -> str:
    return f"""[Unit]
Description=Keywarden — directory group to local account/SSH key sync
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
EnvironmentFile=-{ENVFILE}
EnvironmentFile=-{KEYFILE}
ExecStart=/usr/bin/python3 {INSTALL_DIR / 'keywarden.py'}
Restart=on-failure
RestartSec=30
KillSignal=SIGTERM
TimeoutStopSec=300
User=root

[Install]
WantedBy=multi-user.target
"""

def fncWriteUnits():
    SERVICE.write_text(fncRenderServiceUnit())
    fncOk(f"Wrote service unit: {SERVICE}")

# ============================
# Actions
# ============================
def fncDoInstall():
    fncRequireRoot()
    fncHeading("[*] Installing Keywarden...")

    fncInstallRequirements()
    fncEnsureKeyfile()

    manifest = fncCopyModules()
    for name, sha in manifest.items():
        fncInfo(f"{name}: {fncColor(sha, 'white', 'bold')}")
    fncOk(f"Installed modules to {INSTALL_DIR}")

    for d in (LOGDIR, STATEDIR):
        d.mkdir(mode=0o750, parents=True, exist_ok=True)
    fncOk(f"Ensured {LOGDIR} and {STATEDIR}")

    fncWriteEnvfile(fncBuildEnvfileContent())
    fncWriteUnits()

    fncRun(["systemctl", "daemon-reload"])
    fncRun(["systemctl", "enable", "--now", "keywarden.service"])
    fncOk("Enabled and started keywarden.service")
    fncInfo("Check logs: " + fncColor("journalctl -u keywarden.service -n 200 --no-pager", "white", "bold"))

def fncDoUpdate(auto_restart: bool = False):
    fncRequireRoot()
    fncHeading("[*] Updating Keywarden...")

    if not (INSTALL_DIR / "keywarden.py").exists():
        fncErr("Installed daemon not found, did you run install first?")
        sys.exit(1)

    fncEnsureKeyfile()
    fncEncryptIfNeededInEnv(ENVFILE)

    changed = fncChangedModules()
    if not changed:
        fncWarn("Installed modules already match local — no update needed.")
    else:
        fncInfo("Changed: " + ", ".join(changed))
        fncCopyModules()
        fncWriteUnits()
        fncRun(["systemctl", "daemon-reload"])
        fncOk("Modules updated and verified.")

    if auto_restart:
        fncRun(["systemctl", "restart", "keywarden.service"])
        fncOk("Service restarted.")
    else:
        fncInfo("Restart the service with: "
                + fncColor("sudo systemctl restart keywarden.service", "white", "bold"))

def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("[*] Uninstalling Keywarden...")

    for verb in ("stop", "disable"):
        try:
            fncRun(["systemctl", verb, "keywarden.service"])
        except subprocess.CalledProcessError:
            fncWarn(f"systemctl {verb} keywarden.service failed (not installed?)")

    targets = [("service unit", SERVICE), ("modules", INSTALL_DIR), ("logrotate", LOGROTATE)]
    if purge:
        # state goes too: accounts it created stay on the host, unmanaged
        targets += [("env", ENVFILE), ("key", KEYFILE), ("logs", LOGDIR), ("state", STATEDIR)]
        targets += [("sudoers", p) for p in sorted(Path("/").glob(SUDOERS_GLOB.lstrip("/")))]
    else:
        fncInfo(f"Keeping {ENVFILE}, {KEYFILE}, {LOGDIR} and {STATEDIR} (use --purge to remove).")

    for label, path in targets:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
                fncOk(f"Removed {label}: {path}")
            elif path.exists() or path.is_symlink():
                path.unlink()
                fncOk(f"Removed {label}: {path}")
            else:
                fncInfo(f"Not present: {label} ({path})")
        except OSError as e:
            fncWarn(f"Failed to remove {label} {path}: {e}")

    try:
        fncRun(["systemctl", "daemon-reload"])
    except subprocess.CalledProcessError:
        fncWarn("systemctl daemon-reload failed")
    fncOk("Uninstall complete.")

# ============================
# Entry point
# ============================
def fncMain(argv=None):
    parser = argparse.ArgumentParser(description="Installer/Updater for Keywarden")
    parser.add_argument("action", choices=["install", "update", "uninstall"], help="Action to perform")
    parser.add_argument("--restart", action="store_true", help="Auto-restart service after update")
    parser.add_argument("--purge", action="store_true", help="Also remove env, key, logs, state and sudoers drop-ins")
    parser.add_argument("--no-color", action="store_true", help="Plain output")
    args = parser.parse_args(argv)
    fncSetColorMode(args.no_color)

    fncPrintBanner()
    if args.action == "install":
        fncDoInstall()
    elif args.action == "update":
        fncDoUpdate(auto_restart=args.restart)
    elif args.action == "uninstall":
        fncDoUninstall(purge=args.purge)

if __name__ == "__main__":
    fncMain()
