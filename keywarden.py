#!/usr/bin/env python3
# Script: keywarden.py
#
# What this does:
# - Poll a directory group (AWS IAM by default) every --interval seconds
# - Create a local account for each member and write ~/.ssh/authorized_keys
# - Rewrite keys only when the key fingerprint changed
# - Delete accounts whose owner left the group
# - Remember what was applied in /var/lib/keywarden/state.json
# - Logs to /var/log/keywarden/keywarden.log

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import os
import signal
import sys
import threading

# Third-party
from colorama import Fore, Style

# Local
import kw_config as cfg
from kw_accounts import SudoersError, fncAccountsForFlavour, fncDetectFlavour, fncEnableGroupSudo
from kw_identity import DirectoryError, IamDirectory, fncBuildAwsSession
from kw_reconcile import Controller
from kw_state import CorruptState, StateStore

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CYCLE_ERRORS = 2

# Lockfile so two daemons don't stampede each other
_LOCK_FH = None

#===================#
# Utility / Logging #
#===================#

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for important user-facing prints (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.YELLOW + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < cfg.MIN_PYTHON_VERSION:
        fncPrintMessage("Keywarden requires Python %d.%d or higher." % cfg.MIN_PYTHON_VERSION, "error")
        sys.exit(EXIT_FATAL)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root when ADMIN_REQUIRED is True.
def fncAdminCheck():
    if cfg.ADMIN_REQUIRED and os.geteuid() != 0:
        fncPrintMessage("Keywarden manages local accounts and needs root.", "error")
        sys.exit(EXIT_FATAL)

# Function: fncBootstrapPaths
# Purpose : Create required directories and apply conservative permissions.
# Notes   : Safe to call multiple times; no-op when present.
def fncBootstrapPaths():
    for d in (os.path.dirname(cfg.LOG_FILE), os.path.dirname(os.path.abspath(cfg.STATE_PATH))):
        os.makedirs(d, exist_ok=True)
        os.chmod(d, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file so the log doesn't grow forever.
# Notes   : Creates once; warns only.
def fncEnsureLogrotate(path: str = "/etc/logrotate.d/keywarden"):
    content = f"""{cfg.LOG_FILE} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  copytruncate
  create 0640 root root
}}
"""
    try:
        if not os.path.exists(path):
            with open(path, "w") as f:
                f.write(content)
            os.chmod(path, 0o644)
    except OSError as e:
        logging.warning("Couldn't write logrotate file (%s): %s", path, e)

# Function: fncSetupLogging
# Purpose : Configure logging to file and stdout.
# Notes   : INFO for changes; DEBUG (--verbose) for per-key diagnostics.
def fncSetupLogging(verbose: bool = False):
    fncBootstrapPaths()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(cfg.LOG_FILE), logging.StreamHandler(sys.stdout)],
    )
    # boto is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.info("---- Keywarden start ----")
    fncEnsureLogrotate()

# Function: fncAcquireLock
# Purpose : Exclusive lock so only one daemon owns the state file.
def fncAcquireLock(lock_path: str | None = None):
    global _LOCK_FH
    lock_path = lock_path or cfg.LOCK_PATH
    try:
        _LOCK_FH = open(lock_path, "w")
        os.chmod(lock_path, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", lock_path)
    except BlockingIOError:
        fncPrintMessage("Another instance of keywarden is already running.", "warning")
        sys.exit(EXIT_FATAL)
    except OSError as e:
        fncPrintMessage(f"Failed to acquire lock ({lock_path}): {e}", "error")
        sys.exit(EXIT_FATAL)

#====================#
# CLI                #
#====================#

def fncBuildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keywarden",
        description="Sync local accounts and SSH keys with a directory group.",
    )
    parser.add_argument("--groupname", default=os.getenv("KW_GROUP_NAME", "").strip(),
                        help="directory (IAM) group whose members get accounts [env KW_GROUP_NAME]")
    parser.add_argument("--interval", type=int, default=cfg.DEFAULT_INTERVAL,
                        help="polling interval in seconds (default: %(default)s) [env KW_INTERVAL]")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--state", default=cfg.STATE_PATH, help="state file (default: %(default)s)")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    return parser

# Function: fncParseArgs
# Purpose : Parse argv; usage error (exit 2) when the group is missing or interval is silly.
def fncParseArgs(argv=None) -> argparse.Namespace:
    parser = fncBuildParser()
    args = parser.parse_args(argv)
    if not args.groupname:
        parser.error("--groupname is required")
    if args.interval <= 0:
        parser.error("--interval must be a positive number of seconds")
    return args

#====================#
# Cycle / loop       #
#====================#

# Function: fncRunCycle
# Purpose : One fetch -> diff -> apply -> persist pass.
# Notes   : Fetch failure leaves state untouched and returns None.
def fncRunCycle(directory, controller, group: str):
    try:
        desired = directory.list_group_members(group)
    except DirectoryError as e:
        logging.error("Directory fetch failed for group %s; skipping cycle: %s", group, e)
        return None
    logging.info("Desired accounts=%s", sorted(i.id for i in desired))
    result = controller.reconcile(desired)
    for err in result.errors:
        logging.debug("Cycle error: %s", err)
    return result

# Function: fncServe
# Purpose : Run cycles until stop is set.
# Notes   : A cycle in flight always finishes; only the wait is interruptible.
def fncServe(directory, controller, group: str, interval: int, stop: threading.Event):
    while not stop.is_set():
        fncRunCycle(directory, controller, group)
        if stop.wait(interval):
            break
    logging.info("Stop requested; exiting after completed cycle")

def fncInstallSignalHandlers(stop: threading.Event):
    def _handler(signum, _frame):
        logging.info("Received %s", signal.Signals(signum).name)
        stop.set()
    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

#=================#
# Script harness  #
#=================#

# Function: fncStartup
# Purpose : Everything that must work before the first cycle; any failure here is fatal.
# Notes   : Returns (directory, controller).
def fncStartup(args):
    if cfg.GRANT_SUDO:
        try:
            fncEnableGroupSudo(cfg.SUDO_GROUP)
        except SudoersError as e:
            logging.error("Privilege setup failed: %s", e)
            sys.exit(EXIT_FATAL)

    try:
        directory = IamDirectory(fncBuildAwsSession())
    except Exception as e:
        logging.error("Cannot establish a directory session: %s", e)
        sys.exit(EXIT_FATAL)

    flavour = cfg.ACCOUNT_FLAVOUR or fncDetectFlavour()
    try:
        adapter = fncAccountsForFlavour(flavour)
    except ValueError as e:
        logging.error("%s", e)
        sys.exit(EXIT_FATAL)
    logging.info("Account flavour: %s", flavour)

    try:
        controller = Controller(adapter, StateStore(args.state))
    except CorruptState as e:
        logging.error("State is corrupt, refusing to guess; fix or move it by hand: %s", e)
        sys.exit(EXIT_FATAL)
    return directory, controller

# Function: fncMain
# Purpose : Program entrypoint; preflight checks, logging, locking, loop.
# Notes   : Uses umask(077) to protect any new files.
def fncMain(argv=None) -> int:
    fncCheckPyVersion()
    args = fncParseArgs(argv)
    try:
        os.umask(0o077)
        fncAdminCheck()
        cfg.STATE_PATH = args.state
        # lock lives beside whichever state file this instance owns
        cfg.LOCK_PATH = os.path.join(os.path.dirname(os.path.abspath(args.state)), ".lock")
        fncSetupLogging(args.verbose)
        fncAcquireLock()
        directory, controller = fncStartup(args)

        if args.once:
            result = fncRunCycle(directory, controller, args.groupname)
            if result is None:
                return EXIT_FATAL
            return EXIT_OK if result.ok else EXIT_CYCLE_ERRORS

        stop = threading.Event()
        fncInstallSignalHandlers(stop)
        logging.info("Watching group %s every %ds", args.groupname, args.interval)
        fncServe(directory, controller, args.groupname, args.interval, stop)
        return EXIT_OK
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "info")
        return EXIT_OK
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return EXIT_FATAL

if __name__ == "__main__":
    sys.exit(fncMain())
