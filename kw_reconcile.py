# Script: kw_reconcile.py
# Part of Keywarden: directory group -> local accounts + authorized_keys
#
# The controller: desired identities in, minimal create/update/delete out,
# state saved once per cycle. Creates/updates run before removals so a crash
# leaves extra accounts behind, never orphaned ones.

import logging
from dataclasses import dataclass, field

import kw_config as cfg
from kw_accounts import (
    AccountAdapter,
    AccountError,
    AccountExists,
    AccountNotFound,
    PartiallyProvisioned,
)
from kw_identity import Identity
from kw_state import StateStore, StateWriteError

@dataclass
class OperationError:
    user_id: str
    op: str            # create | keys | delete | reserved | save
    error: Exception

    def __str__(self):
        return f"{self.op} {self.user_id}: {self.error}"

@dataclass
class ReconcileResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: list[OperationError] = field(default_factory=list)
    saved: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return (f"created={len(self.created)} updated={len(self.updated)} "
                f"deleted={len(self.deleted)} unchanged={len(self.unchanged)} "
                f"errors={len(self.errors)} saved={self.saved}")

class ReservedAccount(AccountError):
    pass

class Controller:
    """Owns the applied map and the store behind it.

    Not thread-safe; one reconcile() at a time.
    """

    def __init__(self, adapter: AccountAdapter, store: StateStore, reserved=None):
        self.adapter = adapter
        self.store = store
        self.reserved = set(cfg.RESERVED_USERS if reserved is None else reserved)
        self._applied: dict[str, Identity] = dict(store.load())

    @property
    def applied(self) -> dict[str, Identity]:
        return dict(self._applied)

    def reconcile(self, desired) -> ReconcileResult:
        result = ReconcileResult()

        wanted: dict[str, Identity] = {}
        for ident in desired:
            if ident.id in wanted:
                logging.warning("Duplicate identity %s in desired set; last one wins", ident.id)
            wanted[ident.id] = ident

        # 1) creates + key updates
        for ident in wanted.values():
            if ident.id in self.reserved:
                self._fail(result, ident.id, "reserved",
                           ReservedAccount(ident.id, "reserved system account; not managed"))
                continue
            current = self._applied.get(ident.id)
            if current is None:
                self._add(ident, result)
            elif current.fingerprint != ident.fingerprint:
                self._update(ident, result)
            else:
                result.unchanged.append(ident.id)

        # 2) removals
        for user_id in sorted(set(self._applied) - set(wanted)):
            self._remove(user_id, result)

        # 3) persist once
        try:
            self.store.save(self._applied)
            result.saved = True
        except StateWriteError as e:
            self._fail(result, "*", "save", e)

        log = logging.info if result.ok else logging.error
        log("Reconcile complete: %s", result.summary())
        return result

    def _fail(self, result: ReconcileResult, user_id: str, op: str, err: Exception):
        logging.error("%s %s failed: %s", op, user_id, err)
        result.errors.append(OperationError(user_id, op, err))

    def _add(self, ident: Identity, result: ReconcileResult):
        try:
            self.adapter.create_account(ident.id)
            logging.info("Created account: %s", ident.id)
        except AccountExists:
            logging.warning("Account %s already exists on host; adopting it", ident.id)
        except PartiallyProvisioned as e:
            # account is on the host; keep it managed so it can be keyed or removed later
            self._applied[ident.id] = Identity(ident.id, ())
            self._fail(result, ident.id, "create", e)
            return
        except AccountError as e:
            self._fail(result, ident.id, "create", e)
            return

        try:
            self.adapter.write_authorized_keys(ident)
        except AccountError as e:
            # account exists now; a keyless snapshot makes the next cycle retry the keys
            self._applied[ident.id] = Identity(ident.id, ())
            self._fail(result, ident.id, "keys", e)
            return

        self._applied[ident.id] = ident
        result.created.append(ident.id)
        logging.info("Wrote %d key(s) for new account %s", len(ident.public_keys), ident.id)

    def _update(self, ident: Identity, result: ReconcileResult):
        try:
            self.adapter.write_authorized_keys(ident)
        except AccountError as e:
            self._fail(result, ident.id, "keys", e)
            return
        self._applied[ident.id] = ident
        result.updated.append(ident.id)
        logging.info("Updated keys for %s (%d key(s))", ident.id, len(ident.public_keys))

    def _remove(self, user_id: str, result: ReconcileResult):
        if user_id in self.reserved:
            # never touch system accounts, just forget them
            logging.warning("Dropping reserved account %s from state without deleting it", user_id)
            del self._applied[user_id]
            return
        try:
            self.adapter.delete_account(user_id)
            logging.info("Deleted account: %s", user_id)
        except AccountNotFound:
            logging.warning("Account %s already gone from host; forgetting it", user_id)
        except AccountError as e:
            self._fail(result, user_id, "delete", e)
            return
        del self._applied[user_id]
        result.deleted.append(user_id)
