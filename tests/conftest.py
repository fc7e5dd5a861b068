import pytest

from kw_accounts import (
    AccountAdapter,
    AccountExists,
    AccountNotFound,
    DeletionFailed,
    FilesystemError,
    PartiallyProvisioned,
    ProvisioningFailed,
)
from kw_identity import Identity
from kw_state import StateStore


class FakeAccounts(AccountAdapter):
    """In-memory host: records every call, fails on request."""

    def __init__(self, existing=()):
        self.accounts = set(existing)
        self.keys = {}
        self.calls = []
        self.fail_create = set()
        self.fail_delete = set()
        self.fail_keys = set()
        self.fail_partial = set()

    def create_account(self, user_id):
        self.calls.append(("create", user_id))
        if user_id in self.fail_create:
            raise ProvisioningFailed(user_id, "useradd rc=1")
        if user_id in self.fail_partial:
            self.accounts.add(user_id)
            raise PartiallyProvisioned(user_id, "usermod rc=6; rollback userdel rc=8")
        if user_id in self.accounts:
            raise AccountExists(user_id, "account already exists")
        self.accounts.add(user_id)

    def delete_account(self, user_id):
        self.calls.append(("delete", user_id))
        if user_id in self.fail_delete:
            raise DeletionFailed(user_id, "userdel rc=8: user is logged in")
        if user_id not in self.accounts:
            raise AccountNotFound(user_id, "no such account")
        self.accounts.discard(user_id)
        self.keys.pop(user_id, None)

    def write_authorized_keys(self, identity):
        self.calls.append(("keys", identity.id))
        if identity.id in self.fail_keys:
            raise FilesystemError(identity.id, "disk full")
        self.keys[identity.id] = identity.authorized_keys()

    def ops(self, kind):
        return [uid for op, uid in self.calls if op == kind]


def ident(user_id, *keys):
    return Identity(user_id, tuple(k.encode() if isinstance(k, str) else k for k in keys))


@pytest.fixture
def host():
    return FakeAccounts()


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state" / "state.json"))
