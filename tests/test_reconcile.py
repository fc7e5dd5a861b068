import random
from unittest.mock import patch

import pytest

from conftest import FakeAccounts, ident
from kw_identity import Identity
from kw_reconcile import Controller
from kw_state import CorruptState, StateWriteError

KA1 = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIA1 alice"
KA2 = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIA2 alice"
KB1 = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIB1 bob"


def seeded(store, host, *identities):
    store.save({i.id: i for i in identities})
    host.accounts.update(i.id for i in identities)
    return Controller(host, store, reserved={"root"})


class TestScenarios:
    def test_new_member_is_created_with_keys(self, store, host):
        ctrl = Controller(host, store, reserved={"root"})
        result = ctrl.reconcile([ident("alice", KA1)])

        assert host.calls == [("create", "alice"), ("keys", "alice")]
        assert host.keys["alice"] == KA1.encode() + b"\n"
        assert result.created == ["alice"] and result.ok and result.saved
        assert ctrl.applied == {"alice": ident("alice", KA1)}
        assert store.load()["alice"].fingerprint == ident("alice", KA1).fingerprint

    def test_departed_member_is_deleted(self, store, host):
        ctrl = seeded(store, host, ident("alice", KA1), ident("bob", KB1))
        result = ctrl.reconcile([ident("alice", KA1)])

        assert host.calls == [("delete", "bob")]
        assert result.deleted == ["bob"] and result.unchanged == ["alice"]
        assert set(store.load()) == {"alice"}

    def test_rotated_key_rewrites_only_keys(self, store, host):
        ctrl = seeded(store, host, ident("alice", KA1))
        result = ctrl.reconcile([ident("alice", KA2)])

        assert host.calls == [("keys", "alice")]
        assert result.updated == ["alice"]
        assert store.load()["alice"] == ident("alice", KA2)


class TestProperties:
    def test_second_run_makes_no_calls(self, store, host):
        ctrl = Controller(host, store, reserved=set())
        desired = [ident("alice", KA1), ident("bob", KB1, KA2)]
        ctrl.reconcile(desired)
        host.calls.clear()

        result = ctrl.reconcile(desired)
        assert host.calls == []
        assert sorted(result.unchanged) == ["alice", "bob"]

    def test_fresh_controller_on_same_store_is_idempotent(self, store, host):
        desired = [ident("alice", KA1)]
        Controller(host, store, reserved=set()).reconcile(desired)
        host.calls.clear()

        Controller(host, store, reserved=set()).reconcile(desired)
        assert host.calls == []

    @pytest.mark.parametrize("seed", range(5))
    def test_create_and_delete_counts_match_set_difference(self, store, host, seed):
        rng = random.Random(seed)
        names = [f"user{n}" for n in range(12)]
        applied = {n: ident(n, f"ssh-ed25519 OLD{n}") for n in rng.sample(names, 6)}
        desired = [ident(n, f"ssh-ed25519 {rng.choice(['OLD', 'NEW'])}{n}") for n in rng.sample(names, 7)]

        ctrl = seeded(store, host, *applied.values())
        ctrl.reconcile(desired)

        d_keys = {i.id for i in desired}
        assert len(host.ops("create")) == len(d_keys - set(applied))
        assert len(host.ops("delete")) == len(set(applied) - d_keys)
        assert set(ctrl.applied) == d_keys

    def test_removals_happen_after_additions(self, store, host):
        ctrl = seeded(store, host, ident("bob", KB1))
        ctrl.reconcile([ident("alice", KA1)])
        assert [op for op, _ in host.calls] == ["create", "keys", "delete"]

    def test_controllers_do_not_share_state(self, tmp_path, host):
        from kw_state import StateStore
        a = Controller(host, StateStore(str(tmp_path / "a.json")), reserved=set())
        b = Controller(FakeAccounts(), StateStore(str(tmp_path / "b.json")), reserved=set())
        a.reconcile([ident("alice", KA1)])
        assert b.applied == {}


class TestFailures:
    def test_create_failure_is_isolated(self, store, host):
        host.fail_create.add("alice")
        ctrl = Controller(host, store, reserved=set())
        result = ctrl.reconcile([ident("alice", KA1), ident("bob", KB1)])

        assert [(e.user_id, e.op) for e in result.errors] == [("alice", "create")]
        assert result.created == ["bob"]
        assert set(store.load()) == {"bob"}
        assert not result.ok

    def test_key_write_failure_after_create_is_retried_next_cycle(self, store, host):
        host.fail_keys.add("alice")
        ctrl = Controller(host, store, reserved=set())
        result = ctrl.reconcile([ident("alice", KA1)])

        assert [(e.user_id, e.op) for e in result.errors] == [("alice", "keys")]
        assert "alice" in ctrl.applied
        assert "alice" in host.accounts

        host.fail_keys.clear()
        host.calls.clear()
        result = ctrl.reconcile([ident("alice", KA1)])
        assert host.calls == [("keys", "alice")]
        assert result.updated == ["alice"] and result.ok
        assert ctrl.applied["alice"] == ident("alice", KA1)

    def test_rolled_back_create_is_retried_from_scratch(self, store, host):
        host.fail_create.add("alice")
        ctrl = Controller(host, store, reserved=set())
        ctrl.reconcile([ident("alice", KA1)])
        assert "alice" not in ctrl.applied

        host.fail_create.clear()
        host.calls.clear()
        result = ctrl.reconcile([ident("alice", KA1)])
        assert host.calls == [("create", "alice"), ("keys", "alice")]
        assert result.created == ["alice"] and result.ok

    def test_partially_created_account_stays_managed(self, store, host):
        host.fail_partial.add("alice")
        ctrl = Controller(host, store, reserved=set())
        result = ctrl.reconcile([ident("alice", KA1)])

        assert [(e.user_id, e.op) for e in result.errors] == [("alice", "create")]
        assert ("keys", "alice") not in host.calls
        assert store.load()["alice"].public_keys == ()

        host.fail_partial.clear()
        host.calls.clear()
        result = ctrl.reconcile([ident("alice", KA1)])
        assert host.calls == [("keys", "alice")]
        assert result.updated == ["alice"] and result.ok

    def test_partially_created_account_is_removed_when_member_leaves(self, store, host):
        host.fail_partial.add("alice")
        ctrl = Controller(host, store, reserved=set())
        ctrl.reconcile([ident("alice", KA1)])

        result = ctrl.reconcile([])
        assert result.deleted == ["alice"]
        assert "alice" not in host.accounts

    def test_update_failure_keeps_old_entry(self, store, host):
        ctrl = seeded(store, host, ident("alice", KA1))
        host.fail_keys.add("alice")
        result = ctrl.reconcile([ident("alice", KA2)])
        assert result.errors[0].op == "keys"
        assert store.load()["alice"] == ident("alice", KA1)

    def test_delete_failure_keeps_entry_for_retry(self, store, host):
        ctrl = seeded(store, host, ident("bob", KB1))
        host.fail_delete.add("bob")
        result = ctrl.reconcile([])
        assert result.errors[0].op == "delete"
        assert "bob" in store.load()

    def test_existing_host_account_is_adopted(self, store):
        host = FakeAccounts(existing={"alice"})
        ctrl = Controller(host, store, reserved=set())
        result = ctrl.reconcile([ident("alice", KA1)])
        assert result.ok and result.created == ["alice"]
        assert host.calls == [("create", "alice"), ("keys", "alice")]

    def test_account_already_gone_is_forgotten(self, store, host):
        ctrl = seeded(store, host, ident("bob", KB1))
        host.accounts.discard("bob")
        result = ctrl.reconcile([])
        assert result.ok and result.deleted == ["bob"]
        assert store.load() == {}

    def test_save_failure_is_reported_not_raised(self, store, host):
        ctrl = Controller(host, store, reserved=set())
        with patch.object(store, "save", side_effect=StateWriteError("read-only fs")):
            result = ctrl.reconcile([ident("alice", KA1)])
        assert not result.saved
        assert [e.op for e in result.errors] == ["save"]
        assert "alice" in ctrl.applied

    def test_corrupt_state_is_fatal_at_construction(self, store, host):
        store.save({})
        with open(store.path, "w") as f:
            f.write("{}")
        with pytest.raises(CorruptState):
            Controller(host, store)


class TestReserved:
    def test_reserved_member_is_never_created(self, store, host):
        ctrl = Controller(host, store, reserved={"root"})
        result = ctrl.reconcile([ident("root", KA1), ident("alice", KA1)])
        assert ("create", "root") not in host.calls
        assert [(e.user_id, e.op) for e in result.errors] == [("root", "reserved")]
        assert set(ctrl.applied) == {"alice"}

    def test_reserved_entry_in_state_is_never_deleted(self, store, host):
        store.save({"root": Identity("root", (KA1.encode(),))})
        ctrl = Controller(host, store, reserved={"root"})
        result = ctrl.reconcile([])
        assert host.calls == []
        assert result.ok and ctrl.applied == {}

    def test_duplicate_ids_last_wins(self, store, host):
        ctrl = Controller(host, store, reserved=set())
        ctrl.reconcile([ident("alice", KA1), ident("alice", KA2)])
        assert host.ops("create") == ["alice"]
        assert ctrl.applied["alice"] == ident("alice", KA2)
