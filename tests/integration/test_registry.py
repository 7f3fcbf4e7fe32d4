"""Integration tests for the CollectibleRegistry facade.

Exercises the full pipeline (pause gate, rate limiter, access control,
components, event log) over a shared store.
"""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from src.config_schema import validate_config_dict
from src.registry.access import AccessLevel
from src.registry.clock import TickClock
from src.registry.constants import (
    ATTESTATIONS_TABLE,
    PENDING_TABLE,
    PERMISSIONS_TABLE,
    SCHEDULES_TABLE,
    VIEWERS_TABLE,
)
from src.registry.errors import ErrorCategory, ErrorCode
from src.registry.registry import CollectibleRegistry
from src.registry.scheduler import OperationStatus
from src.registry.storage import InMemoryStore, SqliteStore
from tests.testing_utils import register_many


def _register(registry: CollectibleRegistry, actor: str = "alice", name: str = "Art1") -> int:
    result = registry.register(name, 100, "d", ["painting"], actor)
    assert result.success, result.error
    assert result.value is not None
    return result.value.id


def _event_types(registry: CollectibleRegistry) -> list[str]:
    return [e["event_type"] for e in registry.recent_events(100)]


class TestRecords:
    """Register, read, update, transfer, unregister through the facade."""

    def test_round_trip(self, registry: CollectibleRegistry, clock: TickClock) -> None:
        """get() returns exactly what was submitted plus id and height."""
        clock.set(3)
        result = registry.register("Art1", 100, "d", ["painting"], "alice")
        assert result.success
        record = registry.get(1)
        assert record is not None
        assert (record.id, record.name, record.size, record.details) == (1, "Art1", 100, "d")
        assert record.categories == ["painting"]
        assert record.creator == "alice"
        assert record.created_at == 3
        assert "record_registered" in _event_types(registry)

    @pytest.mark.parametrize(
        "kwargs,code",
        [
            ({"name": ""}, ErrorCode.INVALID_NAME),
            ({"size": 0}, ErrorCode.INVALID_SIZE),
            ({"details": "x" * 129}, ErrorCode.INVALID_DETAILS),
            ({"categories": []}, ErrorCode.INVALID_CATEGORY_LIST),
        ],
    )
    def test_validation(self, registry: CollectibleRegistry, kwargs: dict[str, Any], code: ErrorCode) -> None:
        """Field bounds are enforced at the boundary."""
        args: dict[str, Any] = {"name": "Art1", "size": 100, "details": "d", "categories": ["p"]}
        args.update(kwargs)
        result = registry.register(actor="alice", **args)
        assert result.code == code
        assert registry.get(1) is None

    def test_ids_strictly_increase(self, registry: CollectibleRegistry) -> None:
        """Deleted ids are never handed out again."""
        first = _register(registry)
        second = _register(registry)
        assert registry.unregister(first, "alice").success
        third = _register(registry)
        assert third > second > first

    @pytest.mark.parametrize(
        "operation",
        ["update", "transfer", "unregister", "authorize", "attest", "schedule"],
    )
    def test_only_creator_mutates(self, registry: CollectibleRegistry, operation: str) -> None:
        """Everyone else gets Unauthorized and the record is unchanged."""
        record_id = _register(registry)
        before = registry.get(record_id)

        if operation == "update":
            result = registry.update_metadata(record_id, "X", 1, "x", ["x"], "mallory")
        elif operation == "transfer":
            result = registry.transfer_ownership(record_id, "mallory", "mallory")
        elif operation == "unregister":
            result = registry.unregister(record_id, "mallory")
        elif operation == "authorize":
            result = registry.authorize(record_id, "mallory", AccessLevel.MANAGE, "mallory")
        elif operation == "attest":
            result = registry.attest(record_id, "h", "sha256", "mallory")
        else:
            result = registry.schedule_transfer(record_id, "mallory", "h", "mallory")

        assert result.code == ErrorCode.UNAUTHORIZED
        assert registry.get(record_id) == before

    def test_creator_always_has_manage(self, registry: CollectibleRegistry) -> None:
        """has_access(creator, manage) holds without any grant."""
        record_id = _register(registry)
        assert registry.has_access(record_id, "alice", AccessLevel.MANAGE)

    def test_records_by_creator_follows_transfer(self, registry: CollectibleRegistry) -> None:
        """Transfers move records between creator listings."""
        record_id = _register(registry)
        assert registry.transfer_ownership(record_id, "bob", "alice").success
        assert registry.records_by_creator("alice") == []
        assert [r.id for r in registry.records_by_creator("bob")] == [record_id]


class TestView:
    """Read gating through the dual-channel rule."""

    def test_view_gate(self, registry: CollectibleRegistry) -> None:
        """Creator and granted viewers read; strangers are refused."""
        record_id = _register(registry)
        assert registry.view(record_id, "alice").success
        assert registry.view(record_id, "bob").code == ErrorCode.UNAUTHORIZED

        registry.grant_viewer(record_id, "bob", "alice")
        assert registry.view(record_id, "bob").success

        registry.authorize(record_id, "bob", AccessLevel.NONE, "alice")
        assert registry.view(record_id, "bob").code == ErrorCode.UNAUTHORIZED

    def test_view_missing(self, registry: CollectibleRegistry) -> None:
        """Unknown record is NotFound, not Unauthorized."""
        assert registry.view(5, "alice").code == ErrorCode.RECORD_NOT_FOUND


class TestCascade:
    """Unregister removes every dependent row."""

    def test_unregister_cascades(self, registry: CollectibleRegistry, store: InMemoryStore) -> None:
        """Viewers, permissions, attestations and schedules are all gone."""
        record_id = _register(registry)
        registry.authorize(record_id, "bob", AccessLevel.EDIT, "alice")
        registry.grant_viewer(record_id, "carol", "alice")
        registry.attest(record_id, "h1", "sha256", "alice")
        registry.schedule_transfer(record_id, "bob", "secret", "alice")

        result = registry.unregister(record_id, "alice")
        assert result.success
        for table in (VIEWERS_TABLE, PERMISSIONS_TABLE, ATTESTATIONS_TABLE, SCHEDULES_TABLE, PENDING_TABLE):
            assert store.count(table) == 0, table
        assert registry.verify(record_id, "h1").code == ErrorCode.NO_ATTESTATION
        assert "record_unregistered" in _event_types(registry)


class TestAuthenticity:
    """Attest and verify through the facade."""

    def test_attest_verify(self, registry: CollectibleRegistry) -> None:
        """h1 verifies, h2 mismatches, an unattested record has none."""
        record_id = _register(registry)
        other_id = _register(registry, name="Other")
        assert registry.attest(record_id, "h1", "sha256", "alice").success

        assert registry.verify(record_id, "h1").success
        assert registry.verify(record_id, "h2").code == ErrorCode.HASH_MISMATCH
        assert registry.verify(other_id, "h1").code == ErrorCode.NO_ATTESTATION
        attestation = registry.get_attestation(record_id)
        assert attestation is not None
        assert attestation.method == "sha256"

    def test_verify_is_open(self, registry: CollectibleRegistry) -> None:
        """verify() takes no actor and needs no privilege."""
        record_id = _register(registry)
        registry.attest(record_id, "h1", "keccak256", "alice")
        assert registry.verify(record_id, "h1").success


class TestScheduledTransfer:
    """Two-phase transfers against the clock."""

    def test_execute_then_replay(self, registry: CollectibleRegistry, clock: TickClock) -> None:
        """Schedule at 0, execute at 5, replay fails NotPending."""
        record_id = _register(registry)
        op = registry.schedule_transfer(record_id, "bob", "secret", "alice").value
        assert op is not None
        assert op.expires_at == 10

        clock.set(5)
        assert registry.execute_transfer(op.sequence, record_id, "secret", "bob").success
        record = registry.get(record_id)
        assert record is not None
        assert record.creator == "bob"
        replay = registry.execute_transfer(op.sequence, record_id, "secret", "bob")
        assert replay.code == ErrorCode.NOT_PENDING

        types = _event_types(registry)
        assert "transfer_scheduled" in types
        assert "transfer_executed" in types
        assert "ownership_transferred" in types

    def test_execute_after_deadline(self, registry: CollectibleRegistry, clock: TickClock) -> None:
        """Executing at 11 fails Expired; sweep persists the status."""
        record_id = _register(registry)
        op = registry.schedule_transfer(record_id, "bob", "secret", "alice").value
        assert op is not None

        clock.set(11)
        result = registry.execute_transfer(op.sequence, record_id, "secret", "bob")
        assert result.code == ErrorCode.EXPIRED
        assert result.error is not None
        assert result.error.category == ErrorCategory.EXPIRED
        assert registry.get(record_id).creator == "alice"  # type: ignore[union-attr]
        assert registry.pending_transfer(record_id) is None

        swept = registry.sweep_expired()
        assert [s.sequence for s in swept] == [op.sequence]
        stored = registry.get_operation(op.sequence, record_id)
        assert stored is not None
        assert stored.status is OperationStatus.EXPIRED
        assert "transfers_expired" in _event_types(registry)
        after_sweep = registry.execute_transfer(op.sequence, record_id, "secret", "bob")
        assert after_sweep.code == ErrorCode.EXPIRED

    def test_expired_after_reschedule(self, registry: CollectibleRegistry, clock: TickClock) -> None:
        """A new schedule past the deadline leaves the old op reporting Expired."""
        record_id = _register(registry)
        op = registry.schedule_transfer(record_id, "bob", "secret", "alice").value
        assert op is not None

        clock.set(11)
        assert registry.schedule_transfer(record_id, "carol", "other", "alice").success
        result = registry.execute_transfer(op.sequence, record_id, "secret", "bob")
        assert result.code == ErrorCode.EXPIRED
        assert registry.get(record_id).creator == "alice"  # type: ignore[union-attr]

    def test_direct_transfer_cancels_pending(self, registry: CollectibleRegistry) -> None:
        """The old requester's schedule cannot run after a direct transfer."""
        record_id = _register(registry)
        op = registry.schedule_transfer(record_id, "bob", "secret", "alice").value
        assert op is not None
        assert registry.transfer_ownership(record_id, "carol", "alice").success

        assert registry.execute_transfer(op.sequence, record_id, "secret", "bob").code == ErrorCode.NOT_PENDING
        assert registry.get(record_id).creator == "carol"  # type: ignore[union-attr]
        stored = registry.get_operation(op.sequence, record_id)
        assert stored is not None
        assert stored.status is OperationStatus.CANCELLED

    def test_cancel(self, registry: CollectibleRegistry) -> None:
        """Requester cancels; a new schedule is then possible."""
        record_id = _register(registry)
        op = registry.schedule_transfer(record_id, "bob", "secret", "alice").value
        assert op is not None
        assert registry.schedule_transfer(record_id, "bob", "s2", "alice").code == ErrorCode.ALREADY_PENDING
        assert registry.cancel_transfer(op.sequence, record_id, "alice").success
        assert registry.pending_transfer(record_id) is None
        assert registry.schedule_transfer(record_id, "bob", "s2", "alice").success


class TestRateLimiting:
    """Quota through the facade."""

    def test_eleventh_registration_limited(self, registry: CollectibleRegistry, clock: TickClock) -> None:
        """Ten pass at 0, the eleventh at 50 fails, one at 101 passes."""
        register_many(registry, "alice", 10)
        clock.set(50)
        denied = registry.register("Late", 1, "d", ["x"], "alice")
        assert denied.code == ErrorCode.RATE_LIMITED
        assert denied.error is not None
        assert denied.error.retriable

        clock.set(101)
        assert registry.register("Later", 1, "d", ["x"], "alice").success
        assert registry.rate_limit_status("alice").count == 1

    def test_failed_operation_keeps_quota(self, registry: CollectibleRegistry) -> None:
        """Validation failures never consume quota."""
        for _ in range(15):
            assert registry.register("", 1, "d", ["x"], "alice").code == ErrorCode.INVALID_NAME
        status = registry.rate_limit_status("alice")
        assert status.count == 0
        assert status.remaining == 10

    def test_all_mutations_share_quota(self, registry: CollectibleRegistry) -> None:
        """Grants count against the same window as registrations."""
        record_id = _register(registry)
        for i in range(9):
            assert registry.grant_viewer(record_id, f"viewer{i}", "alice").success
        assert registry.attest(record_id, "h", "sha256", "alice").code == ErrorCode.RATE_LIMITED

    def test_disabled_limiter_still_gates_register_rate_limited(
        self, minimal_config: dict[str, Any], clock: TickClock
    ) -> None:
        """register_rate_limited passes the limiter even when limiting is off."""
        config = dict(minimal_config)
        config["rate_limiting"] = {"enabled": False, "window_length": 100, "max_per_window": 2}
        registry = CollectibleRegistry(validate_config_dict(config), clock=clock)

        register_many(registry, "alice", 5)
        assert registry.register_rate_limited("A", 1, "d", ["x"], "alice").success
        assert registry.register_rate_limited("B", 1, "d", ["x"], "alice").success
        assert registry.register_rate_limited("C", 1, "d", ["x"], "alice").code == ErrorCode.RATE_LIMITED
        assert registry.register("D", 1, "d", ["x"], "alice").success

    def test_admin_adjusts_limits(self, registry: CollectibleRegistry) -> None:
        """set_rate_limits is admin only and validated."""
        assert registry.set_rate_limits(100, 1, "alice").code == ErrorCode.UNAUTHORIZED
        assert registry.set_rate_limits(0, 1, "admin").code == ErrorCode.INVALID_ARGUMENT
        assert registry.set_rate_limits(100, True, "admin").code == ErrorCode.INVALID_ARGUMENT
        assert registry.set_rate_limits(100, 1, "admin").success

        _register(registry)
        assert registry.register("Two", 1, "d", ["x"], "alice").code == ErrorCode.RATE_LIMITED
        assert "rate_limits_updated" in _event_types(registry)


class TestPause:
    """Administrative pause."""

    def test_pause_blocks_mutations_not_reads(self, registry: CollectibleRegistry) -> None:
        """Mutations fail Paused; reads keep working; resume restores."""
        record_id = _register(registry)
        registry.attest(record_id, "h1", "sha256", "alice")
        assert registry.pause("incident", "admin").success
        assert registry.is_paused()
        assert registry.pause_reason() == "incident"

        blocked = registry.register("New", 1, "d", ["x"], "alice")
        assert blocked.code == ErrorCode.PAUSED
        assert blocked.error is not None
        assert blocked.error.category == ErrorCategory.UNAVAILABLE
        assert blocked.error.retriable
        assert registry.transfer_ownership(record_id, "bob", "alice").code == ErrorCode.PAUSED

        assert registry.get(record_id) is not None
        assert registry.view(record_id, "alice").success
        assert registry.verify(record_id, "h1").success

        assert registry.resume("admin").success
        assert not registry.is_paused()
        assert registry.pause_reason() is None
        assert registry.register("New", 1, "d", ["x"], "alice").success

    def test_paused_calls_keep_quota(self, registry: CollectibleRegistry) -> None:
        """Calls rejected by the pause gate consume nothing."""
        registry.pause(None, "admin")
        for _ in range(12):
            registry.register("A", 1, "d", ["x"], "alice")
        registry.resume("admin")
        assert registry.rate_limit_status("alice").count == 0

    def test_only_admin(self, registry: CollectibleRegistry) -> None:
        """Pause and resume are admin only."""
        assert registry.pause("x", "alice").code == ErrorCode.UNAUTHORIZED
        registry.pause("x", "admin")
        assert registry.resume("alice").code == ErrorCode.UNAUTHORIZED
        assert registry.is_paused()

    def test_reason_length(self, registry: CollectibleRegistry) -> None:
        """Reasons over 128 characters are rejected."""
        assert registry.pause("r" * 129, "admin").code == ErrorCode.INVALID_REASON
        assert not registry.is_paused()
        assert registry.pause("r" * 128, "admin").success

    def test_admin_override(self, app_config: Any, clock: TickClock) -> None:
        """Constructor admin wins over config."""
        registry = CollectibleRegistry(app_config, clock=clock, admin="curator")
        assert registry.pause(None, "admin").code == ErrorCode.UNAUTHORIZED
        assert registry.pause(None, "curator").success


class TestEventLog:
    """Audit trail."""

    def test_events_written_to_file(self, logged_registry: CollectibleRegistry) -> None:
        """Every successful mutation is appended with a rising sequence."""
        record_id = _register(logged_registry)
        logged_registry.attest(record_id, "h", "sha256", "alice")
        logged_registry.register("", 1, "d", ["x"], "alice")

        events = logged_registry.logger.read_events()
        assert [e["event_type"] for e in events] == [
            "registry_init",
            "record_registered",
            "record_attested",
        ]
        sequences = [e["sequence"] for e in events]
        assert sequences == sorted(sequences)


class TestPersistence:
    """SQLite-backed registry survives a restart."""

    def test_reopen_continues(self, app_config: Any, tmp_path: Path) -> None:
        """Records, attestations, grants and counters persist."""
        path = tmp_path / "registry.db"
        store = SqliteStore(path)
        first = CollectibleRegistry(app_config, clock=TickClock(), store=store)
        record_id = _register(first)
        first.attest(record_id, "h1", "sha256", "alice")
        first.grant_viewer(record_id, "bob", "alice")
        store.close()

        reopened_store = SqliteStore(path)
        second = CollectibleRegistry(app_config, clock=TickClock(), store=reopened_store)
        assert second.get(record_id) is not None
        assert second.verify(record_id, "h1").success
        assert second.can_view(record_id, "bob")
        assert second.rate_limit_status("alice").count == 3
        assert _register(second) == record_id + 1
        reopened_store.close()

    def test_configured_sqlite_backend(self, minimal_config: dict[str, Any], tmp_path: Path) -> None:
        """storage.backend selects the substrate."""
        config = dict(minimal_config)
        config["storage"] = {"backend": "sqlite", "path": str(tmp_path / "cfg.db")}
        registry = CollectibleRegistry(validate_config_dict(config), clock=TickClock())
        assert isinstance(registry.store, SqliteStore)
        _register(registry)
        registry.store.close()  # type: ignore[attr-defined]


class TestConcurrency:
    """The facade serializes concurrent callers."""

    def test_parallel_registrations_get_unique_ids(self, registry: CollectibleRegistry) -> None:
        """Ids stay unique and dense under contention."""
        actors = [f"actor{i}" for i in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            batches = list(pool.map(lambda a: register_many(registry, a, 5), actors))
        ids = sorted(record_id for batch in batches for record_id in batch)
        assert ids == list(range(1, 41))

    def test_event_order_matches_state_order(self, registry: CollectibleRegistry) -> None:
        """Registration events are sequenced in record-id order."""
        actors = [f"actor{i}" for i in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda a: register_many(registry, a, 5), actors))

        events = [e for e in registry.recent_events(100) if e["event_type"] == "record_registered"]
        sequences = [e["sequence"] for e in events]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 40
        assert [e["record_id"] for e in events] == list(range(1, 41))
