import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from fleetops.audit import RecordingAuditSink
from fleetops.models import ActionOutcome
from fleetops.operations import (
    execute_fleet_operation,
    guard_action,
    push_policy_to_fleet,
    rotate_fleet_tokens,
    sync_agent_to_fleet,
    wipe_fleet,
)
from fleetops.store import InMemoryOperationStore, SqliteOperationStore


@pytest.fixture
def store():
    with InMemoryOperationStore() as operations:
        yield operations


def test_all_successes_complete(store: InMemoryOperationStore) -> None:
    operation = execute_fleet_operation(
        store,
        "policy-push",
        ["d1", "d2", "d3"],
        "admin",
        lambda device_id: ActionOutcome.success("Policy applied"),
    )

    assert operation.type == "policy-push"
    assert operation.initiated_by == "admin"
    assert operation.status == "completed"
    assert [result.device_id for result in operation.results] == ["d1", "d2", "d3"]
    assert all(result.status == "success" for result in operation.results)


def test_mixed_outcomes_are_partial_failure(store: InMemoryOperationStore) -> None:
    def action(device_id: str) -> ActionOutcome:
        if device_id == "d2":
            raise ConnectionError("Connection refused")
        return ActionOutcome.success("Rotated")

    operation = execute_fleet_operation(store, "token-rotate", ["d1", "d2", "d3"], "admin", action)

    assert operation.status == "partial_failure"
    assert [result.status for result in operation.results] == ["success", "failure", "success"]
    assert operation.succeeded == 2
    assert operation.failed == 1


def test_raised_error_becomes_failure_result(store: InMemoryOperationStore) -> None:
    def action(device_id: str) -> ActionOutcome:
        raise RuntimeError("Device offline")

    operation = execute_fleet_operation(store, "wipe", ["d1"], "admin", action)

    assert operation.status == "failed"
    assert len(operation.results) == 1
    assert operation.results[0].status == "failure"
    assert "Device offline" in operation.results[0].detail


def test_returned_failures_for_every_device_fail_the_operation(
    store: InMemoryOperationStore,
) -> None:
    operation = execute_fleet_operation(
        store, "wipe", ["d1", "d2"], "admin", lambda device_id: ActionOutcome.failure("nope")
    )

    assert operation.status == "failed"
    assert [result.detail for result in operation.results] == ["nope", "nope"]


def test_empty_device_list_completes(store: InMemoryOperationStore) -> None:
    operation = execute_fleet_operation(
        store, "policy-push", [], "admin", lambda device_id: ActionOutcome.success()
    )

    assert operation.status == "completed"
    assert operation.results == ()
    assert store.get_operation(operation.id) == operation


def test_operation_is_recorded_before_return(store: InMemoryOperationStore) -> None:
    operation = execute_fleet_operation(
        store, "policy-push", ["d1"], "admin", lambda device_id: ActionOutcome.success()
    )

    assert store.get_operation(operation.id) is operation
    assert operation in store.list_operations()


def test_each_operation_gets_a_unique_id(store: InMemoryOperationStore) -> None:
    ids = {
        execute_fleet_operation(
            store, "policy-push", ["d1"], "admin", lambda device_id: ActionOutcome.success()
        ).id
        for _ in range(20)
    }

    assert len(ids) == 20


def test_parallel_execution_preserves_input_order(store: InMemoryOperationStore) -> None:
    device_ids = [f"d{index}" for index in range(8)]
    seen_threads: set[int] = set()
    lock = threading.Lock()

    def action(device_id: str) -> ActionOutcome:
        with lock:
            seen_threads.add(threading.get_ident())
        # Later devices finish first.
        time.sleep(0.01 * (len(device_ids) - int(device_id[1:])))
        return ActionOutcome.success(device_id)

    operation = execute_fleet_operation(
        store, "agent-sync", device_ids, "admin", action, max_workers=4
    )

    assert [result.device_id for result in operation.results] == device_ids
    assert [result.detail for result in operation.results] == device_ids
    assert len(seen_threads) > 1


def test_parallel_failures_stay_isolated(store: InMemoryOperationStore) -> None:
    def action(device_id: str) -> ActionOutcome:
        if device_id in {"d1", "d3"}:
            raise TimeoutError("timed out")
        return ActionOutcome.success()

    operation = execute_fleet_operation(
        store, "token-rotate", ["d0", "d1", "d2", "d3"], "admin", action, max_workers=3
    )

    assert operation.status == "partial_failure"
    assert [result.status for result in operation.results] == [
        "success",
        "failure",
        "success",
        "failure",
    ]


def test_invalid_worker_count_is_rejected(store: InMemoryOperationStore) -> None:
    with pytest.raises(ValueError):
        execute_fleet_operation(
            store, "wipe", ["d1"], "admin", lambda device_id: ActionOutcome.success(), max_workers=0
        )


def test_guard_action_handles_unexpected_returns_and_empty_messages() -> None:
    wrong_type = guard_action(lambda device_id: {"status": "success"})
    bad_status = guard_action(lambda device_id: ActionOutcome("skipped"))

    def silent(device_id: str) -> ActionOutcome:
        raise KeyError()

    assert wrong_type("d1").status == "failure"
    assert "expected ActionOutcome" in wrong_type("d1").detail
    assert bad_status("d1").status == "failure"
    assert "Invalid action status" in bad_status("d1").detail
    assert guard_action(silent)("d1").detail == "KeyError"


def test_epoch_completion_time_is_stored_as_utc(tmp_path) -> None:
    with SqliteOperationStore(tmp_path / "ops.db") as sqlite_store:
        operation = execute_fleet_operation(
            sqlite_store,
            "wipe",
            ["d1"],
            "admin",
            lambda device_id: ActionOutcome("success", "ok", time.time()),
        )
        stored = sqlite_store.get_operation(operation.id)

    assert stored is not None
    result = stored.results[0]
    assert result.status == "success"
    assert isinstance(result.completed_at, datetime)
    assert result.completed_at.utcoffset() == timedelta(0)


def test_naive_completion_time_round_trips_as_utc(tmp_path) -> None:
    naive = datetime(2026, 2, 1, 15, 30)
    with SqliteOperationStore(tmp_path / "ops.db") as sqlite_store:
        operation = execute_fleet_operation(
            sqlite_store,
            "wipe",
            ["d1"],
            "admin",
            lambda device_id: ActionOutcome("success", "ok", naive),
        )
        stored = sqlite_store.get_operation(operation.id)

    expected = datetime(2026, 2, 1, 15, 30, tzinfo=timezone.utc)
    assert operation.results[0].completed_at == expected
    assert stored is not None
    assert stored.results[0].completed_at == expected


def test_malformed_outcome_fields_become_failures(tmp_path) -> None:
    outcomes = {
        "d1": ActionOutcome("success", 42),
        "d2": ActionOutcome("success", "ok", "yesterday"),
        "d3": ActionOutcome("success", "ok", float("inf")),
        "d4": ActionOutcome("success", None),
    }
    with SqliteOperationStore(tmp_path / "ops.db") as sqlite_store:
        operation = execute_fleet_operation(
            sqlite_store, "wipe", list(outcomes), "admin", outcomes.__getitem__
        )
        stored = sqlite_store.get_operation(operation.id)

    assert stored is not None
    assert [result.status for result in stored.results] == [
        "failure",
        "failure",
        "failure",
        "success",
    ]
    assert "malformed outcome" in stored.results[0].detail
    assert stored.results[3].detail == ""
    assert stored.status == "partial_failure"


def test_push_policy_to_fleet(store: InMemoryOperationStore) -> None:
    audit = RecordingAuditSink()
    delivered: list[tuple[str, tuple[str, ...]]] = []

    operation = push_policy_to_fleet(
        store,
        ["d1", "d2"],
        ["security", "compliance"],
        "admin",
        deliver=lambda device_id, names: delivered.append((device_id, tuple(names))),
        audit=audit,
    )

    assert operation.type == "policy-push"
    assert operation.status == "completed"
    assert len(operation.results) == 2
    assert operation.results[0].detail == "Policy pushed: security, compliance"
    assert delivered == [("d1", ("security", "compliance")), ("d2", ("security", "compliance"))]
    assert [event.event for event in audit.events] == ["fleet.policy_pushed"]
    assert audit.events[0].payload["operation_id"] == operation.id
    assert audit.events[0].payload["device_count"] == 2


def test_push_policy_defaults_policy_names(store: InMemoryOperationStore) -> None:
    operation = push_policy_to_fleet(store, ["d1"], [], "admin")

    assert operation.results[0].detail == "Policy pushed: security, compliance"


def test_push_policy_delivery_failure_is_isolated(store: InMemoryOperationStore) -> None:
    def deliver(device_id: str, names: object) -> None:
        if device_id == "d2":
            raise OSError("unreachable host")

    operation = push_policy_to_fleet(store, ["d1", "d2"], ["security"], "admin", deliver=deliver)

    assert operation.status == "partial_failure"
    assert operation.results[1].detail == "unreachable host"


def test_rotate_fleet_tokens_hides_tokens(store: InMemoryOperationStore) -> None:
    issued: dict[str, str] = {}
    operation = rotate_fleet_tokens(
        store,
        ["d1", "d2", "d3"],
        "admin",
        deliver=lambda device_id, token: issued.__setitem__(device_id, token),
    )

    assert operation.type == "token-rotate"
    assert operation.status == "completed"
    assert len(operation.results) == 3
    assert len(set(issued.values())) == 3
    for result in operation.results:
        assert result.detail.startswith("Token rotated (fingerprint ")
        assert issued[result.device_id] not in result.detail


def test_wipe_requires_confirmation(store: InMemoryOperationStore) -> None:
    with pytest.raises(ValueError):
        wipe_fleet(store, ["d1"], "admin", confirm=False)
    assert store.list_operations() == []


def test_wipe_reports_refused_devices(store: InMemoryOperationStore) -> None:
    audit = RecordingAuditSink()
    operation = wipe_fleet(
        store,
        ["d1", "d2"],
        "admin",
        confirm=True,
        wipe=lambda device_id: device_id != "d2",
        audit=audit,
    )

    assert operation.type == "wipe"
    assert operation.status == "partial_failure"
    assert [result.detail for result in operation.results] == ["Wipe initiated", "Wipe failed"]
    assert audit.events[0].event == "fleet.wipe_initiated"


def test_sync_agent_to_fleet(store: InMemoryOperationStore) -> None:
    operation = sync_agent_to_fleet(store, "agent-7", ["d1"], "admin")

    assert operation.type == "agent-sync"
    assert operation.results[0].detail == "Agent agent-7 synced"

    with pytest.raises(ValueError):
        sync_agent_to_fleet(store, " ", ["d1"], "admin")


def test_failing_audit_sink_does_not_fail_operation(store: InMemoryOperationStore) -> None:
    class BrokenSink:
        def emit(self, event: str, actor: str, payload: dict) -> None:
            raise RuntimeError("audit backend down")

    operation = rotate_fleet_tokens(store, ["d1"], "admin", audit=BrokenSink())

    assert operation.status == "completed"
    assert store.get_operation(operation.id) is not None
