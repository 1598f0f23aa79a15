from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from fleetops.audit import AuditSink, emit_safely
from fleetops.crypto import new_device_token, token_fingerprint
from fleetops.logging import get_logger
from fleetops.models import (
    AGENT_SYNC,
    POLICY_PUSH,
    TOKEN_ROTATE,
    WIPE,
    ActionOutcome,
    FleetOperation,
    FleetOperationResult,
    OperationStatus,
    utc_now,
)
from fleetops.store import OperationStore

logger = get_logger(__name__)

DeviceAction = Callable[[str], ActionOutcome]

DEFAULT_PUSH_POLICIES = ("security", "compliance")


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def _as_completed_at(value: Any) -> datetime:
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            # Naive times are taken as UTC.
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch seconds, as returned by time.time().
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"Invalid completed_at timestamp: {value!r}") from exc
    raise TypeError(f"completed_at must be a datetime, got {type(value).__name__}")


def _normalize_outcome(outcome: ActionOutcome) -> ActionOutcome:
    detail = "" if outcome.detail is None else outcome.detail
    if not isinstance(detail, str):
        raise TypeError(f"detail must be a string, got {type(detail).__name__}")
    return ActionOutcome(outcome.status, detail, _as_completed_at(outcome.completed_at))


def guard_action(action: Callable[[str], Any]) -> DeviceAction:
    """Adapt an action that may raise into one that always returns an outcome.

    The returned outcome always carries a string detail and a UTC completion time;
    an outcome whose fields cannot be normalized becomes a failure.
    """

    def guarded(device_id: str) -> ActionOutcome:
        try:
            outcome = action(device_id)
        except Exception as exc:
            return ActionOutcome.failure(_describe(exc))
        if not isinstance(outcome, ActionOutcome):
            return ActionOutcome.failure(
                f"Action returned {type(outcome).__name__}, expected ActionOutcome"
            )
        try:
            return _normalize_outcome(outcome)
        except (TypeError, ValueError) as exc:
            return ActionOutcome.failure(f"Action returned a malformed outcome: {_describe(exc)}")

    return guarded


def aggregate_status(results: Sequence[FleetOperationResult]) -> OperationStatus:
    failures = sum(1 for result in results if result.status == "failure")
    if failures == 0:
        return "completed"
    if failures == len(results):
        return "failed"
    return "partial_failure"


def _to_result(device_id: str, outcome: ActionOutcome) -> FleetOperationResult:
    return FleetOperationResult(
        device_id=device_id,
        status=outcome.status,
        detail=outcome.detail,
        completed_at=_as_completed_at(outcome.completed_at),
    )


def execute_fleet_operation(
    store: OperationStore,
    op_type: str,
    device_ids: Sequence[str],
    actor: str,
    action: Callable[[str], Any],
    *,
    max_workers: int | None = None,
) -> FleetOperation:
    """Run `action` once per device and record the aggregated operation.

    A device whose action raises or reports failure gets a "failure" result;
    the rest of the batch still runs. Results follow the order of `device_ids`
    even when `max_workers` > 1 dispatches devices concurrently.
    """
    if max_workers is not None and max_workers < 1:
        raise ValueError("max_workers must be >= 1")

    operation_id = str(uuid.uuid4())
    targets = tuple(device_ids)
    guarded = guard_action(action)
    started_at = utc_now()
    logger.info(
        "Starting %s on %d device(s)",
        op_type,
        len(targets),
        extra={
            "operation_id": operation_id,
            "operation_type": op_type,
            "actor": actor,
            "device_count": len(targets),
        },
    )

    if max_workers and max_workers > 1 and len(targets) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(targets))) as pool:
            outcomes = list(pool.map(guarded, targets))
    else:
        outcomes = [guarded(device_id) for device_id in targets]

    results = tuple(
        _to_result(device_id, outcome) for device_id, outcome in zip(targets, outcomes)
    )
    for result in results:
        if result.status == "failure":
            logger.info(
                "%s failed on %s: %s",
                op_type,
                result.device_id,
                result.detail,
                extra={
                    "operation_id": operation_id,
                    "device_id": result.device_id,
                    "error_message": result.detail,
                },
            )

    operation = FleetOperation(
        id=operation_id,
        type=op_type,
        initiated_by=actor,
        status=aggregate_status(results),
        started_at=started_at,
        completed_at=utc_now(),
        target_device_ids=targets,
        results=results,
    )
    store.record_operation(operation)

    logger.log(
        logging.INFO if operation.status == "completed" else logging.WARNING,
        "Finished %s: %s (%d succeeded, %d failed)",
        op_type,
        operation.status,
        operation.succeeded,
        operation.failed,
        extra={
            "operation_id": operation_id,
            "operation_type": op_type,
            "status": operation.status,
            "succeeded": operation.succeeded,
            "failed": operation.failed,
        },
    )
    return operation


def push_policy_to_fleet(
    store: OperationStore,
    device_ids: Sequence[str],
    policy_names: Sequence[str],
    actor: str,
    *,
    deliver: Callable[[str, Sequence[str]], Any] | None = None,
    audit: AuditSink | None = None,
    max_workers: int | None = None,
) -> FleetOperation:
    names = tuple(name for name in policy_names if name) or DEFAULT_PUSH_POLICIES
    summary = ", ".join(names)

    def push(device_id: str) -> ActionOutcome:
        if deliver is not None:
            deliver(device_id, names)
        return ActionOutcome.success(f"Policy pushed: {summary}")

    operation = execute_fleet_operation(
        store, POLICY_PUSH, device_ids, actor, push, max_workers=max_workers
    )
    emit_safely(
        audit,
        "fleet.policy_pushed",
        actor,
        {
            "operation_id": operation.id,
            "device_count": len(operation.target_device_ids),
            "policies": list(names),
        },
    )
    return operation


def rotate_fleet_tokens(
    store: OperationStore,
    device_ids: Sequence[str],
    actor: str,
    *,
    deliver: Callable[[str, str], Any] | None = None,
    audit: AuditSink | None = None,
    max_workers: int | None = None,
) -> FleetOperation:
    """Mint a fresh token per device; only its fingerprint is kept in the record."""

    def rotate(device_id: str) -> ActionOutcome:
        token = new_device_token()
        if deliver is not None:
            deliver(device_id, token)
        return ActionOutcome.success(f"Token rotated (fingerprint {token_fingerprint(token)})")

    operation = execute_fleet_operation(
        store, TOKEN_ROTATE, device_ids, actor, rotate, max_workers=max_workers
    )
    emit_safely(
        audit,
        "fleet.tokens_rotated",
        actor,
        {"operation_id": operation.id, "device_count": len(operation.target_device_ids)},
    )
    return operation


def wipe_fleet(
    store: OperationStore,
    device_ids: Sequence[str],
    actor: str,
    *,
    confirm: bool,
    wipe: Callable[[str], Any] | None = None,
    audit: AuditSink | None = None,
    max_workers: int | None = None,
) -> FleetOperation:
    if not confirm:
        raise ValueError("confirm=True is required for fleet wipe")

    def run_wipe(device_id: str) -> ActionOutcome:
        if wipe is not None and wipe(device_id) is False:
            return ActionOutcome.failure("Wipe failed")
        return ActionOutcome.success("Wipe initiated")

    operation = execute_fleet_operation(
        store, WIPE, device_ids, actor, run_wipe, max_workers=max_workers
    )
    emit_safely(
        audit,
        "fleet.wipe_initiated",
        actor,
        {"operation_id": operation.id, "device_count": len(operation.target_device_ids)},
    )
    return operation


def sync_agent_to_fleet(
    store: OperationStore,
    agent_id: str,
    device_ids: Sequence[str],
    actor: str,
    *,
    deliver: Callable[[str, str], Any] | None = None,
    audit: AuditSink | None = None,
    max_workers: int | None = None,
) -> FleetOperation:
    agent_id = (agent_id or "").strip()
    if not agent_id:
        raise ValueError("agent_id is required")

    def sync(device_id: str) -> ActionOutcome:
        if deliver is not None:
            deliver(device_id, agent_id)
        return ActionOutcome.success(f"Agent {agent_id} synced")

    operation = execute_fleet_operation(
        store, AGENT_SYNC, device_ids, actor, sync, max_workers=max_workers
    )
    emit_safely(
        audit,
        "fleet.agents_synced",
        actor,
        {
            "operation_id": operation.id,
            "agent_id": agent_id,
            "device_count": len(operation.target_device_ids),
        },
    )
    return operation
