from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

ResultStatus = Literal["success", "failure"]
OperationStatus = Literal["completed", "partial_failure", "failed"]

RESULT_STATUSES = ("success", "failure")

POLICY_PUSH = "policy-push"
TOKEN_ROTATE = "token-rotate"
WIPE = "wipe"
AGENT_SYNC = "agent-sync"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _parse_dt(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class ActionOutcome:
    """What a per-device action reports back: success or failure plus detail."""

    status: ResultStatus
    detail: str = ""
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status not in RESULT_STATUSES:
            raise ValueError(f"Invalid action status: {self.status!r}")

    @classmethod
    def success(cls, detail: str = "") -> ActionOutcome:
        return cls("success", detail, utc_now())

    @classmethod
    def failure(cls, detail: str) -> ActionOutcome:
        return cls("failure", detail, utc_now())


@dataclass(frozen=True)
class FleetOperationResult:
    device_id: str
    status: ResultStatus
    detail: str
    completed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "status": self.status,
            "detail": self.detail,
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FleetOperationResult:
        return cls(
            device_id=str(data["device_id"]),
            status=data["status"],
            detail=str(data.get("detail") or ""),
            completed_at=_parse_dt(str(data["completed_at"])),
        )


@dataclass(frozen=True)
class FleetOperation:
    id: str
    type: str
    initiated_by: str
    status: OperationStatus
    started_at: datetime
    completed_at: datetime
    target_device_ids: tuple[str, ...] = ()
    results: tuple[FleetOperationResult, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if result.status == "failure")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "initiated_by": self.initiated_by,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "target_device_ids": list(self.target_device_ids),
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FleetOperation:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            initiated_by=str(data["initiated_by"]),
            status=data["status"],
            started_at=_parse_dt(str(data["started_at"])),
            completed_at=_parse_dt(str(data["completed_at"])),
            target_device_ids=tuple(str(item) for item in data.get("target_device_ids", [])),
            results=tuple(FleetOperationResult.from_dict(item) for item in data.get("results", [])),
        )
