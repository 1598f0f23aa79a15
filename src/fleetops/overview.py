from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fleetops.compliance import evaluate_device
from fleetops.metadata import coerce_metadata_map
from fleetops.policy import DEFAULT_POLICY, TRUST_LEVELS, CompliancePolicy


def _empty_buckets() -> dict[str, int]:
    return {level: 0 for level in TRUST_LEVELS}


@dataclass(frozen=True)
class FleetOverview:
    total_devices: int
    total_agents: int
    by_trust_level: dict[str, int] = field(default_factory=_empty_buckets)
    generated_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "total_devices": self.total_devices,
            "total_agents": self.total_agents,
            "by_trust_level": dict(self.by_trust_level),
        }


def generate_fleet_overview(
    device_ids: Sequence[str],
    metadata: Mapping[str, Any] | None,
    total_agents: int,
    policy: CompliancePolicy | None = None,
) -> FleetOverview:
    """Bucket devices by trust level.

    `total_agents` is reported as given: agents are not 1:1 with devices, so it
    is never derived from the device list.
    """
    if total_agents < 0:
        raise ValueError("total_agents must be >= 0")
    policy = policy or DEFAULT_POLICY
    bags = coerce_metadata_map(metadata)
    now = datetime.now(tz=timezone.utc)

    buckets = _empty_buckets()
    for device_id in device_ids:
        entry = evaluate_device(device_id, bags.get(device_id), policy, now)
        buckets[entry.trust_level] += 1

    return FleetOverview(
        total_devices=len(device_ids),
        total_agents=total_agents,
        by_trust_level=buckets,
        generated_at=now,
    )
