from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from packaging import version

from fleetops.metadata import DeviceMetadata, coerce_metadata_map
from fleetops.policy import DEFAULT_POLICY, CompliancePolicy

UNREACHABLE_ISSUE = "Device unreachable"

_CONTROL_CHECKS = {
    "encryption_enabled": (
        "disk-encryption",
        "Full-disk encryption is enabled",
        "Full-disk encryption is not enabled or status unknown",
    ),
    "firewall_enabled": (
        "firewall",
        "Firewall is enabled",
        "Firewall is not enabled or status unknown",
    ),
    "screen_lock_enabled": (
        "screen-lock",
        "Screen lock is enabled",
        "Screen lock is not enabled or status unknown",
    ),
    "biometrics_enabled": (
        "biometrics",
        "Biometric authentication is enabled",
        "Biometric authentication is not enabled or status unknown",
    ),
    "mdm_enrolled": (
        "mdm-enrolled",
        "Device is MDM enrolled",
        "Device is not MDM enrolled",
    ),
}


@dataclass(frozen=True)
class PostureCheck:
    check_id: str
    passed: bool
    detail: str
    weight: int


@dataclass(frozen=True)
class DeviceComplianceEntry:
    device_id: str
    reachable: bool
    compliant: bool
    missing_controls: frozenset[str] = frozenset()
    trust_score: int = 0
    trust_level: str = "untrusted"
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "reachable": self.reachable,
            "compliant": self.compliant,
            "missing_controls": sorted(self.missing_controls),
            "trust_score": self.trust_score,
            "trust_level": self.trust_level,
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class ComplianceReport:
    total_devices: int
    compliant: int
    non_compliant: int
    unreachable: int
    devices: tuple[DeviceComplianceEntry, ...] = field(default_factory=tuple)
    reported_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "reported_at": self.reported_at.isoformat(),
            "total_devices": self.total_devices,
            "compliant": self.compliant,
            "non_compliant": self.non_compliant,
            "unreachable": self.unreachable,
            "devices": [entry.to_dict() for entry in self.devices],
        }


def _os_freshness_check(
    metadata: DeviceMetadata, policy: CompliancePolicy, now: datetime
) -> tuple[bool, str]:
    if metadata.last_updated is None:
        return False, "OS update date unknown"
    age_days = (now - metadata.last_updated).total_seconds() / 86400
    limit = policy.max_os_age_days
    if age_days <= limit:
        return True, f"OS updated {round(age_days)} days ago (within {limit}-day policy)"
    return False, f"OS updated {round(age_days)} days ago (exceeds {limit}-day policy)"


def _os_version_check(metadata: DeviceMetadata, minimum: str) -> tuple[bool, str]:
    if metadata.os_version is None:
        return False, f"OS version unknown (requires >= {minimum})"
    try:
        current = version.parse(metadata.os_version)
    except version.InvalidVersion:
        return False, f"OS version {metadata.os_version!r} is not comparable"
    if current >= version.parse(minimum):
        return True, f"OS version {metadata.os_version} meets minimum {minimum}"
    return False, f"OS version {metadata.os_version} is below minimum {minimum}"


def evaluate_posture(
    metadata: DeviceMetadata,
    policy: CompliancePolicy = DEFAULT_POLICY,
    now: datetime | None = None,
) -> list[PostureCheck]:
    """Run every posture check for one device, in a fixed order."""
    now = now or datetime.now(tz=timezone.utc)
    weights = policy.weights
    checks: list[PostureCheck] = []

    def add(check_id: str, passed: bool, detail: str) -> None:
        checks.append(PostureCheck(check_id, passed, detail, weights[check_id]))

    for control in ("encryption_enabled", "firewall_enabled"):
        check_id, ok_detail, fail_detail = _CONTROL_CHECKS[control]
        passed = metadata.control(control)
        add(check_id, passed, ok_detail if passed else fail_detail)

    add("os-freshness", *_os_freshness_check(metadata, policy, now))

    for control in ("screen_lock_enabled", "biometrics_enabled", "mdm_enrolled"):
        check_id, ok_detail, fail_detail = _CONTROL_CHECKS[control]
        passed = metadata.control(control)
        add(check_id, passed, ok_detail if passed else fail_detail)

    if policy.min_os_version:
        add("os-version", *_os_version_check(metadata, policy.min_os_version))

    return checks


def compute_trust_score(checks: Sequence[PostureCheck]) -> int:
    total_weight = sum(check.weight for check in checks)
    if total_weight == 0:
        return 0
    passed_weight = sum(check.weight for check in checks if check.passed)
    return round(passed_weight / total_weight * 100)


def resolve_trust_level(score: int, policy: CompliancePolicy = DEFAULT_POLICY) -> str:
    thresholds = policy.trust_thresholds
    if score >= thresholds["trusted"]:
        return "trusted"
    if score >= thresholds["verified"]:
        return "verified"
    if score >= thresholds["known"]:
        return "known"
    return "untrusted"


def unreachable_entry(device_id: str) -> DeviceComplianceEntry:
    return DeviceComplianceEntry(
        device_id=device_id,
        reachable=False,
        compliant=False,
        issues=(UNREACHABLE_ISSUE,),
    )


def evaluate_device(
    device_id: str,
    metadata: DeviceMetadata | None,
    policy: CompliancePolicy = DEFAULT_POLICY,
    now: datetime | None = None,
) -> DeviceComplianceEntry:
    if metadata is None:
        return unreachable_entry(device_id)

    missing = frozenset(
        control for control in policy.required_controls if not metadata.control(control)
    )
    checks = evaluate_posture(metadata, policy, now)
    score = compute_trust_score(checks)
    return DeviceComplianceEntry(
        device_id=device_id,
        reachable=True,
        compliant=not missing,
        missing_controls=missing,
        trust_score=score,
        trust_level=resolve_trust_level(score, policy),
        issues=tuple(f"{check.check_id}: {check.detail}" for check in checks if not check.passed),
    )


def generate_compliance_report(
    device_ids: Sequence[str],
    metadata: Mapping[str, Any] | None,
    policy: CompliancePolicy | None = None,
) -> ComplianceReport:
    """Score every device against the policy's required controls.

    Devices with no (or malformed) metadata are counted as unreachable and are
    never placed in the compliant or non-compliant buckets.
    """
    policy = policy or DEFAULT_POLICY
    bags = coerce_metadata_map(metadata)
    now = datetime.now(tz=timezone.utc)

    entries: list[DeviceComplianceEntry] = []
    compliant = 0
    non_compliant = 0
    unreachable = 0
    for device_id in device_ids:
        entry = evaluate_device(device_id, bags.get(device_id), policy, now)
        if not entry.reachable:
            unreachable += 1
        elif entry.compliant:
            compliant += 1
        else:
            non_compliant += 1
        entries.append(entry)

    return ComplianceReport(
        total_devices=len(entries),
        compliant=compliant,
        non_compliant=non_compliant,
        unreachable=unreachable,
        devices=tuple(entries),
        reported_at=now,
    )
