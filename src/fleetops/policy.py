from __future__ import annotations

from typing import Any

import yaml
from packaging import version
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fleetops.metadata import CONTROL_FIELDS

TRUST_LEVELS = ("trusted", "verified", "known", "untrusted")

CHECK_IDS = (
    "disk-encryption",
    "firewall",
    "os-freshness",
    "screen-lock",
    "biometrics",
    "mdm-enrolled",
    "os-version",
)

DEFAULT_REQUIRED_CONTROLS = ("encryption_enabled", "firewall_enabled", "screen_lock_enabled")

DEFAULT_WEIGHTS = {
    "disk-encryption": 25,
    "firewall": 20,
    "os-freshness": 15,
    "screen-lock": 15,
    "biometrics": 10,
    "mdm-enrolled": 15,
    "os-version": 15,
}

DEFAULT_TRUST_THRESHOLDS = {"trusted": 80, "verified": 60, "known": 40}


class CompliancePolicy(BaseModel):
    """Which controls a device must have, and how its posture is scored."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = "default"
    description: str | None = None
    required_controls: tuple[str, ...] = DEFAULT_REQUIRED_CONTROLS
    weights: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    trust_thresholds: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TRUST_THRESHOLDS)
    )
    max_os_age_days: int = Field(90, ge=1)
    min_os_version: str | None = None

    @field_validator("required_controls")
    @classmethod
    def _known_controls(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for control in value:
            if control not in CONTROL_FIELDS:
                raise ValueError(f"Unknown control: {control}")
        return tuple(dict.fromkeys(value))

    @field_validator("weights")
    @classmethod
    def _merge_weights(cls, value: dict[str, int]) -> dict[str, int]:
        merged = dict(DEFAULT_WEIGHTS)
        for check_id, weight in value.items():
            if check_id not in CHECK_IDS:
                raise ValueError(f"Unknown check: {check_id}")
            if weight < 0:
                raise ValueError(f"Weight for {check_id} must be >= 0")
            merged[check_id] = weight
        return merged

    @field_validator("trust_thresholds")
    @classmethod
    def _merge_thresholds(cls, value: dict[str, int]) -> dict[str, int]:
        merged = dict(DEFAULT_TRUST_THRESHOLDS)
        for level, threshold in value.items():
            if level not in DEFAULT_TRUST_THRESHOLDS:
                raise ValueError(f"Unknown trust level threshold: {level}")
            merged[level] = threshold
        if not merged["trusted"] > merged["verified"] > merged["known"] >= 0:
            raise ValueError(
                "trust_thresholds must be strictly decreasing: trusted > verified > known"
            )
        return merged

    @field_validator("min_os_version")
    @classmethod
    def _parseable_version(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        try:
            version.parse(text)
        except version.InvalidVersion as exc:
            raise ValueError(f"Invalid min_os_version: {value!r}") from exc
        return text

    @model_validator(mode="after")
    def _scores_possible(self) -> CompliancePolicy:
        if sum(self.weights.values()) <= 0:
            raise ValueError("At least one check weight must be positive")
        return self


DEFAULT_POLICY = CompliancePolicy()


def load_policy(raw_yaml: str) -> CompliancePolicy:
    data = yaml.safe_load(raw_yaml)
    if data is None:
        return DEFAULT_POLICY
    if not isinstance(data, dict):
        raise ValueError("Policy YAML must be a mapping")
    return CompliancePolicy.model_validate(data)


def load_policy_from_file(path: str) -> tuple[CompliancePolicy, str]:
    with open(path, encoding="utf-8") as handle:
        raw_yaml = handle.read()
    return load_policy(raw_yaml), raw_yaml


def validate_policy_file(path: str) -> list[str]:
    try:
        load_policy_from_file(path)
        return []
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        return [str(exc)]


def dump_policy(policy: CompliancePolicy) -> str:
    payload: dict[str, Any] = policy.model_dump(mode="json")
    return yaml.safe_dump(payload, sort_keys=False)
