from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetops.logging import get_logger

logger = get_logger(__name__)

CONTROL_FIELDS = (
    "encryption_enabled",
    "firewall_enabled",
    "screen_lock_enabled",
    "biometrics_enabled",
    "mdm_enrolled",
)


class DeviceMetadata(BaseModel):
    """Security posture snapshot for one device.

    Absent keys read as "unset": controls default to False, scalars to None.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    encryption_enabled: bool = Field(
        False, validation_alias=AliasChoices("encryption_enabled", "encryptionEnabled")
    )
    firewall_enabled: bool = Field(
        False, validation_alias=AliasChoices("firewall_enabled", "firewallEnabled")
    )
    screen_lock_enabled: bool = Field(
        False, validation_alias=AliasChoices("screen_lock_enabled", "screenLockEnabled")
    )
    biometrics_enabled: bool = Field(
        False, validation_alias=AliasChoices("biometrics_enabled", "biometricsEnabled")
    )
    mdm_enrolled: bool = Field(False, validation_alias=AliasChoices("mdm_enrolled", "mdmEnrolled"))
    os_version: str | None = Field(None, validation_alias=AliasChoices("os_version", "osVersion"))
    last_updated: datetime | None = Field(
        None,
        validation_alias=AliasChoices("last_updated", "lastUpdated", "lastUpdatedMs"),
    )

    @field_validator(*CONTROL_FIELDS, mode="before")
    @classmethod
    def _none_is_unset(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("os_version", mode="before")
    @classmethod
    def _normalize_os_version(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("last_updated", mode="before")
    @classmethod
    def _parse_last_updated(cls, value: Any) -> Any:
        if value is None or isinstance(value, datetime):
            return value
        if isinstance(value, bool):
            raise ValueError("last_updated must be a timestamp")
        if isinstance(value, (int, float)):
            # Epoch milliseconds, as reported by agents.
            try:
                return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as exc:
                raise ValueError(f"Invalid timestamp: {value!r}") from exc
        return parse_timestamp(str(value))

    @field_validator("last_updated")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def control(self, name: str) -> bool:
        return bool(getattr(self, name))


def parse_timestamp(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_metadata(bag: Any, device_id: str | None = None) -> DeviceMetadata | None:
    """Validate one attribute bag; malformed bags yield None."""
    if isinstance(bag, DeviceMetadata):
        return bag
    if not isinstance(bag, Mapping):
        logger.warning(
            "Ignoring non-mapping metadata for device %s",
            device_id,
            extra={"device_id": device_id},
        )
        return None
    try:
        return DeviceMetadata.model_validate(dict(bag))
    except ValidationError as exc:
        logger.warning(
            "Ignoring malformed metadata for device %s: %s",
            device_id,
            exc.errors(include_url=False),
            extra={"device_id": device_id},
        )
        return None


def coerce_metadata_map(metadata: Mapping[str, Any] | None) -> dict[str, DeviceMetadata]:
    if not metadata:
        return {}
    coerced: dict[str, DeviceMetadata] = {}
    for device_id, bag in metadata.items():
        parsed = parse_metadata(bag, str(device_id))
        if parsed is not None:
            coerced[str(device_id)] = parsed
    return coerced


def _device_id_of(entry: Mapping[str, Any]) -> str:
    for key in ("device_id", "deviceId"):
        value = entry.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise ValueError("Metadata entries in a list must carry device_id")


def load_metadata_json(path: Path) -> dict[str, Any]:
    """Read `{device_id: bag}` or `[{"device_id": ..., ...}]` from a JSON file.

    Returns the raw bags; validation happens in `coerce_metadata_map` so that a
    single malformed device does not reject the whole file.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        return {str(device_id): bag for device_id, bag in raw.items()}
    if isinstance(raw, list):
        bags: dict[str, Any] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValueError("Metadata list entries must be objects")
            bags[_device_id_of(entry)] = entry
        return bags
    raise ValueError("JSON must be an object or list")


def metadata_json_schema() -> dict[str, Any]:
    return DeviceMetadata.model_json_schema()
