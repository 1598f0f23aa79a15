from datetime import datetime, timezone

import pytest

from fleetops.overview import generate_fleet_overview

HARDENED = {
    "encryptionEnabled": True,
    "firewallEnabled": True,
    "screenLockEnabled": True,
    "biometricsEnabled": True,
    "mdmEnrolled": True,
    "lastUpdatedMs": int(datetime.now(tz=timezone.utc).timestamp() * 1000),
}


def test_overview_buckets_sum_to_total_and_passes_agents_through() -> None:
    metadata = {"d1": HARDENED, "d2": {"encryptionEnabled": False}}
    overview = generate_fleet_overview(["d1", "d2", "d3"], metadata, 5)

    assert overview.total_devices == 3
    assert overview.total_agents == 5
    assert sum(overview.by_trust_level.values()) == 3
    assert overview.by_trust_level["trusted"] == 1
    assert overview.by_trust_level["untrusted"] == 2


def test_overview_lists_every_trust_level() -> None:
    overview = generate_fleet_overview([], {}, 0)

    assert overview.by_trust_level == {"trusted": 0, "verified": 0, "known": 0, "untrusted": 0}
    assert overview.total_devices == 0


def test_overview_is_stable_for_same_inputs() -> None:
    metadata = {"d1": HARDENED, "d2": {"encryptionEnabled": True, "firewallEnabled": True}}
    first = generate_fleet_overview(["d1", "d2"], metadata, 2)
    second = generate_fleet_overview(["d1", "d2"], metadata, 2)

    assert first.by_trust_level == second.by_trust_level


def test_overview_agent_count_is_not_derived_from_devices() -> None:
    overview = generate_fleet_overview(["d1"], {"d1": HARDENED}, 12)

    assert overview.total_agents == 12


def test_overview_rejects_negative_agent_count() -> None:
    with pytest.raises(ValueError):
        generate_fleet_overview(["d1"], {}, -1)


def test_overview_counts_out_of_range_timestamp_as_untrusted() -> None:
    device = {key: value for key, value in HARDENED.items() if key != "lastUpdatedMs"}
    metadata = {"d1": {**device, "lastUpdated": 10**20}}
    overview = generate_fleet_overview(["d1"], metadata, 1)

    assert overview.by_trust_level["untrusted"] == 1
    assert overview.total_devices == 1
