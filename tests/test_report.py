import csv
import json
from io import StringIO
from xml.etree import ElementTree as ET

from fleetops.compliance import generate_compliance_report
from fleetops.models import ActionOutcome
from fleetops.operations import execute_fleet_operation
from fleetops.overview import generate_fleet_overview
from fleetops.report import (
    render_compliance_csv,
    render_compliance_json,
    render_compliance_junit,
    render_compliance_table,
    render_operation_table,
    render_operations_table,
    render_overview_table,
)
from fleetops.store import InMemoryOperationStore

METADATA = {
    "mac-001": {"encryptionEnabled": True, "firewallEnabled": True, "screenLockEnabled": True},
    "=cmd|calc": {"encryptionEnabled": False},
}


def test_compliance_renderers() -> None:
    report = generate_compliance_report(["mac-001", "=cmd|calc", "ghost"], METADATA)

    table = render_compliance_table(report)
    assert "FleetOps Compliance" in table
    assert "UNREACHABLE" in table

    payload = json.loads(render_compliance_json(report))
    assert payload["total_devices"] == 3
    assert payload["devices"][1]["missing_controls"] == [
        "encryption_enabled",
        "firewall_enabled",
        "screen_lock_enabled",
    ]

    rows = list(csv.reader(StringIO(render_compliance_csv(report))))
    assert rows[0][0] == "device_id"
    assert rows[1][1] == "PASS"
    assert rows[2][0] == "'=cmd|calc"
    assert rows[3][1] == "UNREACHABLE"


def test_compliance_junit_marks_failures_and_skips() -> None:
    report = generate_compliance_report(["mac-001", "=cmd|calc", "ghost"], METADATA)
    suite = ET.fromstring(render_compliance_junit(report).encode("utf-8"))  # nosec

    assert suite.attrib["tests"] == "3"
    assert suite.attrib["failures"] == "1"
    assert suite.attrib["skipped"] == "1"
    cases = suite.findall("testcase")
    assert cases[0].find("failure") is None
    assert cases[1].find("failure") is not None
    assert cases[2].find("skipped") is not None


def test_overview_and_operation_tables() -> None:
    overview = generate_fleet_overview(["mac-001"], METADATA, 3)
    assert "3 agent(s)" in render_overview_table(overview)

    store = InMemoryOperationStore()
    operation = execute_fleet_operation(
        store, "wipe", ["mac-001"], "admin", lambda device_id: ActionOutcome.failure("offline")
    )
    assert "offline" in render_operation_table(operation)
    assert "wipe" in render_operations_table(store.list_operations())
