from __future__ import annotations

import json
from collections.abc import Iterable
from xml.etree import ElementTree as ET  # nosec

from rich.console import Console
from rich.table import Table

from fleetops.compliance import ComplianceReport
from fleetops.csvutil import write_csv
from fleetops.models import FleetOperation
from fleetops.overview import FleetOverview

# Bandit flags ElementTree for XML parsing risks; we only generate XML here and never parse
# untrusted XML.


def _export(table: Table) -> str:
    console = Console(record=True, width=120)
    console.print(table)
    return console.export_text()


def _entry_status(reachable: bool, compliant: bool) -> str:
    if not reachable:
        return "UNREACHABLE"
    return "PASS" if compliant else "FAIL"


def render_compliance_table(report: ComplianceReport) -> str:
    table = Table(
        title="FleetOps Compliance",
        caption=(
            f"{report.compliant} compliant, {report.non_compliant} non-compliant, "
            f"{report.unreachable} unreachable of {report.total_devices}"
        ),
    )
    table.add_column("Device")
    table.add_column("Status")
    table.add_column("Trust")
    table.add_column("Missing Controls")

    for entry in report.devices:
        table.add_row(
            entry.device_id,
            _entry_status(entry.reachable, entry.compliant),
            f"{entry.trust_level} ({entry.trust_score})",
            ", ".join(sorted(entry.missing_controls)),
        )
    return _export(table)


def render_compliance_json(report: ComplianceReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def render_compliance_csv(report: ComplianceReport) -> str:
    return write_csv(
        ["device_id", "status", "trust_level", "trust_score", "missing_controls", "issues"],
        (
            [
                entry.device_id,
                _entry_status(entry.reachable, entry.compliant),
                entry.trust_level,
                entry.trust_score,
                "; ".join(sorted(entry.missing_controls)),
                "; ".join(entry.issues),
            ]
            for entry in report.devices
        ),
    )


def render_compliance_junit(report: ComplianceReport) -> str:
    """
    Render a JUnit XML document for CI/compliance pipeline ingestion.

    Each device becomes a testcase: non-compliant devices fail, unreachable devices are skipped.
    """
    suite = ET.Element(
        "testsuite",
        attrib={
            "name": "FleetOps Compliance",
            "tests": str(report.total_devices),
            "failures": str(report.non_compliant),
            "skipped": str(report.unreachable),
            "timestamp": report.reported_at.isoformat(),
        },
    )

    for entry in report.devices:
        case = ET.SubElement(
            suite,
            "testcase",
            attrib={"name": entry.device_id, "classname": "fleetops.compliance", "time": "0"},
        )
        if not entry.reachable:
            ET.SubElement(case, "skipped", attrib={"message": "device unreachable"})
        elif not entry.compliant:
            missing = ", ".join(sorted(entry.missing_controls))
            failure = ET.SubElement(case, "failure", attrib={"message": f"missing={missing}"})
            failure.text = "\n".join(entry.issues)

    xml_bytes = ET.tostring(suite, encoding="utf-8", xml_declaration=True)
    return f"{xml_bytes.decode('utf-8')}\n"


def render_overview_table(overview: FleetOverview) -> str:
    table = Table(
        title="FleetOps Overview",
        caption=f"{overview.total_devices} device(s), {overview.total_agents} agent(s)",
    )
    table.add_column("Trust Level")
    table.add_column("Devices", justify="right")
    for level, count in overview.by_trust_level.items():
        table.add_row(level, str(count))
    return _export(table)


def render_overview_json(overview: FleetOverview) -> str:
    return json.dumps(overview.to_dict(), indent=2)


def render_operation_table(operation: FleetOperation) -> str:
    table = Table(
        title=f"Operation {operation.id}",
        caption=f"{operation.type}: {operation.status}",
    )
    table.add_column("Device")
    table.add_column("Status")
    table.add_column("Detail")
    table.add_column("Completed")
    for result in operation.results:
        table.add_row(
            result.device_id,
            result.status.upper(),
            result.detail,
            result.completed_at.isoformat(),
        )
    return _export(table)


def render_operation_json(operation: FleetOperation) -> str:
    return json.dumps(operation.to_dict(), indent=2)


def render_operations_table(operations: Iterable[FleetOperation]) -> str:
    table = Table(title="Fleet Operations")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("By")
    table.add_column("Devices", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Started")
    for operation in operations:
        table.add_row(
            operation.id,
            operation.type,
            operation.status,
            operation.initiated_by,
            str(len(operation.results)),
            str(operation.failed),
            operation.started_at.isoformat(),
        )
    return _export(table)
