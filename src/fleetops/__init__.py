"""FleetOps: bulk device operations and compliance reporting for managed fleets."""

__version__ = "0.1.0"
