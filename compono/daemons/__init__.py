"""
Reconciliation daemons.

ScheduleDaemon keeps slot cardinalities within bounds; ProjectionDaemon
projects the resulting records onto the domains.
"""

from .base import PeriodicDaemon
from .projection import ProjectionDaemon
from .schedule import ScheduleDaemon

__all__ = ["PeriodicDaemon", "ProjectionDaemon", "ScheduleDaemon"]
