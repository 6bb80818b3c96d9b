"""Maintenance scheduler."""

from chatmem.scheduler.maintenance import MaintenanceScheduler, ScheduledTask

__all__ = ["MaintenanceScheduler", "ScheduledTask"]
