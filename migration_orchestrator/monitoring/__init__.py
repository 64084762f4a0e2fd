"""Progress monitoring and stall detection."""

from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor

__all__ = ["ProgressMonitor"]
