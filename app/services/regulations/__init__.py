"""Regulation change monitoring services."""

from app.services.regulations.change_detector import ChangeDetector
from app.services.regulations.regulation_monitor_service import RegulationMonitorService

__all__ = ["ChangeDetector", "RegulationMonitorService"]
