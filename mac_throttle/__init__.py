"""
Keep background macOS daemons (iCloud sync, Spotlight) at low CPU priority and report system health.
"""

__all__ = ["config", "processes", "throttle", "system_state", "diagnostics", "cli"]
__version__ = "0.1.0"
