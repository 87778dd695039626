"""
Stall watchdog module.
Detects cluster tasks that report running but make no CPU progress.
"""

from jobfarm.watchdog.main import StallWatchdog, is_stalled

__all__ = ["StallWatchdog", "is_stalled"]
