"""Watchers that follow remote backup attempts to their outcome."""

from .announce import AnnouncementLedger, Announcer, NotificationFeed
from .history import HistoryView
from .monitor import BackgroundMonitor, BackgroundWatch
from .polling import PollingEngine, PollingPolicy, PollSession
from .progress import HistoryProgressEntry, HistoryProgressTracker
from .state import BackupConsoleState

__all__ = [
    "AnnouncementLedger",
    "Announcer",
    "BackgroundMonitor",
    "BackgroundWatch",
    "BackupConsoleState",
    "HistoryProgressEntry",
    "HistoryProgressTracker",
    "HistoryView",
    "NotificationFeed",
    "PollSession",
    "PollingEngine",
    "PollingPolicy",
]
