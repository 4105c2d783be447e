"""Once-per-attempt terminal announcements.

Three watchers can observe the same attempt reaching a terminal state. They
share one :class:`AnnouncementLedger`; whoever claims the attempt first
announces it and everybody else stays quiet. Dispatch handles and attempt ids
of the same attempt are aliased so a claim under one key blocks the other.

All ledger methods are synchronous, so a watcher that checks its stop flag,
tears its loop down and claims in one stretch of code cannot interleave with
another watcher on the event loop.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from backup.reconcile import Verdict, VerdictKind

LOGGER = logging.getLogger("backupconsole.orchestrator.announce")

SUCCESS_MESSAGE = "Backup completed successfully"
SUCCESS_NO_URL_MESSAGE = "Backup completed successfully. Check the backup history to download it."
CANCELLED_MESSAGE = "Backup was cancelled"


def attempt_keys(dispatch_handle: Optional[str] = None, attempt_id: Optional[str] = None) -> Tuple[str, ...]:
    keys = []
    if dispatch_handle:
        keys.append(f"dispatch:{dispatch_handle}")
    if attempt_id:
        keys.append(f"attempt:{attempt_id}")
    return tuple(keys)


class AnnouncementLedger:
    """Union of aliases per attempt, with one claim and one owner each."""

    def __init__(self) -> None:
        self._parent: Dict[str, str] = {}
        self._claimed: Set[str] = set()
        self._owners: Dict[str, str] = {}

    def _find(self, key: str) -> str:
        root = self._parent.setdefault(key, key)
        while root != self._parent[root]:
            root = self._parent[root]
        while key != root:
            self._parent[key], key = root, self._parent[key]
        return root

    def link(self, keys: Iterable[str]) -> Optional[str]:
        roots = [self._find(key) for key in keys if key]
        if not roots:
            return None
        head = roots[0]
        for root in roots[1:]:
            if root == head:
                continue
            self._parent[root] = head
            if root in self._claimed:
                self._claimed.discard(root)
                self._claimed.add(head)
            owner = self._owners.pop(root, None)
            if owner and head not in self._owners:
                self._owners[head] = owner
        return head

    def claim(self, keys: Iterable[str]) -> bool:
        head = self.link(keys)
        if head is None or head in self._claimed:
            return False
        self._claimed.add(head)
        return True

    def is_claimed(self, keys: Iterable[str]) -> bool:
        head = self.link(keys)
        return head is not None and head in self._claimed

    def acquire(self, keys: Iterable[str], owner: str) -> bool:
        head = self.link(keys)
        if head is None:
            return False
        current = self._owners.get(head)
        if current and current != owner:
            return False
        self._owners[head] = owner
        return True

    def release(self, keys: Iterable[str], owner: str) -> None:
        head = self.link(keys)
        if head is not None and self._owners.get(head) == owner:
            del self._owners[head]

    def owner_of(self, keys: Iterable[str]) -> Optional[str]:
        head = self.link(keys)
        return self._owners.get(head) if head else None

    def prune(self, keep: Iterable[str]) -> int:
        """Forget attempts with no owner and no alias in ``keep``; return keys dropped."""

        wanted = set(keep)
        groups: Dict[str, List[str]] = {}
        for key in list(self._parent):
            groups.setdefault(self._find(key), []).append(key)
        dropped = 0
        for head, members in groups.items():
            if head in self._owners or wanted.intersection(members):
                continue
            for key in members:
                del self._parent[key]
            self._claimed.discard(head)
            dropped += len(members)
        return dropped

    def __len__(self) -> int:
        return len(self._parent)


class Notifier(Protocol):
    def success(self, message: str, *, url: Optional[str] = None, attempt_id: Optional[str] = None) -> None: ...

    def failure(self, message: str, *, attempt_id: Optional[str] = None) -> None: ...

    def info(self, message: str, *, attempt_id: Optional[str] = None) -> None: ...

    def warning(self, message: str, *, attempt_id: Optional[str] = None) -> None: ...


@dataclass(slots=True)
class Notification:
    level: str
    message: str
    attempt_id: Optional[str] = None
    url: Optional[str] = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["ts"] = self.ts.isoformat()
        return payload


class NotificationFeed:
    """Bounded list of user-facing notifications."""

    def __init__(self, maxlen: int = 50) -> None:
        self._items: Deque[Notification] = deque(maxlen=maxlen)

    def _push(self, level: str, message: str, *, attempt_id: Optional[str] = None, url: Optional[str] = None) -> None:
        self._items.append(Notification(level=level, message=message, attempt_id=attempt_id, url=url))
        log_level = logging.ERROR if level == "failure" else logging.WARNING if level == "warning" else logging.INFO
        LOGGER.log(log_level, "[%s] %s (attempt=%s)", level, message, attempt_id)

    def success(self, message: str, *, url: Optional[str] = None, attempt_id: Optional[str] = None) -> None:
        self._push("success", message, attempt_id=attempt_id, url=url)

    def failure(self, message: str, *, attempt_id: Optional[str] = None) -> None:
        self._push("failure", message, attempt_id=attempt_id)

    def info(self, message: str, *, attempt_id: Optional[str] = None) -> None:
        self._push("info", message, attempt_id=attempt_id)

    def warning(self, message: str, *, attempt_id: Optional[str] = None) -> None:
        self._push("warning", message, attempt_id=attempt_id)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._items)
        return items[-limit:] if limit else items


class Announcer:
    """Claim an attempt in the ledger and emit its single terminal notification."""

    def __init__(self, ledger: AnnouncementLedger, notifier: Notifier) -> None:
        self.ledger = ledger
        self.notifier = notifier

    def announce(self, verdict: Verdict, keys: Iterable[str], *, url: Optional[str] = None) -> bool:
        if not verdict.terminal:
            return False
        if not self.ledger.claim(keys):
            LOGGER.debug("Announcement for %s already made", tuple(keys))
            return False
        if verdict.kind is VerdictKind.SUCCESS:
            if url:
                self.notifier.success(SUCCESS_MESSAGE, url=url, attempt_id=verdict.attempt_id)
            else:
                self.notifier.success(SUCCESS_NO_URL_MESSAGE, attempt_id=verdict.attempt_id)
        elif verdict.kind is VerdictKind.FAILURE:
            self.notifier.failure(verdict.message or "Backup failed", attempt_id=verdict.attempt_id)
        else:
            self.notifier.info(CANCELLED_MESSAGE, attempt_id=verdict.attempt_id)
        return True

    def silence(self, keys: Iterable[str]) -> bool:
        """Claim without announcing; used when the user cancels locally."""

        return self.ledger.claim(keys)


__all__ = [
    "AnnouncementLedger",
    "Announcer",
    "Notification",
    "NotificationFeed",
    "Notifier",
    "attempt_keys",
]
