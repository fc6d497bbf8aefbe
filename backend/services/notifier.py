"""
Notification surface for the provider portal.

Toast-style notifications are small {title, description, variant} payloads.
The optimistic coordinator emits them when a mutation fails or a delete is
confirmed; where they end up depends on the notifier it is given:

  LoggingNotifier   — default; writes to the carepanel.notifier logger
  ToastQueue        — keeps the most recent toasts in memory for the UI to poll
  SupabaseNotifier  — persists each toast as a row in the notifications table
                      for one user, so the notification centre picks it up

NotificationInbox is the read/write side of that same table (list, create,
mark read, dismiss), always filtered by user_id.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Protocol

from pydantic import BaseModel

log = logging.getLogger("carepanel.notifier")

Variant = Literal["default", "destructive", "success"]

# notifications.type values understood by the portal
_TYPE_FOR_VARIANT = {
    "destructive": "critical",
    "success": "success",
    "default": "info",
}


class Notification(BaseModel):
    title: str
    description: str = ""
    variant: Variant = "default"


class Notifier(Protocol):
    def __call__(self, notification: Notification) -> None: ...


class LoggingNotifier:
    def __call__(self, notification: Notification) -> None:
        level = logging.WARNING if notification.variant == "destructive" else logging.INFO
        log.log(level, "notify: %s — %s", notification.title, notification.description)


class ToastQueue:
    """Bounded in-memory buffer of recent toasts."""

    def __init__(self, maxlen: int = 20):
        self._items: deque[Notification] = deque(maxlen=max(1, maxlen))

    def __call__(self, notification: Notification) -> None:
        self._items.append(notification)

    def __len__(self) -> int:
        return len(self._items)

    def peek(self) -> list[Notification]:
        return list(self._items)

    def drain(self) -> list[Notification]:
        items = list(self._items)
        self._items.clear()
        return items


class NotifierChain:
    """Deliver each notification to several notifiers, in order."""

    def __init__(self, *notifiers: Notifier):
        self.notifiers = list(notifiers)

    def __call__(self, notification: Notification) -> None:
        for notifier in self.notifiers:
            notifier(notification)


class NotificationInbox:
    """Per-user access to the notifications table."""

    def __init__(self, db: Any, user_id: str, table: Optional[str] = None):
        from config import get_settings

        self.db = db
        self.user_id = user_id
        self.table = table or get_settings().notifications_table

    def fetch_all(self) -> list[dict]:
        result = (
            self.db.table(self.table)
            .select("*")
            .eq("user_id", self.user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return result.data or []

    def create(self, title: str, message: str, type: str = "info") -> dict:
        result = (
            self.db.table(self.table)
            .insert({
                "user_id": self.user_id,
                "title": title,
                "message": message,
                "type": type,
            })
            .execute()
        )
        return result.data[0] if result.data else {}

    def mark_as_read(self, notification_id: str) -> None:
        (
            self.db.table(self.table)
            .update({"read": True, "updated_at": _now()})
            .eq("id", notification_id)
            .eq("user_id", self.user_id)
            .execute()
        )

    def mark_all_as_read(self) -> int:
        """Mark every unread notification as read. Returns how many were updated."""
        unread_ids = [n["id"] for n in self.fetch_all() if not n.get("read")]
        if not unread_ids:
            return 0
        (
            self.db.table(self.table)
            .update({"read": True, "updated_at": _now()})
            .in_("id", unread_ids)
            .eq("user_id", self.user_id)
            .execute()
        )
        return len(unread_ids)

    def dismiss(self, notification_id: str) -> None:
        (
            self.db.table(self.table)
            .delete()
            .eq("id", notification_id)
            .eq("user_id", self.user_id)
            .execute()
        )


class SupabaseNotifier:
    """
    Persist toasts for one user. Insert failures are logged, never raised.

    The optimistic coordinator notifies from inside the event loop, so on a
    running loop the blocking supabase-py insert is handed to a worker thread
    and tracked until flush(). Without a loop the insert runs inline.
    """

    def __init__(self, user_id: str, db: Any = None):
        if db is None:
            from services.supabase_client import get_admin_client
            db = get_admin_client()
        self.inbox = NotificationInbox(db, user_id)
        self._inflight: set["asyncio.Task[None]"] = set()

    def __call__(self, notification: Notification) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persist(notification)
            return
        task = loop.create_task(asyncio.to_thread(self._persist, notification))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def flush(self) -> None:
        """Wait for inserts still running in worker threads."""
        if self._inflight:
            await asyncio.gather(*self._inflight)

    def _persist(self, notification: Notification) -> None:
        try:
            self.inbox.create(
                notification.title,
                notification.description,
                type=_TYPE_FOR_VARIANT.get(notification.variant, "info"),
            )
        except Exception as exc:
            log.warning("notifier: failed to persist '%s' — %s", notification.title, exc)


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
