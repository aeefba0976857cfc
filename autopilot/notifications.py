"""
Notification manager: records every notification in the user's in-app feed
and pushes selected ones to SMS / WhatsApp.

``send`` is fire-and-forget. Recording happens on the caller's thread; channel
delivery runs on a small worker pool and its failures are logged, never raised.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time as dtime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError as SchemaError

from autopilot.channels import ChannelError, MessagingChannel
from autopilot.errors import ValidationError
from autopilot.log import get_logger
from autopilot.models import (
    Clock,
    Notification,
    NotificationType,
    Priority,
    iso,
    new_id,
    utc_now,
)
from autopilot.schemas import NotificationPreferences, UserSettings
from autopilot.settings import load_settings, update_settings
from autopilot.storage import DocumentStore, KeyedLocks, notifications_key

log = get_logger(__name__)

MAX_STORED = 500

# Preference flag that gates external push for each notification type.
_TYPE_TOGGLES = {
    NotificationType.JOB_MATCH: "job_match_alerts",
    NotificationType.APPLICATION_SENT: "application_updates",
    NotificationType.APPLICATION_FAILED: "application_updates",
    NotificationType.EMAIL_RESPONSE: "application_updates",
    NotificationType.INTERVIEW_DETECTED: "interview_reminders",
    NotificationType.INTERVIEW_CONFIRMED: "interview_reminders",
    NotificationType.INTERVIEW_REMINDER: "interview_reminders",
    NotificationType.THANK_YOU_READY: "interview_reminders",
    NotificationType.DAILY_DIGEST: "daily_digest",
}

_SETTINGS_FIELDS = ("timezone", "quiet_hours_start", "quiet_hours_end", "phone_number", "whatsapp_enabled", "email")


def _parse_hhmm(value: str) -> dtime:
    hours, _, minutes = value.partition(":")
    return dtime(int(hours), int(minutes))


def is_quiet_hours(start: str | None, end: str | None, tz: str, now: datetime) -> bool:
    """True when *now* (in *tz*) falls inside [start, end). Windows may wrap midnight."""
    if not start or not end or start == end:
        return False
    try:
        zone = ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r, using UTC for quiet hours", tz)
        zone = ZoneInfo("UTC")
    current = now.astimezone(zone).time().replace(second=0, microsecond=0)
    s, e = _parse_hhmm(start), _parse_hhmm(end)
    if s < e:
        return s <= current < e
    return current >= s or current < e


def route_channels(
    settings: UserSettings,
    notification: Notification,
    available: dict[str, MessagingChannel],
    now: datetime,
) -> list[str]:
    """External channels a notification should be pushed to (in-app is implicit)."""
    prefs = settings.notification_preferences
    toggle = _TYPE_TOGGLES.get(notification.type)
    if toggle and not getattr(prefs, toggle):
        return []
    if not settings.phone_number:
        return []

    if notification.priority == Priority.CRITICAL:
        wanted = ["sms"]
        if settings.whatsapp_enabled:
            wanted.append("whatsapp")
    elif notification.priority == Priority.HIGH:
        if is_quiet_hours(settings.quiet_hours_start, settings.quiet_hours_end, settings.timezone, now):
            return []
        wanted = []
        if prefs.sms_enabled:
            wanted.append("sms")
        if prefs.whatsapp_enabled and settings.whatsapp_enabled:
            wanted.append("whatsapp")
    else:
        return []
    return [name for name in wanted if name in available]


class NotificationManager:
    def __init__(
        self,
        store: DocumentStore,
        channels: dict[str, MessagingChannel] | None = None,
        locks: KeyedLocks | None = None,
        clock: Clock = utc_now,
        *,
        async_delivery: bool = True,
        max_workers: int = 4,
    ) -> None:
        self.store = store
        self.channels = channels or {}
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self._pool = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
            if async_delivery else None
        )

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(
        self,
        user_id: str,
        kind: NotificationType | str,
        title: str,
        message: str,
        priority: Priority | str = Priority.MEDIUM,
        data: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Record a notification and schedule external delivery. Never raises."""
        try:
            notification = Notification(
                id=new_id(),
                user_id=user_id,
                type=NotificationType.parse(kind),
                title=title,
                message=message,
                priority=Priority.parse(priority),
                data=dict(data or {}),
                created_at=iso(self.clock()),
            )
            self._record(notification)
            settings = load_settings(self.store, user_id)
            targets = route_channels(settings, notification, self.channels, self.clock())
        except Exception:
            log.exception("Could not record notification %r for user=%s", title, user_id)
            return None

        log.info(
            "Notification %s for user=%s [%s/%s] %s",
            notification.id, user_id, notification.type.value, notification.priority.value, title,
        )
        if targets:
            if self._pool is not None:
                self._pool.submit(self._deliver, notification, settings.phone_number, targets)
            else:
                self._deliver(notification, settings.phone_number, targets)
        return notification

    def _record(self, notification: Notification) -> None:
        def append(current):
            doc = current or {"notifications": [], "unread": 0}
            items = doc.get("notifications", [])
            items.append(notification.to_dict())
            if len(items) > MAX_STORED:
                items = items[-MAX_STORED:]
            return {"notifications": items, "unread": sum(1 for n in items if not n.get("read"))}

        with self.locks(notification.user_id):
            self.store.update(notifications_key(notification.user_id), append)

    def _deliver(self, notification: Notification, to: str, targets: list[str]) -> None:
        delivered: list[str] = []
        for name in targets:
            try:
                self.channels[name].send_message(to, notification.message, notification.title)
                delivered.append(name)
            except ChannelError as exc:
                log.error("Delivery via %s failed for notification %s: %s", name, notification.id, exc.message)
            except Exception:
                log.exception("Unexpected error delivering notification %s via %s", notification.id, name)
        if not delivered:
            return

        sent_at = iso(self.clock())
        channel = ",".join(["in_app"] + delivered)

        def mark(current):
            doc = current or {"notifications": [], "unread": 0}
            for n in doc.get("notifications", []):
                if n.get("id") == notification.id:
                    n["sent"] = True
                    n["sent_at"] = sent_at
                    n["channel"] = channel
            return doc

        try:
            with self.locks(notification.user_id):
                self.store.update(notifications_key(notification.user_id), mark)
        except Exception:
            log.exception("Could not mark notification %s as sent", notification.id)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def _load(self, user_id: str) -> dict:
        return self.store.get(notifications_key(user_id)) or {"notifications": [], "unread": 0}

    def list(self, user_id: str, *, unread_only: bool = False, limit: int | None = None) -> list[dict]:
        """Notifications newest-first."""
        items = list(reversed(self._load(user_id)["notifications"]))
        items.sort(key=lambda n: n.get("created_at") or "", reverse=True)
        if unread_only:
            items = [n for n in items if not n.get("read")]
        if limit is not None:
            if limit < 0:
                raise ValidationError("limit must be >= 0")
            items = items[:limit]
        return items

    def mark_as_read(self, user_id: str, ids: list[str]) -> int:
        """Mark the given ids read; unknown ids are ignored. Returns how many changed."""
        wanted = set(ids)
        changed = 0

        def mark(current):
            nonlocal changed
            doc = current or {"notifications": [], "unread": 0}
            for n in doc.get("notifications", []):
                if n.get("id") in wanted and not n.get("read"):
                    n["read"] = True
                    changed += 1
            doc["unread"] = sum(1 for n in doc.get("notifications", []) if not n.get("read"))
            return doc

        with self.locks(user_id):
            self.store.update(notifications_key(user_id), mark)
        return changed

    def get_unread(self, user_id: str) -> int:
        """Unread count from the stored document, which every writer keeps current."""
        doc = self._load(user_id)
        count = doc.get("unread")
        if count is None:
            count = sum(1 for n in doc["notifications"] if not n.get("read"))
        return count

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences(self, user_id: str) -> dict:
        settings = load_settings(self.store, user_id)
        out = settings.notification_preferences.model_dump()
        for name in _SETTINGS_FIELDS:
            out[name] = getattr(settings, name)
        return out

    def update_preferences(self, user_id: str, changes: dict[str, Any]) -> dict:
        """Partial update of notification preferences and contact settings."""
        pref_fields = set(NotificationPreferences.model_fields)
        unknown = set(changes) - pref_fields - set(_SETTINGS_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown preference(s): {', '.join(sorted(unknown))}")

        def mutate(settings: UserSettings) -> None:
            prefs = settings.notification_preferences.model_dump()
            prefs.update({k: v for k, v in changes.items() if k in pref_fields})
            try:
                settings.notification_preferences = NotificationPreferences(**prefs)
            except SchemaError as exc:
                raise ValidationError(f"Invalid preferences: {exc.errors()[0]['msg']}")
            for name in _SETTINGS_FIELDS:
                if name in changes:
                    setattr(settings, name, changes[name])

        with self.locks(user_id):
            update_settings(self.store, user_id, mutate, self.clock)
        log.info("Updated notification preferences for user=%s: %s", user_id, sorted(changes))
        return self.get_preferences(user_id)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
