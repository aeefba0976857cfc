"""Read-modify-write access to ``users/{id}/settings.json``."""
from __future__ import annotations

from typing import Callable

from pydantic import ValidationError as SchemaError

from autopilot.errors import ValidationError
from autopilot.log import get_logger
from autopilot.models import Clock, iso, utc_now
from autopilot.schemas import UserSettings
from autopilot.storage import DocumentStore, settings_key

log = get_logger(__name__)


def load_settings(store: DocumentStore, user_id: str) -> UserSettings:
    """Stored settings, or defaults when the user has none yet."""
    data = store.get(settings_key(user_id))
    if data is None:
        return UserSettings()
    try:
        return UserSettings.model_validate(data)
    except SchemaError as exc:
        log.warning("Invalid settings for user=%s, using defaults: %s", user_id, exc.errors()[:1])
        return UserSettings()


def update_settings(
    store: DocumentStore,
    user_id: str,
    mutate: Callable[[UserSettings], None],
    clock: Clock = utc_now,
) -> UserSettings:
    """Apply *mutate* to the current settings and persist them.

    Raises ``ValidationError`` if the mutation leaves the settings invalid.
    """
    result: dict = {}

    def transform(current):
        settings = UserSettings.model_validate(current) if current else UserSettings()
        try:
            mutate(settings)
            settings = UserSettings.model_validate(settings.model_dump())
        except SchemaError as exc:
            raise ValidationError(f"Invalid settings: {exc.errors()[0]['msg']}")
        stamp = iso(clock())
        settings.created_at = settings.created_at or stamp
        settings.updated_at = stamp
        result["settings"] = settings
        return settings.model_dump(mode="json")

    store.update(settings_key(user_id), transform)
    return result["settings"]
