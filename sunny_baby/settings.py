"""Explicit application settings and per-device state.

Everything the app used to keep as loose key/value flags (login state, the
Drive access token, onboarding progress, the caregiver profile and sync
tuning) lives on :class:`AppSettings`. The object is passed to the tracker
and the sync manager at construction so tests can inject their own.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from copy import deepcopy
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    APP_VERSION,
    CONF_APP_VERSION,
    CONF_CLOUD_SYNC_ENABLED,
    CONF_DRIVE_BASE_URL,
    CONF_GOOGLE_TOKEN,
    CONF_LOGGED_IN,
    CONF_NOTIFICATIONS,
    CONF_ONBOARDING_COMPLETE,
    CONF_PROFILE,
    CONF_SNAPSHOT_FILE,
    CONF_STARTUP_TIMEOUT,
    CONF_SYNC_DEBOUNCE,
    DEFAULT_DRIVE_BASE_URL,
    DEFAULT_PROFILE,
    DEFAULT_SNAPSHOT_FILE,
    DEFAULT_STARTUP_TIMEOUT,
    DEFAULT_SYNC_DEBOUNCE,
)

_LOGGER = logging.getLogger(__name__)

PROFILE_SCHEMA = vol.Schema(
    {
        vol.Optional("name", default=DEFAULT_PROFILE["name"]): vol.Coerce(str),
        vol.Optional("email", default=DEFAULT_PROFILE["email"]): vol.Coerce(str),
        vol.Optional("photoUrl", default=""): vol.Any(None, vol.Coerce(str)),
    },
    extra=vol.ALLOW_EXTRA,
)

SETTINGS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_LOGGED_IN, default=False): vol.Boolean(),
        vol.Optional(CONF_GOOGLE_TOKEN, default=None): vol.Any(None, vol.Coerce(str)),
        vol.Optional(CONF_ONBOARDING_COMPLETE, default=False): vol.Boolean(),
        vol.Optional(CONF_PROFILE, default=dict(DEFAULT_PROFILE)): PROFILE_SCHEMA,
        vol.Optional(CONF_NOTIFICATIONS, default=True): vol.Boolean(),
        vol.Optional(CONF_APP_VERSION, default=None): vol.Any(None, vol.Coerce(str)),
        vol.Optional(CONF_CLOUD_SYNC_ENABLED, default=True): vol.Boolean(),
        vol.Optional(CONF_SYNC_DEBOUNCE, default=DEFAULT_SYNC_DEBOUNCE): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_SNAPSHOT_FILE, default=DEFAULT_SNAPSHOT_FILE): vol.All(vol.Coerce(str), vol.Length(min=1)),
        vol.Optional(CONF_DRIVE_BASE_URL, default=DEFAULT_DRIVE_BASE_URL): vol.All(vol.Coerce(str), vol.Url()),
        vol.Optional(CONF_STARTUP_TIMEOUT, default=DEFAULT_STARTUP_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0.1)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


def _read_settings_file(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(text) or {}
        return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ValueError(f"settings file {path} is not valid: {exc}") from exc


class AppSettings:
    """Validated settings with accessors; optionally backed by a file."""

    def __init__(self, options: Mapping[str, Any] | None = None, *, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._options: dict[str, Any] = SETTINGS_SCHEMA(dict(options or {}))

    @classmethod
    def load(cls, path: str | Path) -> AppSettings:
        """Load settings from ``path``; a missing file yields defaults."""

        p = Path(path)
        if not p.exists():
            return cls(path=p)
        data = _read_settings_file(p)
        if not isinstance(data, Mapping):
            raise ValueError(f"settings file {p} must contain a mapping")
        try:
            return cls(data, path=p)
        except vol.Invalid as err:
            raise ValueError(f"Invalid settings in {p}: {err}") from err

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(self._options, f, indent=2)

    @property
    def options(self) -> dict[str, Any]:
        return deepcopy(self._options)

    def update(self, **changes: Any) -> None:
        merged = dict(self._options)
        merged.update(changes)
        self._options = SETTINGS_SCHEMA(merged)
        self.save()

    # ------------------------------------------------------------------
    @property
    def logged_in(self) -> bool:
        return bool(self._options[CONF_LOGGED_IN])

    @property
    def google_token(self) -> str | None:
        token = self._options.get(CONF_GOOGLE_TOKEN)
        if not isinstance(token, str):
            return None
        return token.strip() or None

    def set_google_token(self, token: str | None) -> None:
        changes: dict[str, Any] = {CONF_GOOGLE_TOKEN: token}
        if token:
            changes[CONF_LOGGED_IN] = True
        self.update(**changes)

    @property
    def onboarding_complete(self) -> bool:
        return bool(self._options[CONF_ONBOARDING_COMPLETE])

    def mark_onboarding_complete(self) -> None:
        if not self.onboarding_complete:
            self.update(**{CONF_ONBOARDING_COMPLETE: True})

    @property
    def profile(self) -> dict[str, Any]:
        return dict(self._options[CONF_PROFILE])

    def set_profile(self, profile: Mapping[str, Any]) -> None:
        self.update(**{CONF_PROFILE: dict(profile)})

    @property
    def notifications_enabled(self) -> bool:
        return bool(self._options[CONF_NOTIFICATIONS])

    def record_app_version(self, version: str = APP_VERSION) -> bool:
        """Store ``version``; return ``True`` when it differs from a previous run."""

        previous = self._options.get(CONF_APP_VERSION)
        if previous != version:
            self.update(**{CONF_APP_VERSION: version})
        return bool(previous) and previous != version

    def login(self) -> None:
        self.update(**{CONF_LOGGED_IN: True})

    def clear(self) -> None:
        """Forget all per-device state, as when the user wipes local data."""

        self._options = SETTINGS_SCHEMA({})
        self.save()


__all__ = ["AppSettings", "SETTINGS_SCHEMA"]
