from __future__ import annotations

from typing import Final

DOMAIN = "sunny_baby"
APP_VERSION = "2026.1.2"

# Settings keys
CONF_LOGGED_IN = "logged_in"
CONF_GOOGLE_TOKEN = "google_token"
CONF_ONBOARDING_COMPLETE = "onboarding_complete"
CONF_PROFILE = "profile"
CONF_NOTIFICATIONS = "notifications"
CONF_APP_VERSION = "app_version"
CONF_CLOUD_SYNC_ENABLED = "cloud_sync_enabled"
CONF_SYNC_DEBOUNCE = "sync_debounce_seconds"
CONF_SNAPSHOT_FILE = "snapshot_file_name"
CONF_DRIVE_BASE_URL = "drive_base_url"
CONF_STARTUP_TIMEOUT = "startup_timeout_seconds"

DEFAULT_SYNC_DEBOUNCE: Final = 5.0
DEFAULT_SNAPSHOT_FILE: Final = "database.json"
DEFAULT_STARTUP_TIMEOUT: Final = 3.0
DEFAULT_DRIVE_BASE_URL: Final = "https://www.googleapis.com"
DRIVE_SPACE: Final = "appDataFolder"

DEFAULT_PROFILE: Final = {"name": "Parent", "email": "user@sunnybaby.app", "photoUrl": ""}

# Legacy key/value dump written before the SQLite store existed
LEGACY_CHILDREN_KEY = "sunnyBaby_children"
LEGACY_LOGS_KEY = "babyTrackerLogs"
LEGACY_APPOINTMENTS_KEY = "babyTrackerAppointments"

# Snapshot wire keys
SNAPSHOT_LAST_SYNC = "lastSync"
