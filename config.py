"""
config.py – Application configuration and constants.

This module defines AppConfig, a central container for:
  - All application-wide constants (KDF parameters, file names, default
    settings, notification thresholds, the token refresh look-ahead, …)
  - The small plaintext preference file (log level, background refresh,
    initial refresh delay) that must be readable before the encrypted
    store is unlocked, exposed through a simple dict-like interface.
  - Helper utilities shared across modules: OS-appropriate data-directory
    resolution, locale-to-language mapping and logger setup.

No other application module is imported here, so config.py sits at the bottom
of the dependency graph and can be safely imported by any other module.
"""

import json
import locale
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

import appdirs

# ---------------------------------------------------------------------------
# Application-level constants – these never change at runtime.
# ---------------------------------------------------------------------------

APP_NAME = "AIQuotaManager"

APP_VERSION = "1.0.0"

# Key derivation and AES-256-GCM parameters.
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
BLOB_DELIMITER = ":"

# Stand-in password for "no password" mode. Anyone with the source can
# derive the key from it: this hides credentials from casual disk
# inspection only and gives no real confidentiality.
SKIPPED_PASSWORD_KEY = "no-password-mode-internal-key"

# Schema version of the decrypted storage document.
CURRENT_DATA_VERSION = 2

# OAuth tokens expiring within this window are refreshed before use.
REFRESH_THRESHOLD_MS = 5 * 60 * 1000

PROVIDER_IDS = ("antigravity", "githubCopilot", "zaiCoding")

SUPPORTED_LANGUAGES = ("en", "zh-TW", "zh-CN")
DEFAULT_LANGUAGE = "en"

# ---------------------------------------------------------------------------
# Defaults for the encrypted Settings record.
# ---------------------------------------------------------------------------
DEFAULT_NOTIFICATION_THRESHOLDS: list = [
    {"value": 25, "enabled": True},
    {"value": 10, "enabled": True},
    {"value": 5, "enabled": True},
]

DEFAULT_SETTINGS: dict = {
    # Seconds between background refresh ticks.
    "refreshInterval": 60,
    # Deprecated single threshold, kept so older documents round-trip.
    "lowQuotaThreshold": 10,
    "notifications": True,
    "language": DEFAULT_LANGUAGE,
    "closeToTray": False,
    # Deprecated reminder interval (minutes), replaced by tiered thresholds.
    "notificationReminderInterval": 0,
    "notificationThresholds": DEFAULT_NOTIFICATION_THRESHOLDS,
}

# ---------------------------------------------------------------------------
# Default values written to config.json on first run.
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict = {
    # Level of the rotating application log.
    "log_level": "INFO",
    # Run the refresh timer while the dashboard is in the background.
    "background_refresh": True,
    # Seconds to wait after startup before the first refresh.
    "initial_refresh_delay": 5,
}


def map_locale_to_language(locale_name: str) -> str:
    """
    Map a host locale such as 'zh_TW', 'zh-Hant' or 'de-DE' to one of the
    supported UI languages.  Unmapped locales fall back to English.
    """
    lower = (locale_name or "").replace("_", "-").lower()

    if lower in ("zh-tw", "zh-hant", "zh-hk", "zh-hant-tw"):
        return "zh-TW"
    if lower in ("zh-cn", "zh-hans", "zh", "zh-sg", "zh-hans-cn"):
        return "zh-CN"
    return DEFAULT_LANGUAGE


def system_language() -> str:
    """Return the supported language matching the host environment's locale."""
    try:
        name = locale.getlocale()[0] or ""
    except ValueError:
        name = ""
    if not name:
        name = os.environ.get("LANG", "").split(".")[0]
    return map_locale_to_language(name)


class AppConfig:
    """
    Pre-unlock preferences, data-directory layout and the application log.

    Construction:
      1. Resolves the OS-appropriate user-data directory (or uses
         *data_dir* when given, e.g. by tests).
      2. Lays out the auth, credentials, config and log paths under it.
      3. Attaches the rotating log handler (once per log file).
      4. Loads the JSON preference file, if there is one.

    Attributes
    ----------
    user_data_dir : str
        Root directory for everything the application writes.
    data_dir : str
        Sub-directory holding the password record and the encrypted store.
    auth_path : str
        Plaintext JSON PasswordRecord (salt, hash, skipped flag).
    credentials_path : str
        EncryptedBlob string of the whole storage document.
    config_path : str
        JSON preference file.
    log_path : str
        Rotating application log.
    data : dict
        The currently loaded preference values (mutable at runtime).
    logger : logging.Logger
        The application logger every module writes to.
    """

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.user_data_dir: str = self._get_user_data_dir(data_dir)

        self.data_dir:         str = os.path.join(self.user_data_dir, "data")
        self.auth_path:        str = os.path.join(self.data_dir, "auth.json")
        self.credentials_path: str = os.path.join(self.data_dir, "credentials.enc")
        self.config_path:      str = os.path.join(self.user_data_dir, "config.json")
        self.log_path:         str = os.path.join(self.user_data_dir, "app.log")
        os.makedirs(self.data_dir, exist_ok=True)

        self.logger: logging.Logger = self._setup_logger()

        self.data: dict = self._load()
        self.logger.setLevel(self.data.get("log_level", "INFO"))

        self.logger.info("AppConfig initialised; data dir: %s", self.user_data_dir)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_user_data_dir(data_dir: Optional[str]) -> str:
        """Return (and create if necessary) the user-data directory."""
        path = data_dir or appdirs.user_data_dir(APP_NAME)
        os.makedirs(path, exist_ok=True)
        return path

    def _setup_logger(self) -> logging.Logger:
        """
        Attach a rotating file handler to the application logger.

        The log rotates at 2 MB and keeps up to 3 backup files.  A handler
        already pointing at the same file is not added twice.
        """
        logger = logging.getLogger(APP_NAME)
        logger.setLevel(logging.DEBUG)

        target = os.path.abspath(self.log_path)
        for handler in logger.handlers:
            if getattr(handler, "baseFilename", None) == target:
                return logger

        handler = RotatingFileHandler(
            self.log_path,
            maxBytes=2_000_000,
            backupCount=3,
            encoding="utf-8",
        )
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
        )
        logger.addHandler(handler)
        return logger

    def _load(self) -> dict:
        """
        Read config.json, falling back to DEFAULT_CONFIG when it is missing
        or unreadable.

        Missing keys are back-filled from DEFAULT_CONFIG so that new
        preferences introduced in later versions are always present.
        """
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, "r", encoding="utf-8") as fh:
                    cfg: dict = json.load(fh)
                for key, value in DEFAULT_CONFIG.items():
                    cfg.setdefault(key, value)
                return cfg
        except (OSError, ValueError):
            self.logger.exception("Failed to load config; using defaults")

        return dict(DEFAULT_CONFIG)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Persist the current preference dictionary to disk as JSON."""
        try:
            with open(self.config_path, "w", encoding="utf-8") as fh:
                json.dump(self.data, fh, indent=2)
            self.logger.info("Config saved")
        except OSError:
            self.logger.exception("Failed to save config")

    def get(self, key: str, default=None):
        """Return a preference value by key, or *default* if not found."""
        return self.data.get(key, default)

    def set(self, key: str, value) -> None:
        """
        Update a preference value in memory.

        Call save() afterwards to persist the change to disk.
        """
        self.data[key] = value
