"""
config.py – Application configuration and constants.

This module defines AppConfig, a central container for:
  - All application-wide constants (application name, database file name,
    portable-mode environment variables, …)
  - The user configuration (login requirement, session timeout, export
    options, …) stored as a JSON file inside the data directory and exposed
    through a simple dict-like interface.
  - Logger setup for the shared "GestorObres" logger.

AppConfig does not decide *where* the data directory is; that is the job of
paths.py, which runs first and hands the resolved directory over.

No other application module is imported here, so config.py sits at the bottom
of the dependency graph and can be safely imported by any other module.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler

# ---------------------------------------------------------------------------
# Application-level constants – these never change at runtime.
# ---------------------------------------------------------------------------

APP_NAME = "GestorObres"

APP_VERSION = "1.0.0"

# Name of the SQLite database file inside the data directory.
DB_FILENAME = "gestor-obres.db"

# Environment variables set by portable launchers; first non-empty wins.
PORTABLE_ENV_VARS = ("PORTABLE_EXECUTABLE_DIR", "PORTABLE_APP_DATA_DIR")

# Sub-directory created beside the executable in portable/packaged mode.
DATA_SUBDIR = "data"

# ---------------------------------------------------------------------------
# Default values written to config.json on first run.
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict = {
    # Privileged channels require a logged-in session.
    "require_login": True,
    # Minutes before a session expires (0 = never expires).
    "session_timeout_minutes": 30,
    # Minimum length for passwords of newly created accounts.
    "min_password_length": 8,
    # Field separator used by CSV exports.
    "csv_delimiter": ",",
    # Column width (in characters) for Excel exports.
    "excel_column_width": 20,
}


class AppConfig:
    """
    Manages application configuration, file paths and logging.

    On instantiation the class:
      1. Derives all relevant file paths from the resolved data directory.
      2. Sets up a rotating log handler.
      3. Loads (or creates) the JSON configuration file.

    Parameters
    ----------
    data_dir : str
        Absolute path of an existing, writable data directory, as returned
        by paths.resolve_data_directory().

    Attributes
    ----------
    data_dir : str
        Absolute path of the directory that stores all persistent data.
    db_path : str
        SQLite database file.
    config_path : str
        JSON configuration file.
    log_path : str
        Rotating application log.
    data : dict
        The currently loaded configuration values (mutable at runtime).
    logger : logging.Logger
        Shared Python logger for the whole application.
    """

    def __init__(self, data_dir: str) -> None:
        self.data_dir: str = os.path.abspath(data_dir)

        # --- Derive all file paths from the data directory ---
        self.db_path:     str = os.path.join(self.data_dir, DB_FILENAME)
        self.config_path: str = os.path.join(self.data_dir, "config.json")
        self.log_path:    str = os.path.join(self.data_dir, "app.log")

        # --- Configure the rotating log handler ---
        self.logger: logging.Logger = self._setup_logger()

        # --- Load or create the JSON configuration ---
        self.data: dict = self._load()

        self.logger.info("AppConfig initialised; data dir: %s", self.data_dir)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _setup_logger(self) -> logging.Logger:
        """
        Create and configure a rotating file logger for the whole application.

        The log rotates at 2 MB and keeps up to 3 backup files.  A handler
        already pointing at this log file is reused, so building several
        AppConfig objects for the same directory does not duplicate lines.
        """
        logger = logging.getLogger(APP_NAME)
        logger.setLevel(logging.DEBUG)

        for handler in logger.handlers:
            if getattr(handler, "baseFilename", None) == self.log_path:
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
        Read config.json from disk.

        Missing keys are back-filled from DEFAULT_CONFIG so that new
        settings introduced in later versions are always present.  On first
        run the defaults are written to disk.

        Returns the loaded (or default) configuration dictionary.
        """
        if not os.path.exists(self.config_path):
            cfg = dict(DEFAULT_CONFIG)
            self.data = cfg
            self.save()
            return cfg

        try:
            with open(self.config_path, "r", encoding="utf-8") as fh:
                cfg = json.load(fh)
            if not isinstance(cfg, dict):
                raise ValueError("config.json does not contain an object")
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
        """Persist the current configuration dictionary to disk as JSON."""
        try:
            with open(self.config_path, "w", encoding="utf-8") as fh:
                json.dump(self.data, fh, indent=2)
            self.logger.info("Config saved")
        except OSError:
            self.logger.exception("Failed to save config")

    def get(self, key: str, default=None):
        """Return a configuration value by key, or *default* if not found."""
        return self.data.get(key, default)

    def set(self, key: str, value) -> None:
        """
        Update a configuration value in memory.

        Call save() afterwards to persist the change to disk.
        """
        self.data[key] = value
