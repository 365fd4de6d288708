#!/usr/bin/env python3
"""
Configuration management for the Tumblr archiver.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional YAML settings file, validation,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# Hard ceiling imposed by the feed on the `num` parameter
FEED_PAGE_SIZE_CEILING = 50


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # aiohttp access chatter is rarely useful for a scraper
    getLogger("aiohttp").setLevel(level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("TumblrArchiver")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "feed_client", "walker", "scheduler")

    Returns:
        A logger named "TumblrArchiver.{name}"
    """
    return getLogger(f"TumblrArchiver.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the Tumblr archiver.

    Values are resolved from, in increasing order of precedence:
    1. System environment variables
    2. .env file next to this module (if present)
    3. YAML settings file named by SETTINGS_FILE (if set)

    Example settings.yaml:
    ```yaml
    DATA_DIR: /srv/tumblr
    FETCH_MAX_ATTEMPTS: 8
    PAGE_DELAY: 2.5
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and settings file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_settings_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a non-negative float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Data locations
        self.DATA_DIR = environ.get("DATA_DIR", ".")
        self.SOURCES_FILE = environ.get("SOURCES_FILE", "sources.json")
        self.POSTS_CACHE_FILE = environ.get("POSTS_CACHE_FILE", "tumblr-posts.json")
        self.POSTS_DB_FILE = environ.get("POSTS_DB_FILE", "tumblr-posts.db")
        self.EXPORTED_POSTS_FILE = environ.get("EXPORTED_POSTS_FILE", "tumblr-posts-exported.json")
        self.DOWNLOADS_CACHE_FILE = environ.get("DOWNLOADS_CACHE_FILE", "tumblr-downloads.json")
        self.LOCK_FILE = environ.get("LOCK_FILE", "tumblr.lock")
        self.PHOTOS_DIR = environ.get("PHOTOS_DIR", "photos")

        self.USER_AGENT = environ.get("USER_AGENT", "tumblr-dl")

        # Feed pagination
        page_size = self._validate_positive_int("FEED_PAGE_SIZE", FEED_PAGE_SIZE_CEILING, 1)
        if page_size > FEED_PAGE_SIZE_CEILING:
            logger.warning(f"FEED_PAGE_SIZE capped at feed ceiling {FEED_PAGE_SIZE_CEILING}")
            page_size = FEED_PAGE_SIZE_CEILING
        self.FEED_PAGE_SIZE = page_size
        self.PAGE_DELAY = self._validate_positive_float("PAGE_DELAY", 1.0)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 60, 1)
        self.FETCH_MAX_ATTEMPTS = self._validate_positive_int("FETCH_MAX_ATTEMPTS", 5, 1)
        self.FETCH_RETRY_DELAY = self._validate_positive_float("FETCH_RETRY_DELAY", 5.0)
        self.FETCH_BACKOFF_EXPONENTIAL = self._validate_bool("FETCH_BACKOFF_EXPONENTIAL", False)
        self.FETCH_MAX_RETRY_DELAY = self._validate_positive_float("FETCH_MAX_RETRY_DELAY", 300.0)

        # Scheduling
        self.DEFAULT_SCRAPE_INTERVAL = self._validate_positive_int("DEFAULT_SCRAPE_INTERVAL", 60 * 30, 1)
        self.DEFAULT_SCRAPE_DELAY = self._validate_positive_float("DEFAULT_SCRAPE_DELAY", 5.0)

        # Media downloads
        self.DOWNLOAD_MAX_ATTEMPTS = self._validate_positive_int("DOWNLOAD_MAX_ATTEMPTS", 3, 1)
        self.DOWNLOAD_RETRY_DELAY = self._validate_positive_float("DOWNLOAD_RETRY_DELAY", 5.0)
        self.DOWNLOAD_DELAY = self._validate_positive_float("DOWNLOAD_DELAY", 1.0)

    def _load_settings_file(self):
        """Load environment variable overrides from a YAML settings file.

        If SETTINGS_FILE is set, the top-level mapping of that YAML file is
        copied into the process environment before typed values are parsed.
        """
        settings_file_path = environ.get("SETTINGS_FILE")
        if not settings_file_path:
            return

        settings = self._safe_read_yaml(settings_file_path, 1024 * 1024, 'settings')
        if settings is None:
            return
        if not isinstance(settings, dict):
            logger.warning(f"Settings file {settings_file_path} must be a YAML mapping at the top level")
            return

        loaded = 0
        for key, value in settings.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value).lower() if isinstance(value, bool) else str(value)
                loaded += 1
            else:
                logger.warning(f"Skipping invalid setting in {settings_file_path}: {key}={value}")

        logger.info(f"Loaded {loaded} settings from {settings_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def reload(self):
        """Re-read environment and settings file."""
        logger.info("Reloading configuration")
        self._load_environment()
        self._validate_and_set_config()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "data_dir": self.DATA_DIR,
            "sources_file": self.SOURCES_FILE,
            "feed_page_size": self.FEED_PAGE_SIZE,
            "page_delay": self.PAGE_DELAY,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_max_attempts": self.FETCH_MAX_ATTEMPTS,
            "fetch_retry_delay": self.FETCH_RETRY_DELAY,
            "fetch_backoff_exponential": self.FETCH_BACKOFF_EXPONENTIAL,
            "default_scrape_interval": self.DEFAULT_SCRAPE_INTERVAL,
            "default_scrape_delay": self.DEFAULT_SCRAPE_DELAY,
            "settings_file_configured": bool(environ.get("SETTINGS_FILE")),
        }


# Global configuration instance
config = Config()
