#!/usr/bin/env python3
"""
Configuration management for the Link Summarizer.

This module centralizes configuration loading, validation, and logging setup.
It handles environment variables, an optional .env file and YAML secrets file,
and exposes the runtime-mutable settings (limits, credentials, flags) through
`SettingsProvider`.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


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

    # Keep the Azure SDK quiet unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("LinkSummarizer")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Example:
        logger = get_logger("worker")
        logger.info("...")  # appears as 'LinkSummarizer.worker - INFO - ...'
    """
    return getLogger(f"LinkSummarizer.{name}")


logger = _setup_global_logger()

# Gemini exposes an OpenAI-compatible surface; any compatible endpoint works.
DEFAULT_AI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret common truthy/falsy spellings used in env vars and YAML."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


def mask_secret(value: Optional[str], show: int = 4) -> str:
    """Mask a secret value for safe logging (keep only first/last few chars)."""
    if not value:
        return "<missing>"
    v = str(value)
    if len(v) <= show * 2:
        return "*" * len(v)
    return f"{v[:show]}***{v[-show:]}"


class Config:
    """Configuration manager for the Link Summarizer.

    Loading order:
    1. Environment variables
    2. .env file (if present next to this module)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Secrets file values override both the environment and .env, which keeps API
    keys and origin tokens out of the process environment of the host.

    Example secrets.yaml format:
    ```yaml
    AI_API_KEY: "your-api-key"
    REDDIT_ACCESS_TOKEN: "bearer-token"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "summaries.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

        # HTTP
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; LinkSummarizer/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)

        # AI provider
        self.AI_API_KEY = environ.get("AI_API_KEY")
        self.AI_BASE_URL = environ.get("AI_BASE_URL", DEFAULT_AI_BASE_URL)
        self.AI_MODEL = environ.get("AI_MODEL", "gemini-1.5-flash")
        self.AI_TEMPERATURE = self._validate_positive_float("AI_TEMPERATURE", 1.0, 0.0)
        self.AI_TIMEOUT = self._validate_positive_int("AI_TIMEOUT", 120, 10)

        # External quota (free tier defaults)
        self.TOKENS_PER_MINUTE = self._validate_positive_int("TOKENS_PER_MINUTE", 1_000_000, 1)
        self.REQUESTS_PER_MINUTE = self._validate_positive_int("REQUESTS_PER_MINUTE", 15, 1)
        self.REQUESTS_PER_DAY = self._validate_positive_int("REQUESTS_PER_DAY", 1500, 1)
        self.REQUEST_SLOT_TIMEOUT = self._validate_positive_float("REQUEST_SLOT_TIMEOUT", 60.0, 1.0)
        self.TOKEN_WAIT_TIMEOUT = self._validate_positive_float("TOKEN_WAIT_TIMEOUT", 60.0, 1.0)
        self.QUOTA_POLL_INTERVAL = self._validate_positive_float("QUOTA_POLL_INTERVAL", 0.1, 0.01)

        # Queue & retries
        self.BATCH_SIZE = self._validate_positive_int("BATCH_SIZE", 10, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 1, 0)
        self.RETRY_INTERVAL = self._validate_positive_int("RETRY_INTERVAL", 300, 1)
        self.RETRY_DELAY = self._validate_positive_int("RETRY_DELAY", 60, 0)
        self.QUEUE_MAX_AGE = self._validate_positive_int("QUEUE_MAX_AGE", 86400, 60)
        self.PAUSE_TTL = self._validate_positive_int("PAUSE_TTL", 1800, 60)
        self.PUBLISHED_MARKER_TTL = self._validate_positive_int("PUBLISHED_MARKER_TTL", 172800, 60)

        # Content & output sizes
        self.MAX_SUMMARY_LENGTH = self._validate_positive_int("MAX_SUMMARY_LENGTH", 8000, 100)
        self.MAX_CONTENT_CHARS = self._validate_positive_int("MAX_CONTENT_CHARS", 60000, 1000)
        self.COMMENT_MAX_LENGTH = self._validate_positive_int("COMMENT_MAX_LENGTH", 10000, 500)

        # Cadences
        self.PIPELINE_CADENCE = environ.get("PIPELINE_CADENCE", "30s")
        self.HOUSEKEEPING_CADENCE = environ.get("HOUSEKEEPING_CADENCE", "1h")
        self.QUOTA_RESET_CADENCE = environ.get("QUOTA_RESET_CADENCE", "00:00")
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")

        # Origin (Reddit)
        self.REDDIT_ACCESS_TOKEN = environ.get("REDDIT_ACCESS_TOKEN")
        self.REDDIT_API_BASE = environ.get("REDDIT_API_BASE", "https://oauth.reddit.com").rstrip("/")

        # Archive service
        self.ARCHIVE_URL = environ.get("ARCHIVE_URL", "https://archive.ph/")
        if not self.ARCHIVE_URL.endswith("/"):
            self.ARCHIVE_URL += "/"
        self.ARCHIVE_TOKEN_TTL = self._validate_positive_int("ARCHIVE_TOKEN_TTL", 1800, 60)

        # Behaviour flags
        self.AUTOMATIC_MODE = parse_bool(environ.get("AUTOMATIC_MODE"), True)
        self.INCLUDE_ARCHIVE_LINK = parse_bool(environ.get("INCLUDE_ARCHIVE_LINK"), True)
        self.DISTINGUISH_RESULTS = parse_bool(environ.get("DISTINGUISH_RESULTS"), True)

        # File paths
        self.SETTINGS_PATH = environ.get("SETTINGS_PATH", path.join(base_dir, "settings.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and the older nested `environment:` mapping are
        accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "ai_base_url": self.AI_BASE_URL,
            "ai_model": self.AI_MODEL,
            "ai_api_key": mask_secret(self.AI_API_KEY),
            "limits": {
                "tokens_per_minute": self.TOKENS_PER_MINUTE,
                "requests_per_minute": self.REQUESTS_PER_MINUTE,
                "requests_per_day": self.REQUESTS_PER_DAY,
            },
            "batch_size": self.BATCH_SIZE,
            "max_retries": self.MAX_RETRIES,
            "cadences": {
                "pipeline": self.PIPELINE_CADENCE,
                "housekeeping": self.HOUSEKEEPING_CADENCE,
                "quota_reset": self.QUOTA_RESET_CADENCE,
            },
            "has_origin_token": bool(self.REDDIT_ACCESS_TOKEN),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


def safe_read_yaml(file_path: str, max_size: int, kind: str) -> Any | None:
    """Safely read a YAML file with consistent validation.

    Args:
        file_path: Path to the YAML file
        max_size: Maximum allowed file size in bytes
        kind: Short label for logging context (e.g. 'secrets', 'settings')

    Returns:
        Parsed YAML (mapping/list/primitive) or None on failure.
    """
    try:
        if not path.isfile(file_path):
            logger.debug(f"{kind.capitalize()} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for {kind} file at {file_path}")
            return None
        size = path.getsize(file_path)
        if size > max_size:
            logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
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


# Global configuration instance
config = Config()


class SettingsProvider:
    """Runtime-mutable settings lookup.

    Values come from `settings.yaml` (re-read on every call so edits apply
    without a restart), then explicit overrides, then the `Config` defaults.
    Unknown keys resolve to None.
    """

    DEFAULTS = {
        "automatic_mode": "AUTOMATIC_MODE",
        "api_key": "AI_API_KEY",
        "tokens_per_minute": "TOKENS_PER_MINUTE",
        "requests_per_minute": "REQUESTS_PER_MINUTE",
        "requests_per_day": "REQUESTS_PER_DAY",
        "temperature": "AI_TEMPERATURE",
        "include_archive_link": "INCLUDE_ARCHIVE_LINK",
        "distinguish_results": "DISTINGUISH_RESULTS",
    }

    def __init__(self, settings_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.settings_path = settings_path or config.SETTINGS_PATH
        self.overrides: Dict[str, Any] = dict(overrides or {})

    def _file_settings(self) -> Dict[str, Any]:
        data = safe_read_yaml(self.settings_path, 256 * 1024, 'settings')
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Settings file {self.settings_path} must be a mapping; ignoring")
            return {}
        return data

    def get(self, key: str) -> Any:
        file_settings = self._file_settings()
        if file_settings.get(key) is not None:
            return file_settings[key]
        if self.overrides.get(key) is not None:
            return self.overrides[key]
        attr = self.DEFAULTS.get(key)
        return getattr(config, attr, None) if attr else None

    def get_bool(self, key: str, default: bool = False) -> bool:
        return parse_bool(self.get(key), default)

    def get_number(self, key: str, default: float) -> float:
        value = self.get(key)
        try:
            return float(value) if value is not None else default
        except (TypeError, ValueError):
            logger.warning(f"Invalid numeric setting {key}={value!r}; using {default}")
            return default

    def get_positive_int(self, key: str, default: int, min_val: int = 1) -> int:
        """Whole-number setting of at least ``min_val``; anything else falls back to ``default``."""
        value = self.get(key)
        if value is None:
            return default
        try:
            number = float(value)
            if number < min_val:
                logger.warning(f"{key} must be at least {min_val}, using default {default}")
                return default
            return int(number)
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Invalid {key} value {value!r}, using default {default}")
            return default


def validate_configuration(settings: Optional[SettingsProvider] = None) -> List[str]:
    """Return a list of configuration problems that prevent the pipeline from running."""
    settings = settings or SettingsProvider()
    problems: List[str] = []
    api_key = settings.get("api_key")
    if not api_key or not str(api_key).strip():
        problems.append("AI API key not configured (AI_API_KEY or settings.yaml api_key)")
    if not config.REDDIT_ACCESS_TOKEN:
        problems.append("REDDIT_ACCESS_TOKEN not configured")
    for key in ("tokens_per_minute", "requests_per_minute", "requests_per_day"):
        if settings.get_number(key, 0) <= 0:
            problems.append(f"{key} must be a positive number")
    return problems
