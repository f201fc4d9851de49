"""
Cron manager configuration.

Settings come from a JSON file, then environment variables (a `.env` file
in the working directory is loaded first) override individual keys.

Configuration path priority:
1. Explicit config_path argument
2. CRON_MANAGER_CONFIG environment variable
3. Default: ~/.cron_manager/config.json
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".cron_manager"
DEFAULT_TIMEZONE = "America/Sao_Paulo"


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get('CRON_MANAGER_LOG_DIR'):
        return str(Path(os.environ['CRON_MANAGER_LOG_DIR']).expanduser() / "cron_manager.log")
    return str(DEFAULT_HOME / "logs" / "cron_manager.log")


@dataclass
class WebhookConfig:
    """Outgoing webhook settings."""
    url: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class SmtpConfig:
    """Email transport settings. Missing credentials disable email silently."""
    host: str = "smtp.gmail.com"
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    from_email: Optional[str] = None
    to_emails: List[str] = field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return bool(self.user and self.password and self.from_email and self.to_emails)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


class ManagerConfig:
    """
    Cron manager configuration.

    Attributes:
        db_path: SQLite database holding tasks and activity logs
        timezone: IANA zone cron expressions are evaluated in
        max_workers: Pooled threads for task runs; runs beyond that get their own thread
        notification_workers: Worker threads for webhook/email delivery
        max_output_bytes: Cap on captured command output
        log_output_chars: Cap on output stored in activity log events
        misfire_grace_seconds: How late a trigger may still run
    """

    DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"

    def __init__(self, config_path: Optional[str] = None, load_env: bool = True):
        """
        Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            load_env: Apply environment variable overrides after the file
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('CRON_MANAGER_CONFIG'):
            self.config_path = Path(os.environ['CRON_MANAGER_CONFIG']).expanduser()
        else:
            self.config_path = self.DEFAULT_CONFIG_PATH

        self.db_path: str = str(DEFAULT_HOME / "cron_manager.db")
        self.timezone: str = DEFAULT_TIMEZONE
        self.max_workers: int = 5
        self.notification_workers: int = 4
        self.max_output_bytes: int = 64 * 1024
        self.log_output_chars: int = 1000
        self.misfire_grace_seconds: int = 30
        self.webhook = WebhookConfig()
        self.smtp = SmtpConfig()
        self.logging = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        if load_env:
            self.apply_env()

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            for key in ('db_path', 'timezone', 'max_workers', 'notification_workers',
                        'max_output_bytes', 'log_output_chars', 'misfire_grace_seconds'):
                if key in data:
                    setattr(self, key, data[key])

            if 'webhook' in data:
                self.webhook = WebhookConfig(**data['webhook'])
            if 'smtp' in data:
                self.smtp = SmtpConfig(**data['smtp'])
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def apply_env(self, environ: Optional[Dict[str, str]] = None):
        """Override settings from environment variables."""
        env = os.environ if environ is None else environ

        if env.get('CRON_MANAGER_DB'):
            self.db_path = env['CRON_MANAGER_DB']
        if env.get('CRON_TIMEZONE'):
            self.timezone = env['CRON_TIMEZONE']
        if env.get('CRON_MANAGER_WORKERS'):
            self.max_workers = int(env['CRON_MANAGER_WORKERS'])

        if env.get('WEBHOOK_URL'):
            self.webhook.url = env['WEBHOOK_URL']

        if env.get('SMTP_HOST'):
            self.smtp.host = env['SMTP_HOST']
        if env.get('SMTP_PORT'):
            self.smtp.port = int(env['SMTP_PORT'])
        if env.get('SMTP_USER'):
            self.smtp.user = env['SMTP_USER']
        if env.get('SMTP_PASSWORD'):
            self.smtp.password = env['SMTP_PASSWORD']
        if env.get('FROM_EMAIL'):
            self.smtp.from_email = env['FROM_EMAIL']
        if env.get('TO_EMAILS'):
            self.smtp.to_emails = [e.strip() for e in env['TO_EMAILS'].split(',') if e.strip()]

        if env.get('CRON_MANAGER_LOG_LEVEL'):
            self.logging.level = env['CRON_MANAGER_LOG_LEVEL']

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'db_path': self.db_path,
            'timezone': self.timezone,
            'max_workers': self.max_workers,
            'notification_workers': self.notification_workers,
            'max_output_bytes': self.max_output_bytes,
            'log_output_chars': self.log_output_chars,
            'misfire_grace_seconds': self.misfire_grace_seconds,
            'webhook': asdict(self.webhook),
            'smtp': asdict(self.smtp),
            'logging': asdict(self.logging),
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Unknown timezone: '{self.timezone}'")

        for key in ('max_workers', 'notification_workers', 'max_output_bytes', 'log_output_chars'):
            if getattr(self, key) <= 0:
                errors.append(f"'{key}' must be positive")
        if self.misfire_grace_seconds < 0:
            errors.append("'misfire_grace_seconds' cannot be negative")
        if self.webhook.url and not self.webhook.url.startswith(('http://', 'https://')):
            errors.append(f"Webhook URL must be http(s): '{self.webhook.url}'")
        if self.smtp.port <= 0:
            errors.append("SMTP port must be positive")

        return errors

    def __repr__(self):
        return f"ManagerConfig(db_path={self.db_path}, timezone={self.timezone}, path={self.config_path})"
