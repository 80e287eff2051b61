"""
Configuration Management Module
Handles loading and validation of environment variables and settings

The service itself never reads the environment: the loader below resolves
everything once into a ServiceConfig, and that value is handed to
EmailService at construction time.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .validators import check_default_credentials

REQUIRED_SETTINGS = [
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_SECURE",
    "EMAIL_USER",
    "EMAIL_PASS",
    "IMAP_HOST",
    "IMAP_PORT",
    "IMAP_TLS",
]

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


@dataclass
class SMTPConfig:
    """Outbound transport settings"""
    host: str
    port: int
    secure: bool
    user: str
    password: str
    reject_unauthorized: bool = True
    timeout: float = 30.0  # seconds


@dataclass
class IMAPConfig:
    """Mailbox settings"""
    host: str
    port: int
    tls: bool
    user: str
    password: str
    mark_seen: bool = False
    reject_unauthorized: bool = True
    conn_timeout: float = 15.0  # seconds
    auth_timeout: float = 10.0  # seconds
    mailbox: str = "INBOX"
    drafts_folder: str = "Drafts"
    sent_folder: str = "Sent"


@dataclass
class SystemConfig:
    """Limits, statistics window and logging"""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"
    stats_window: int = 200
    stats_top_senders: int = 10
    max_attachment_bytes: int = 25 * 1024 * 1024
    max_body_size: int = 1024 * 1024


@dataclass
class ServiceConfig:
    """Fully resolved configuration handed to EmailService"""
    smtp: SMTPConfig
    imap: IMAPConfig
    system: SystemConfig = field(default_factory=SystemConfig)

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        problems: List[str] = []

        for label, section in (("SMTP", self.smtp), ("IMAP", self.imap)):
            if not section.host:
                problems.append(f"{label} host is empty")
            if not isinstance(section.port, int) or not 0 < section.port < 65536:
                problems.append(f"{label} port must be between 1 and 65535, got {section.port}")
            if not section.user or not section.password:
                problems.append(f"Missing {label} credentials")

        if self.smtp.timeout <= 0:
            problems.append("SMTP timeout must be positive")
        if self.imap.conn_timeout <= 0 or self.imap.auth_timeout <= 0:
            problems.append("IMAP timeouts must be positive")
        if not self.imap.mailbox:
            problems.append("IMAP mailbox name is empty")

        if self.system.stats_window < 1 or self.system.stats_top_senders < 1:
            problems.append("Statistics window and top-sender count must be >= 1")
        if self.system.max_attachment_bytes < 1 or self.system.max_body_size < 1:
            problems.append("Size limits must be >= 1")
        if self.system.log_format not in ("text", "json"):
            problems.append(f"LOG_FORMAT must be 'text' or 'json', got {self.system.log_format!r}")

        problems.extend(check_default_credentials(self))

        if problems:
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(problems),
                details={"problems": problems},
            )
        return True


class Config:
    """Loads a ServiceConfig from the environment / a .env file"""

    def __init__(self, env_file: Optional[str] = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env). Values already
                present in the process environment take precedence.

        Raises:
            ConfigurationError: If a required setting is missing or unparsable
        """
        if env_file:
            load_dotenv(env_file)

        missing = [key for key in REQUIRED_SETTINGS if not os.getenv(key, "").strip()]
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}",
                "MISSING_CONFIG",
                {"missing": missing},
            )

        self.smtp = self._load_smtp_config()
        self.imap = self._load_imap_config()
        self.system = self._load_system_config()

    def _load_smtp_config(self) -> SMTPConfig:
        """Load SMTP configuration"""
        return SMTPConfig(
            host=os.getenv("SMTP_HOST", "").strip(),
            port=self._get_int("SMTP_PORT"),
            secure=self._get_bool("SMTP_SECURE"),
            user=os.getenv("EMAIL_USER", "").strip(),
            password=os.getenv("EMAIL_PASS", ""),
            reject_unauthorized=self._get_bool("SMTP_REJECT_UNAUTHORIZED", True),
            timeout=self._get_millis("SMTP_TIMEOUT", 30000),
        )

    def _load_imap_config(self) -> IMAPConfig:
        """Load IMAP configuration"""
        return IMAPConfig(
            host=os.getenv("IMAP_HOST", "").strip(),
            port=self._get_int("IMAP_PORT"),
            tls=self._get_bool("IMAP_TLS"),
            user=os.getenv("EMAIL_USER", "").strip(),
            password=os.getenv("EMAIL_PASS", ""),
            mark_seen=self._get_bool("IMAP_MARK_SEEN", False),
            reject_unauthorized=self._get_bool("IMAP_REJECT_UNAUTHORIZED", True),
            conn_timeout=self._get_millis("IMAP_CONN_TIMEOUT", 15000),
            auth_timeout=self._get_millis("IMAP_AUTH_TIMEOUT", 10000),
            mailbox=os.getenv("IMAP_MAILBOX", "INBOX").strip() or "INBOX",
            drafts_folder=os.getenv("IMAP_DRAFTS_FOLDER", "Drafts").strip() or "Drafts",
            sent_folder=os.getenv("IMAP_SENT_FOLDER", "Sent").strip() or "Sent",
        )

    def _load_system_config(self) -> SystemConfig:
        """Load limits and logging configuration"""
        return SystemConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            log_format=os.getenv("LOG_FORMAT", "text").strip().lower(),
            stats_window=self._get_int("STATS_WINDOW", 200),
            stats_top_senders=self._get_int("STATS_TOP_SENDERS", 10),
            max_attachment_bytes=self._get_int("MAX_ATTACHMENT_BYTES", 25 * 1024 * 1024),
            max_body_size=self._get_int("MAX_BODY_SIZE", 1024 * 1024),
        )

    def to_service_config(self) -> ServiceConfig:
        """Bundle the loaded sections and validate them"""
        service_config = ServiceConfig(smtp=self.smtp, imap=self.imap, system=self.system)
        service_config.validate()
        return service_config

    @staticmethod
    def _get_bool(key: str, default: Optional[bool] = None) -> bool:
        """Convert environment variable to boolean"""
        raw = os.getenv(key)
        if raw is None or not raw.strip():
            if default is None:
                raise ConfigurationError(f"{key} is required", "MISSING_CONFIG")
            return default

        value = raw.strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{key} must be a boolean, got {raw!r}", "INVALID_CONFIG")

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        """Convert environment variable to int"""
        raw = os.getenv(key)
        if raw is None or not raw.strip():
            if default is None:
                raise ConfigurationError(f"{key} is required", "MISSING_CONFIG")
            return default
        try:
            return int(raw.strip())
        except ValueError as e:
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}", "INVALID_CONFIG") from e

    @classmethod
    def _get_millis(cls, key: str, default_ms: int) -> float:
        """Read a millisecond setting and return seconds"""
        return cls._get_int(key, default_ms) / 1000.0
