"""
Rollcall Configuration
======================

One immutable RollcallConfig per process: paths, argon2 costs, session
backend, recovery code range, Turnstile and SMTP credentials, branding
and logging.

The configuration is built once at startup and handed to each component's
constructor. No component reads the process environment directly.

Rules:
- Sections are frozen dataclasses validated on construction
- ROLLCALL_SECTION__KEY variables override plain settings
- Secrets come only from their own named variables
"""

from __future__ import annotations

import dataclasses
import hashlib
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, Mapping, Optional

from rollcall.core.errors import ConfigurationError
from rollcall.security import constants


# Never accepted through ROLLCALL_SECTION__KEY
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token", "api_key",
    "private", "credential", "auth", "salt", "dsn", "url",
})

# Secrets are never taken from the generic override parser
_SECRET_VARIABLES: Final[Mapping[str, str]] = {
    "turnstile.secret": "TURNSTILE_SECRET",
    "turnstile.site_key": "TURNSTILE_SITE_KEY",
    "turnstile.verify_url": "TURNSTILE_VERIFY_URL",
    "mail.password": "MAIL_PASSWORD",
    "session.database_url": "DATABASE_URL",
}

_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


def _is_sensitive_key(key: str) -> bool:
    """True for keys the generic override parser must ignore."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _default_dir(kind: str) -> Path:
    """Per-platform home for the people database ("data") or logs ("logs")."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local")) / "Rollcall"
        return base / "Logs" if kind == "logs" else base
    if system == "darwin":
        if kind == "logs":
            return Path.home() / "Library" / "Logs" / "Rollcall"
        return Path.home() / "Library" / "Application Support" / "Rollcall"

    # Linux and others
    if kind == "logs":
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / "Rollcall" / "logs"
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / "Rollcall"


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Database and log locations. Both directories must be absolute."""

    data_dir: Path = field(default_factory=lambda: _default_dir("data"))
    log_dir: Path = field(default_factory=lambda: _default_dir("logs"))
    database_name: str = "rollcall.sqlite3"
    audit_log_name: str = "audit.log"

    def __post_init__(self) -> None:
        for field_name in ["data_dir", "log_dir"]:
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ConfigurationError(f"{field_name} must be an absolute path: {path}")

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name

    @property
    def audit_log_path(self) -> Path:
        return self.log_dir / self.audit_log_name


@dataclass(frozen=True, slots=True)
class HashingConfig:
    """Argon2id cost parameters. Fixed for the lifetime of the process."""

    time_cost: int = constants.ARGON2_TIME_COST
    memory_cost: int = constants.ARGON2_MEMORY_COST  # KiB
    parallelism: int = constants.ARGON2_PARALLELISM
    hash_length: int = constants.ARGON2_HASH_LENGTH
    salt_length: int = constants.ARGON2_SALT_LENGTH
    workers: int = constants.HASHING_WORKERS

    def __post_init__(self) -> None:
        if self.time_cost < 1:
            raise ConfigurationError("time_cost must be at least 1")
        if self.parallelism < 1:
            raise ConfigurationError("parallelism must be at least 1")
        # argon2 requires at least 8 KiB per lane
        if self.memory_cost < 8 * self.parallelism:
            raise ConfigurationError("memory_cost must be at least 8 KiB per lane")
        if self.hash_length < 16:
            raise ConfigurationError("hash_length must be at least 16 bytes")
        if self.salt_length < 8:
            raise ConfigurationError("salt_length must be at least 8 bytes")
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Server-side session settings."""

    backend: str = "sqlite"  # sqlite, memory or postgres
    timeout_seconds: int = constants.SESSION_TIMEOUT_SECONDS
    cookie_name: str = constants.SESSION_COOKIE_NAME
    database_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.backend not in {"sqlite", "memory", "postgres"}:
            raise ConfigurationError(f"Unknown session backend: {self.backend}")
        if self.backend == "postgres" and not self.database_url:
            raise ConfigurationError("The postgres session backend needs a database URL")
        if self.timeout_seconds < 60:
            raise ConfigurationError("Session timeout must be at least 60 seconds")


@dataclass(frozen=True, slots=True)
class RecoveryConfig:
    """Recovery code range and issuance limits."""

    code_min: int = constants.RECOVERY_CODE_MIN
    code_max: int = constants.RECOVERY_CODE_MAX
    max_attempts: int = constants.RECOVERY_MAX_ATTEMPTS
    bulk_interval_seconds: float = constants.BULK_RESET_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.code_min < 0 or self.code_max <= self.code_min:
            raise ConfigurationError("Recovery code range must be non-negative and non-empty")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.bulk_interval_seconds < 0:
            raise ConfigurationError("bulk_interval_seconds cannot be negative")


@dataclass(frozen=True, slots=True)
class TurnstileConfig:
    """Bot-verification service settings."""

    site_key: str = ""
    secret: str = field(default="", repr=False)
    verify_url: str = constants.TURNSTILE_VERIFY_URL
    timeout_seconds: float = constants.TURNSTILE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.verify_url.startswith("https://"):
            raise ConfigurationError("Turnstile verify_url must use HTTPS")


@dataclass(frozen=True, slots=True)
class MailConfig:
    """SMTP transport used for recovery messages."""

    smtp_host: str = ""
    smtp_port: int = 465
    username: str = ""
    password: str = field(default="", repr=False)
    username_domain: str = "example.org"
    use_ssl: bool = True
    timeout_seconds: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_host)


@dataclass(frozen=True, slots=True)
class BrandConfig:
    """Names and links that appear in outgoing messages and pages."""

    instance_name: str = "House Events Manager"
    domain: str = "http://localhost:8080"


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Handlers installed by configure_root_logger."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = False
    enable_json: bool = False

    def __post_init__(self) -> None:
        """Validate logging settings."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ConfigurationError(f"Invalid log level: {self.level}")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Process switches. ``production`` enables Turnstile checks and Secure cookies."""

    app_name: str = "Rollcall"
    production: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


_SECTIONS: Final[Mapping[str, type]] = {
    "paths": PathConfig,
    "hashing": HashingConfig,
    "session": SessionConfig,
    "recovery": RecoveryConfig,
    "turnstile": TurnstileConfig,
    "mail": MailConfig,
    "brand": BrandConfig,
    "logging": LoggingConfig,
    "app": AppConfig,
}


def _coerce(value: str, default: Any) -> Any:
    """Convert an environment string to the type of a field's default."""
    if isinstance(default, bool):
        return value.strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, Path):
        return Path(value)
    return value


def _build_section(section_cls: type, overrides: Mapping[str, str]) -> Any:
    """Build one section dataclass from its defaults plus string overrides."""
    instance = section_cls()
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(section_cls):
        if f.name in overrides:
            try:
                kwargs[f.name] = _coerce(overrides[f.name], getattr(instance, f.name))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {f.name}: {e}") from e
    return dataclasses.replace(instance, **kwargs) if kwargs else instance


class RollcallConfig:
    """
    Centralized, immutable configuration with environment override support.

    Usage:
        config = RollcallConfig.load()
        store = CredentialStore(config.paths.database_path, hasher)
        gate = TurnstileGate(config.turnstile, production=config.app.production)

    Environment variables are prefixed with ROLLCALL_ and use double
    underscores for nested values:
        ROLLCALL_LOGGING__LEVEL=DEBUG
        ROLLCALL_RECOVERY__CODE_MAX=9999
        ROLLCALL_APP__PRODUCTION=true

    Secrets are read only from their dedicated variables:
        ROLLCALL_TURNSTILE_SECRET, ROLLCALL_TURNSTILE_SITE_KEY,
        ROLLCALL_MAIL_PASSWORD, ROLLCALL_DATABASE_URL
    """

    __slots__ = (
        "_paths", "_hashing", "_session", "_recovery", "_turnstile",
        "_mail", "_brand", "_logging", "_app", "_frozen", "_config_hash",
    )

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        hashing: Optional[HashingConfig] = None,
        session: Optional[SessionConfig] = None,
        recovery: Optional[RecoveryConfig] = None,
        turnstile: Optional[TurnstileConfig] = None,
        mail: Optional[MailConfig] = None,
        brand: Optional[BrandConfig] = None,
        logging: Optional[LoggingConfig] = None,
        app: Optional[AppConfig] = None,
    ) -> None:
        """Initialize configuration. Use RollcallConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_hashing", hashing or HashingConfig())
        object.__setattr__(self, "_session", session or SessionConfig())
        object.__setattr__(self, "_recovery", recovery or RecoveryConfig())
        object.__setattr__(self, "_turnstile", turnstile or TurnstileConfig())
        object.__setattr__(self, "_mail", mail or MailConfig())
        object.__setattr__(self, "_brand", brand or BrandConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_app", app or AppConfig())
        self._validate()
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _validate(self) -> None:
        """Cross-section rules that a single section cannot check."""
        if self._app.production and not self._turnstile.secret:
            raise ConfigurationError("Production mode requires a Turnstile secret")

    def _compute_hash(self) -> str:
        """Short digest recorded in the STARTUP audit entry."""
        config_str = "|".join(
            repr(getattr(self, f"_{name}")) for name in _SECTIONS
        )
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def hashing(self) -> HashingConfig:
        return self._hashing

    @property
    def session(self) -> SessionConfig:
        return self._session

    @property
    def recovery(self) -> RecoveryConfig:
        return self._recovery

    @property
    def turnstile(self) -> TurnstileConfig:
        return self._turnstile

    @property
    def mail(self) -> MailConfig:
        return self._mail

    @property
    def brand(self) -> BrandConfig:
        return self._brand

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def app(self) -> AppConfig:
        return self._app

    @property
    def config_hash(self) -> str:
        """Get configuration integrity hash."""
        return self._config_hash

    @classmethod
    def load(
        cls,
        env_prefix: str = "ROLLCALL",
        environ: Optional[Mapping[str, str]] = None,
    ) -> RollcallConfig:
        """
        Load configuration with environment variable overrides.

        Args:
            env_prefix: Prefix for environment variables (default: ROLLCALL)
            environ: Mapping to read instead of os.environ

        Returns:
            Configured RollcallConfig instance

        Raises:
            ConfigurationError: If a value cannot be parsed or validated
        """
        env = os.environ if environ is None else environ
        overrides = cls._parse_env_overrides(env_prefix, env)

        prefix_upper = f"{env_prefix.upper()}_"
        for dotted, suffix in _SECRET_VARIABLES.items():
            value = env.get(prefix_upper + suffix)
            if value:
                overrides[dotted] = value

        sections: dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            scoped = {
                key.split(".", 1)[1]: value
                for key, value in overrides.items()
                if key.startswith(f"{name}.")
            }
            sections[name] = _build_section(section_cls, scoped)

        return cls(**sections)

    @staticmethod
    def _parse_env_overrides(prefix: str, environ: Mapping[str, str]) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in environ.items():
            if key.startswith(prefix_upper) and "__" in key:
                # Convert ROLLCALL_SECTION__KEY to section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                # SECURITY: Skip sensitive keys from the generic parser
                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    def ensure_directories(self) -> None:
        """Create data and log directories with owner-only permissions."""
        import stat

        for directory in (self._paths.data_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)

            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)  # 700 - owner only

    def __repr__(self) -> str:
        """Safe string representation without sensitive data."""
        return f"RollcallConfig(hash={self._config_hash}, app={self._app.app_name})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("RollcallConfig is immutable after initialization")
        super().__setattr__(name, value)
