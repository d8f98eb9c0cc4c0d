"""Settings for electron-pilot.

Provides PilotSettings, loaded from the environment (PILOT_* prefix) and an
optional .env file, plus the accessors used by entry points.

Settings Management:
    1. Global singleton (simple cases):
        set_settings(my_settings)
        settings = get_settings()

    2. Context-based (isolated contexts, tests):
        with SettingsContext(my_settings):
            settings = get_settings()  # Returns my_settings

Security components never call get_settings() themselves. Entry points read the
settings once, resolve a SecurityProfile, and inject both into the components.

Settings Loading Priority (highest to lowest):
    1. Constructor arguments
    2. Environment variables (PILOT_* prefix)
    3. .env file
    4. Default values
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Generator, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from electron_pilot.security.errors import ConfigurationError

__all__ = [
    "PilotSettings",
    "SettingsContext",
    "get_settings",
    "set_settings",
    "set_context_settings",
    "get_context_settings",
    "reload_settings",
    "validate_settings",
    "PLACEHOLDER_SECRETS",
    "MIN_SECRET_LENGTH",
]

# Values that have shipped as examples or defaults and must never be accepted
PLACEHOLDER_SECRETS: frozenset[str] = frozenset(
    {
        "default-screenshot-key-change-me",
        "change-me",
        "changeme",
        "change_me",
        "secret",
        "password",
        "your-secret-key",
        "your-encryption-key-here",
    }
)

MIN_SECRET_LENGTH = 32


class PilotSettings(BaseSettings):
    """Runtime settings for the control plane.

    Attributes:
        security_level: Explicit security level selector. None means the
            default profile (strict).
        screenshot_encryption_key: Operator secret for screenshot envelopes.
        sandbox_timeout_ms: Hard wall-clock limit per sandboxed execution.
        sandbox_max_memory_mb: Heap ceiling handed to the sandbox runtime.
        sandbox_runtime: Interpreter command prefix; the harness path is appended.
        rate_limit_max_requests: Requests allowed per identity per window.
        rate_limit_window_ms: Sliding window length.
        admin_password: Password for the auto-provisioned admin user.
        audit_dir: Directory for JSONL audit files.
        audit_enabled: Whether audit entries are written.
        debugging_ports: Candidate remote-debugging ports of the target app.
    """

    model_config = SettingsConfigDict(
        env_prefix="PILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Security selection
    security_level: Literal["strict", "balanced", "permissive", "development"] | None = Field(
        default=None,
        title="Security Level",
        description="Security profile selector (strict when unset)",
    )
    screenshot_encryption_key: SecretStr | None = Field(
        default=None,
        title="Screenshot Encryption Key",
        description="Operator secret used to derive per-screenshot keys",
    )

    # Sandbox
    sandbox_timeout_ms: int = Field(default=5000, gt=0)
    sandbox_max_memory_mb: int = Field(default=50, gt=0)
    sandbox_runtime: list[str] = Field(default_factory=lambda: ["node"])
    max_execution_time_ms: int = Field(default=30000, gt=0)

    # Access control
    rate_limit_max_requests: int = Field(default=100, gt=0)
    rate_limit_window_ms: int = Field(default=60000, gt=0)
    admin_password: SecretStr | None = None

    # Audit
    audit_enabled: bool = True
    audit_dir: Path = Field(
        default_factory=lambda: Path.home() / ".electron-pilot" / "audit",
    )
    audit_retention_days: int = Field(default=30, gt=0)

    # Target
    debugging_ports: list[int] = Field(default_factory=lambda: [9222, 9223, 9224, 9225])
    debugging_host: str = "127.0.0.1"

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        title="Log Level",
        description="Logging verbosity level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        title="Log Format",
        description="Log output format (console for dev, json for production)",
    )

    @field_validator("audit_dir", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand ~ in paths."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("security_level", mode="before")
    @classmethod
    def normalize_level(cls, v: str | None) -> str | None:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @property
    def sandbox_scratch_dir(self) -> Path:
        """Parent directory for per-execution sandbox scratch directories."""
        return self.audit_dir.parent / "sandbox"


# Context variable for settings (takes precedence over global singleton)
_settings_context: ContextVar[PilotSettings | None] = ContextVar(
    "settings_context", default=None
)

_settings_instance: PilotSettings | None = None


def get_settings() -> PilotSettings:
    """Get the current settings instance.

    Resolution order: context variable, global singleton, fresh instance.
    """
    context_settings = _settings_context.get()
    if context_settings is not None:
        return context_settings

    global _settings_instance
    if _settings_instance is None:
        _settings_instance = PilotSettings()
    return _settings_instance


def set_settings(settings: PilotSettings) -> None:
    """Set the global settings instance."""
    global _settings_instance
    _settings_instance = settings


def set_context_settings(settings: PilotSettings | None) -> Token:
    """Set settings for the current context.

    Returns:
        Token that can be used to reset the context variable.
    """
    return _settings_context.set(settings)


def get_context_settings() -> PilotSettings | None:
    """Get settings from current context (if any)."""
    return _settings_context.get()


@contextmanager
def SettingsContext(settings: PilotSettings) -> Generator[PilotSettings, None, None]:
    """Context manager for isolated settings.

    Example:
        with SettingsContext(test_settings) as s:
            assert get_settings() is s
    """
    token = _settings_context.set(settings)
    try:
        yield settings
    finally:
        _settings_context.reset(token)


def reload_settings() -> PilotSettings:
    """Reload settings (clears global singleton and context cache)."""
    global _settings_instance
    _settings_instance = None
    _settings_context.set(None)
    return get_settings()


def validate_settings(settings: PilotSettings, *, require_encryption_key: bool = True) -> None:
    """Validate settings before the process accepts any request.

    A missing, placeholder, or short encryption secret is fatal. There is no
    fallback key.

    Args:
        settings: Settings to validate.
        require_encryption_key: False only when the resolved profile disables
            screenshot encryption.

    Raises:
        ConfigurationError: If validation fails.
    """
    errors = []

    if require_encryption_key:
        secret = (
            settings.screenshot_encryption_key.get_secret_value()
            if settings.screenshot_encryption_key is not None
            else ""
        )
        if not secret:
            errors.append(
                "PILOT_SCREENSHOT_ENCRYPTION_KEY is required. "
                "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(48))'"
            )
        elif secret.strip().lower() in PLACEHOLDER_SECRETS:
            errors.append("PILOT_SCREENSHOT_ENCRYPTION_KEY is set to a known placeholder value")
        elif len(secret) < MIN_SECRET_LENGTH:
            errors.append(
                f"PILOT_SCREENSHOT_ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters"
            )

    if settings.sandbox_runtime == []:
        errors.append("PILOT_SANDBOX_RUNTIME must name an interpreter")

    if errors:
        raise ConfigurationError("\n".join(errors))
