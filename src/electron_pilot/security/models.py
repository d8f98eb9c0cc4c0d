"""Data models for the security core.

Provides the risk scale, operation types, and the result records passed
between the validator, sandbox, manager, and their callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import Any, Iterable


@total_ordering
class RiskLevel(Enum):
    """Risk level for a command. Totally ordered: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def highest(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        """Highest level in levels (LOW for an empty iterable)."""
        return max(levels, default=cls.LOW)


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class OperationType(Enum):
    """Kind of caller operation routed through the security manager."""

    COMMAND = "command"  # Arbitrary code, sandboxed when enabled
    INTERACTION = "interaction"  # Pre-built interaction verb, never sandboxed
    SCREENSHOT = "screenshot"
    LOGS = "logs"
    WINDOW_INFO = "window_info"


class Permission(Enum):
    """Permissions a session can carry. ADMIN implies all others."""

    EXECUTE_CODE = "execute_code"
    TAKE_SCREENSHOT = "take_screenshot"
    READ_LOGS = "read_logs"
    WINDOW_MANAGEMENT = "window_management"
    FILE_SYSTEM = "file_system"
    NETWORK_ACCESS = "network_access"
    ADMIN = "admin"


@dataclass(frozen=True)
class SanitizedInput:
    """Sanitized copy of a command and its arguments."""

    command: str
    args: Any = None


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating one command.

    Attributes:
        is_valid: False when any blocking rule matched.
        sanitized_input: Sanitized copy of command and args.
        risk_level: Highest severity among matched rules.
        errors: Messages of blocking rules, in rule-table order.
        matched_rules: Names of every rule that matched.
    """

    is_valid: bool
    sanitized_input: SanitizedInput
    risk_level: RiskLevel
    errors: tuple[str, ...] = ()
    matched_rules: tuple[str, ...] = ()


@dataclass
class SandboxResult:
    """Result of one sandboxed execution. Never retried."""

    success: bool
    execution_time_ms: int
    result: Any = None
    error: str | None = None
    exit_code: int | None = None
    resource_limit_hit: str | None = None  # "timeout" or "memory"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "exit_code": self.exit_code,
            "resource_limit_hit": self.resource_limit_hit,
        }


@dataclass
class ExecutionContext:
    """One request to the security manager.

    source_ip and user_agent are audit metadata only and never take part in
    an authorization decision.
    """

    command: str
    operation_type: OperationType = OperationType.COMMAND
    args: Any = None
    source_ip: str | None = None
    user_agent: str | None = None
    caller_session_id: str | None = None
    user_id: str | None = None


@dataclass
class SecureExecutionResult:
    """Caller-visible result of execute_securely.

    blocked=True implies success=False and means nothing was executed.
    blocked=False with success=False means execution happened and failed.
    """

    success: bool
    execution_time_ms: int
    risk_level: RiskLevel
    blocked: bool
    session_id: str
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "risk_level": self.risk_level.value,
            "blocked": self.blocked,
            "session_id": self.session_id,
        }


@dataclass
class RateLimit:
    """Per-user rate limit: max_requests within window_ms."""

    max_requests: int = 100
    window_ms: int = 60000


@dataclass
class User:
    """A provisioned caller identity. Owned by AccessControl."""

    id: str
    username: str
    hashed_password: str
    password_salt: str
    permissions: frozenset[Permission]
    rate_limit: RateLimit = field(default_factory=RateLimit)
    created_at: float = 0.0
    last_login: float | None = None
    is_active: bool = True
    api_key: str | None = None


@dataclass
class Session:
    """An issued session. The permission set is a snapshot taken at mint time."""

    user_id: str
    session_id: str
    created_at: float
    last_activity: float
    permissions: frozenset[Permission]
    is_valid: bool = True
