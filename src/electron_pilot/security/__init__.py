"""Security core with layered defense architecture.

Every caller action passes through the SecurityManager:
- Layer 1: Input Validation (denylist, markup injection, obfuscation, risk heuristics)
- Layer 2: Risk Gate (critical always blocks, threshold from the security profile)
- Layer 3: Code Sandbox (short-lived subprocess, shadowed globals, hard timeout)
- Layer 4: Audit Logging (one JSONL record per decision)

Alongside the pipeline:
- Access Control (sessions, permissions, sliding-window rate limits)
- Dry-Run Analysis (static preview, never executes)
- Screenshot Encryption (AES-256-GCM, per-envelope PBKDF2 key)

Usage:
    from electron_pilot.security import ExecutionContext, SecurityManager

    manager = SecurityManager.from_settings(settings)

    # Safe read - executes in the sandbox
    result = await manager.execute_securely(ExecutionContext(command="document.title"))

    # Denylisted keyword - blocked before execution
    result = await manager.execute_securely(ExecutionContext(command='eval("1")'))
    # result.blocked is True, result.risk_level is RiskLevel.CRITICAL
"""

from electron_pilot.security.access_control import (
    AccessControl,
    SlidingWindowRateLimiter,
    start_access_control,
)
from electron_pilot.security.audit import AuditConfig, AuditEntry, AuditLogger, MAX_QUERY_LIMIT
from electron_pilot.security.dry_run import (
    CommandType,
    DryRunAnalyzer,
    DryRunResult,
    ExecutionStep,
    render_report,
)
from electron_pilot.security.encryption import (
    EncryptedScreenshot,
    ScreenshotEncryptor,
    validate_output_path,
)
from electron_pilot.security.errors import (
    CommandArgumentError,
    ConfigurationError,
    EncryptionError,
    PathValidationError,
    SecurityError,
    TargetError,
)
from electron_pilot.security.manager import SecurityManager
from electron_pilot.security.models import (
    ExecutionContext,
    OperationType,
    Permission,
    RateLimit,
    RiskLevel,
    SandboxResult,
    SanitizedInput,
    SecureExecutionResult,
    Session,
    User,
    ValidationResult,
)
from electron_pilot.security.profiles import (
    SECURITY_PROFILES,
    SecurityConfig,
    SecurityLevel,
    SecurityProfile,
    resolve_security_profile,
    validate_startup,
)
from electron_pilot.security.sandbox import CodeSandbox
from electron_pilot.security.validator import (
    RULESET_VERSION,
    VALIDATION_RULES,
    InputValidator,
    ValidationRule,
    validate_command,
)

__all__ = [
    "AccessControl",
    "SlidingWindowRateLimiter",
    "start_access_control",
    "AuditConfig",
    "AuditEntry",
    "AuditLogger",
    "MAX_QUERY_LIMIT",
    "CommandType",
    "DryRunAnalyzer",
    "DryRunResult",
    "ExecutionStep",
    "render_report",
    "EncryptedScreenshot",
    "ScreenshotEncryptor",
    "validate_output_path",
    "CommandArgumentError",
    "ConfigurationError",
    "EncryptionError",
    "PathValidationError",
    "SecurityError",
    "TargetError",
    "SecurityManager",
    "ExecutionContext",
    "OperationType",
    "Permission",
    "RateLimit",
    "RiskLevel",
    "SandboxResult",
    "SanitizedInput",
    "SecureExecutionResult",
    "Session",
    "User",
    "ValidationResult",
    "SECURITY_PROFILES",
    "SecurityConfig",
    "SecurityLevel",
    "SecurityProfile",
    "resolve_security_profile",
    "validate_startup",
    "CodeSandbox",
    "RULESET_VERSION",
    "VALIDATION_RULES",
    "InputValidator",
    "ValidationRule",
    "validate_command",
]
