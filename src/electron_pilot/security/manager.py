"""Security manager: the single entry point for mediated execution.

Pipeline, strictly ordered and short-circuiting:
1. Validate input (blocked if invalid)
2. Risk gate: critical always blocks, anything above the threshold blocks
3. Execute: sandbox for COMMAND operations when enabled, else pass through
4. Stamp a fresh correlation id and elapsed time
5. Queue exactly one audit entry

Validation, policy, and execution outcomes are returned as data; nothing in
this pipeline raises to the caller.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import fields
from typing import TYPE_CHECKING, Any

from electron_pilot.constants import LOG_COMMAND_PREVIEW_LENGTH, truncate
from electron_pilot.logging import Loggers, execution_context
from electron_pilot.security.audit import AuditConfig, AuditLogger
from electron_pilot.security.dry_run import DryRunAnalyzer, DryRunResult
from electron_pilot.security.models import (
    ExecutionContext,
    OperationType,
    RiskLevel,
    SandboxResult,
    SecureExecutionResult,
)
from electron_pilot.security.profiles import SecurityConfig, SecurityProfile, resolve_security_profile
from electron_pilot.security.sandbox import CodeSandbox
from electron_pilot.security.validator import InputValidator

if TYPE_CHECKING:
    from electron_pilot.config import PilotSettings

logger = Loggers.security()


class SecurityManager:
    """Validates, gates, executes, and audits caller requests.

    All collaborators are injected; nothing is read from module-level state,
    so independent managers can coexist (for example in tests).
    """

    def __init__(
        self,
        config: SecurityConfig | None = None,
        validator: InputValidator | None = None,
        sandbox: CodeSandbox | None = None,
        audit: AuditLogger | None = None,
        dry_run: DryRunAnalyzer | None = None,
    ):
        """Initialize the manager.

        Args:
            config: Mutable security configuration.
            validator: Input validator.
            sandbox: Code sandbox for COMMAND operations.
            audit: Audit sink.
            dry_run: Dry-run analyzer used by analyze().
        """
        self._config = config or SecurityConfig()
        self.validator = validator or InputValidator()
        self.sandbox = sandbox or CodeSandbox(timeout_ms=self._config.sandbox_timeout_ms)
        self.audit = audit or AuditLogger(AuditConfig(enabled=self._config.enable_audit_log))
        self.dry_run = dry_run or DryRunAnalyzer(self.validator)
        self._pending_audit: set[asyncio.Task] = set()

        logger.info(
            "security_manager_initialized",
            risk_threshold=self._config.default_risk_threshold.value,
            sandbox=self._config.enable_sandbox,
            audit=self._config.enable_audit_log,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "PilotSettings",
        profile: SecurityProfile | None = None,
        validator: InputValidator | None = None,
    ) -> "SecurityManager":
        """Build a manager and its collaborators from settings."""
        profile = profile or resolve_security_profile(settings)
        config = SecurityConfig.from_profile(profile, settings)
        secret = settings.screenshot_encryption_key
        sandbox = CodeSandbox(
            timeout_ms=settings.sandbox_timeout_ms,
            max_memory_mb=settings.sandbox_max_memory_mb,
            runtime=settings.sandbox_runtime,
            scratch_root=settings.sandbox_scratch_dir,
            redact=[secret.get_secret_value()] if secret is not None else [],
        )
        audit = AuditLogger(
            AuditConfig(
                enabled=settings.audit_enabled,
                log_dir=settings.audit_dir,
                retention_days=settings.audit_retention_days,
            )
        )
        return cls(config=config, validator=validator, sandbox=sandbox, audit=audit)

    @property
    def config(self) -> SecurityConfig:
        """A copy of the current configuration."""
        return self._config.copy()

    def update_config(self, **changes: Any) -> SecurityConfig:
        """Apply configuration changes.

        Changes take effect for calls that reach the gate after this returns;
        in-flight calls may observe either value.

        Raises:
            ValueError: If a field name is unknown.
        """
        known = {f.name for f in fields(SecurityConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown security config fields: {', '.join(sorted(unknown))}")

        if isinstance(changes.get("default_risk_threshold"), str):
            changes["default_risk_threshold"] = RiskLevel(changes["default_risk_threshold"])

        for name, value in changes.items():
            setattr(self._config, name, value)
        if "sandbox_timeout_ms" in changes:
            self.sandbox.timeout_ms = self._config.sandbox_timeout_ms

        logger.info(
            "security_config_updated",
            changes={k: getattr(v, "value", v) for k, v in changes.items()},
        )
        return self.config

    def analyze(self, command: str, args: Any = None) -> DryRunResult:
        """Dry-run a command without executing it."""
        return self.dry_run.analyze_command(command, args)

    async def execute_securely(self, context: ExecutionContext) -> SecureExecutionResult:
        """Run one request through validation, gating, execution, and audit."""
        session_id = str(uuid.uuid4())
        start = time.monotonic()
        with execution_context(execution_id=session_id):
            logger.info(
                "secure_execution_started",
                operation=context.operation_type.value,
                command=truncate(str(context.command), LOG_COMMAND_PREVIEW_LENGTH),
            )
            try:
                result = await self._execute(context, session_id, start)
            except Exception as e:
                logger.exception("secure_execution_error")
                result = SecureExecutionResult(
                    success=False,
                    execution_time_ms=self._elapsed(start),
                    risk_level=RiskLevel.HIGH,
                    blocked=False,
                    session_id=session_id,
                    error=f"Security execution error: {type(e).__name__}",
                )
            self._queue_audit(context, result)
            logger.info(
                "secure_execution_finished",
                success=result.success,
                blocked=result.blocked,
                risk_level=result.risk_level.value,
                execution_time_ms=result.execution_time_ms,
            )
            return result

    async def _execute(
        self, context: ExecutionContext, session_id: str, start: float
    ) -> SecureExecutionResult:
        config = self._config

        validation = self.validator.validate_command(context.command, context.args)
        if not validation.is_valid:
            return self._blocked(
                session_id,
                start,
                f"Input validation failed: {', '.join(validation.errors)}",
                validation.risk_level,
            )

        risk = validation.risk_level
        threshold = config.default_risk_threshold
        if risk == RiskLevel.CRITICAL:
            return self._blocked(session_id, start, f"Risk level too high: {risk.value}", risk)
        if risk > threshold:
            return self._blocked(
                session_id,
                start,
                f"Risk level too high: {risk.value} exceeds threshold {threshold.value}",
                risk,
            )

        command = validation.sanitized_input.command
        is_code = context.operation_type == OperationType.COMMAND
        if is_code and config.enable_input_validation and config.profile is not None:
            violation = config.profile.policy_violation(command, validation.matched_rules)
            if violation:
                return self._blocked(
                    session_id,
                    start,
                    f"Blocked by {config.profile.level.value} security profile: {violation}",
                    risk,
                )

        if is_code and config.enable_sandbox:
            outcome = await self._run_sandboxed(command, config.max_execution_time_ms)
        else:
            outcome = SandboxResult(success=True, execution_time_ms=0, result=command)

        return SecureExecutionResult(
            success=outcome.success,
            execution_time_ms=self._elapsed(start),
            risk_level=risk,
            blocked=False,
            session_id=session_id,
            result=outcome.result,
            error=outcome.error,
        )

    async def _run_sandboxed(self, command: str, max_execution_time_ms: int) -> SandboxResult:
        start = time.monotonic()
        try:
            return await asyncio.wait_for(
                self.sandbox.execute_code(command), timeout=max_execution_time_ms / 1000
            )
        except asyncio.TimeoutError:
            return SandboxResult(
                success=False,
                execution_time_ms=self._elapsed(start),
                error="Execution exceeded the maximum execution time",
                resource_limit_hit="timeout",
            )
        except Exception as e:
            logger.exception("sandbox_execution_error")
            return SandboxResult(
                success=False,
                execution_time_ms=self._elapsed(start),
                error=f"Sandbox execution failed: {type(e).__name__}",
            )

    def _blocked(
        self, session_id: str, start: float, reason: str, risk_level: RiskLevel
    ) -> SecureExecutionResult:
        logger.warning("secure_execution_blocked", risk_level=risk_level.value, reason=reason)
        return SecureExecutionResult(
            success=False,
            execution_time_ms=self._elapsed(start),
            risk_level=risk_level,
            blocked=True,
            session_id=session_id,
            error=reason,
        )

    def _queue_audit(self, context: ExecutionContext, result: SecureExecutionResult) -> None:
        if not self._config.enable_audit_log:
            return

        command = context.command if isinstance(context.command, str) else repr(context.command)
        task = asyncio.create_task(
            asyncio.to_thread(
                self.audit.log_event,
                session_id=result.session_id,
                action=context.operation_type.value,
                command=command,
                risk_level=result.risk_level,
                success=result.success,
                blocked=result.blocked,
                error=result.error,
                execution_time_ms=result.execution_time_ms,
                source_ip=context.source_ip,
                user_agent=context.user_agent,
                user_id=context.user_id,
                caller_session_id=context.caller_session_id,
            )
        )
        self._pending_audit.add(task)
        task.add_done_callback(self._audit_done)

    def _audit_done(self, task: asyncio.Task) -> None:
        self._pending_audit.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("audit_write_failed", error=str(task.exception()))

    async def flush_audit(self) -> None:
        """Wait for queued audit writes to finish."""
        while self._pending_audit:
            await asyncio.gather(*list(self._pending_audit), return_exceptions=True)

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
