"""Caller-facing operations against the live application.

Every action goes through the SecurityManager before anything reaches the
target:
- ``eval`` is validated as arbitrary code and runs in the sandbox first; only
  a successful sandbox run is forwarded to the page
- Other verbs are translated to an expression, validated and risk-gated as an
  interaction, and the sanitized expression is dispatched
- Window info is gated as its own operation type

When an AccessControl is supplied, the caller's session is checked for the
verb's permission and rate limit before the manager sees the request.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from electron_pilot.logging import Loggers
from electron_pilot.security.access_control import AccessControl
from electron_pilot.security.errors import CommandArgumentError, TargetError
from electron_pilot.security.manager import SecurityManager
from electron_pilot.security.models import (
    ExecutionContext,
    OperationType,
    Permission,
    SecureExecutionResult,
)
from electron_pilot.security.validator import strip_control_chars
from electron_pilot.target.commands import EVAL_COMMAND, build_expression, get_eval_code
from electron_pilot.target.connection import (
    NO_TARGET_MESSAGE,
    EvaluationResult,
    TargetConnection,
    select_target,
)

logger = Loggers.target()

WINDOW_INFO_COMMAND = "get_window_info"


@dataclass
class CommandOutcome:
    """Result of one controller operation.

    security is None when the request never reached the manager (bad
    arguments or an access-control denial).
    """

    security: SecureExecutionResult | None
    target_result: Any = None
    message: str = ""

    @property
    def success(self) -> bool:
        if self.security is None or not self.security.success:
            return False
        if isinstance(self.target_result, EvaluationResult):
            return self.target_result.success
        return True

    def to_dict(self) -> dict[str, Any]:
        target = self.target_result
        if isinstance(target, EvaluationResult):
            target = {"success": target.success, "value": target.value, "error": target.error}
        return {
            "success": self.success,
            "message": self.message,
            "security": self.security.to_dict() if self.security else None,
            "target_result": target,
        }


def format_evaluation(command: str, evaluation: EvaluationResult) -> str:
    """Human-readable message for a page evaluation."""
    if not evaluation.success:
        return f"Command failed: {evaluation.error}"

    value = evaluation.value
    if command == EVAL_COMMAND and isinstance(value, dict) and "success" in value:
        if not value["success"]:
            return f"Command failed: {value.get('error')}"
        if value.get("result") is None:
            return "Command successful"
        return f"Command successful: {json.dumps(value['result'], default=str)}"

    if value is None or value == "":
        shown = "empty" if value == "" else evaluation.type
        return (
            f"Command executed but returned {shown} - "
            "the element may not exist or the action failed"
        )
    if isinstance(value, str):
        return f"Result: {value}"
    return f"Result: {json.dumps(value, indent=2, default=str)}"


def _denied_message(result: SecureExecutionResult) -> str:
    if result.blocked:
        return f"Command blocked: {result.error}"
    return f"Command failed: {result.error}"


class ElectronController:
    """Routes caller commands through the security manager to the target."""

    def __init__(
        self,
        manager: SecurityManager,
        connection: TargetConnection,
        access_control: AccessControl | None = None,
    ):
        self.manager = manager
        self.connection = connection
        self.access_control = access_control

    async def _authorize(self, session_id: str | None, permission: Permission) -> str | None:
        if self.access_control is None:
            return None
        return await self.access_control.authorize(session_id, permission)

    async def send_command(
        self,
        command: str,
        args: Any = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> CommandOutcome:
        """Run a verb against the live application.

        Args:
            command: Verb name, e.g. "click_by_text" or "eval".
            args: Verb arguments.
            source_ip: Caller address (audit metadata only).
            user_agent: Caller user agent (audit metadata only).
            session_id: Caller session, required when access control is enabled.
        """
        verb = command.strip().lower() if isinstance(command, str) else ""
        denial = await self._authorize(session_id, Permission.EXECUTE_CODE)
        if denial:
            return CommandOutcome(security=None, message=f"Access denied: {denial}")

        user_id = self._user_id(session_id)
        try:
            if verb == EVAL_COMMAND:
                code = get_eval_code(args)
                context = ExecutionContext(
                    command=code,
                    operation_type=OperationType.COMMAND,
                    source_ip=source_ip,
                    user_agent=user_agent,
                    caller_session_id=session_id,
                    user_id=user_id,
                )
            else:
                context = ExecutionContext(
                    command=build_expression(verb, args),
                    operation_type=OperationType.INTERACTION,
                    args=args,
                    source_ip=source_ip,
                    user_agent=user_agent,
                    caller_session_id=session_id,
                    user_id=user_id,
                )
        except CommandArgumentError as e:
            logger.info("command_rejected", command=verb, reason=str(e))
            return CommandOutcome(security=None, message=f"Error: {e}")

        result = await self.manager.execute_securely(context)
        if not result.success:
            return CommandOutcome(security=result, message=_denied_message(result))

        if verb == EVAL_COMMAND:
            expression = build_expression(EVAL_COMMAND, strip_control_chars(code).strip())
        else:
            expression = result.result

        try:
            evaluation = await self.connection.evaluate(expression)
        except TargetError as e:
            logger.warning("target_dispatch_failed", command=verb, error=str(e))
            return CommandOutcome(security=result, message=f"Failed to send command: {e}")

        return CommandOutcome(
            security=result,
            target_result=evaluation,
            message=format_evaluation(verb, evaluation),
        )

    async def get_window_info(
        self,
        source_ip: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> CommandOutcome:
        """List the debuggable windows of the running application."""
        denial = await self._authorize(session_id, Permission.WINDOW_MANAGEMENT)
        if denial:
            return CommandOutcome(security=None, message=f"Access denied: {denial}")

        result = await self.manager.execute_securely(
            ExecutionContext(
                command=WINDOW_INFO_COMMAND,
                operation_type=OperationType.WINDOW_INFO,
                source_ip=source_ip,
                user_agent=user_agent,
                caller_session_id=session_id,
                user_id=self._user_id(session_id),
            )
        )
        if not result.success:
            return CommandOutcome(security=result, message=_denied_message(result))

        try:
            targets = await self.connection.list_targets()
        except TargetError as e:
            return CommandOutcome(security=result, message=f"Failed to get window info: {e}")

        if not targets:
            return CommandOutcome(
                security=result,
                target_result={"windows": [], "main": None},
                message=NO_TARGET_MESSAGE,
            )

        main = select_target(targets)
        info = {
            "windows": [t.to_dict() for t in targets],
            "main": main.to_dict() if main else None,
        }
        return CommandOutcome(
            security=result,
            target_result=info,
            message=f"Found {len(targets)} target(s)",
        )

    def _user_id(self, session_id: str | None) -> str | None:
        if self.access_control is None or not session_id:
            return None
        user = self.access_control.get_user_by_session(session_id)
        return user.id if user else None
