"""Screenshot capture with encrypted persistence.

A capture is gated by the security manager like any other operation. The
image is returned to the caller as base64; when an output path is given, only
the envelope is written to disk (``<path>.encrypted``), never the raw image.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path

from electron_pilot.constants import format_size
from electron_pilot.logging import Loggers
from electron_pilot.security.access_control import AccessControl
from electron_pilot.security.encryption import (
    EncryptedScreenshot,
    ScreenshotEncryptor,
    plain_envelope,
    validate_output_path,
)
from electron_pilot.security.errors import PathValidationError, TargetError
from electron_pilot.security.manager import SecurityManager
from electron_pilot.security.models import (
    ExecutionContext,
    OperationType,
    Permission,
    SecureExecutionResult,
)
from electron_pilot.target.connection import TargetConnection

logger = Loggers.security()

SCREENSHOT_COMMAND = "screenshot"
ENCRYPTED_SUFFIX = ".encrypted"


@dataclass
class ScreenshotOutcome:
    """Result of one capture.

    image_base64 is set only on success. saved_path points at the envelope
    file when one was written.
    """

    success: bool
    message: str
    security: SecureExecutionResult | None = None
    image_base64: str | None = None
    saved_path: Path | None = None
    encrypted: bool = False


def envelope_path(output_path: Path) -> Path:
    return output_path.with_name(output_path.name + ENCRYPTED_SUFFIX)


class ScreenshotService:
    """Captures the target window and persists encrypted envelopes."""

    def __init__(
        self,
        manager: SecurityManager,
        connection: TargetConnection,
        encryptor: ScreenshotEncryptor | None = None,
        access_control: AccessControl | None = None,
    ):
        self.manager = manager
        self.connection = connection
        self.encryptor = encryptor
        self.access_control = access_control

    async def capture(
        self,
        output_path: str | Path | None = None,
        window_title: str | None = None,
        source_ip: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> ScreenshotOutcome:
        """Capture a screenshot.

        Args:
            output_path: Where to persist the envelope (``.encrypted`` is appended).
            window_title: Capture the window whose title contains this text.
            source_ip: Caller address (audit metadata only).
            user_agent: Caller user agent (audit metadata only).
            session_id: Caller session, required when access control is enabled.
        """
        if self.access_control is not None:
            denial = await self.access_control.authorize(session_id, Permission.TAKE_SCREENSHOT)
            if denial:
                return ScreenshotOutcome(success=False, message=f"Access denied: {denial}")

        target_path = None
        if output_path is not None:
            try:
                target_path = validate_output_path(output_path)
            except PathValidationError as e:
                logger.warning("screenshot_path_rejected", reason=str(e))
                return ScreenshotOutcome(success=False, message=f"Invalid output path: {e}")

        args = {"output_path": str(output_path) if output_path else None, "window_title": window_title}
        result = await self.manager.execute_securely(
            ExecutionContext(
                command=SCREENSHOT_COMMAND,
                operation_type=OperationType.SCREENSHOT,
                args={k: v for k, v in args.items() if v is not None},
                source_ip=source_ip,
                user_agent=user_agent,
                caller_session_id=session_id,
                user_id=self._user_id(session_id),
            )
        )
        if not result.success:
            return ScreenshotOutcome(success=False, message=f"Screenshot blocked: {result.error}", security=result)

        try:
            data = await self.connection.capture_screenshot(window_title)
        except TargetError as e:
            logger.warning("screenshot_capture_failed", error=str(e))
            return ScreenshotOutcome(success=False, message=f"Screenshot failed: {e}", security=result)

        envelope = self._seal(data)
        if envelope is None:
            return ScreenshotOutcome(
                success=False,
                message="Screenshot encryption is enabled but no encryption key is configured",
                security=result,
            )

        saved_path = None
        if target_path is not None:
            saved_path = envelope_path(target_path)
            try:
                await asyncio.to_thread(self._write_envelope, saved_path, envelope)
            except OSError as e:
                logger.warning("screenshot_write_failed", path=str(saved_path), error=str(e))
                return ScreenshotOutcome(success=False, message=f"Failed to save screenshot: {e}", security=result)

        logger.info(
            "screenshot_captured",
            size=format_size(len(data)),
            encrypted=envelope.encrypted,
            saved=saved_path is not None,
        )
        message = f"Screenshot captured ({format_size(len(data))})"
        if saved_path is not None:
            message += f", envelope saved to: {saved_path}"
        return ScreenshotOutcome(
            success=True,
            message=message,
            security=result,
            image_base64=base64.b64encode(data).decode("ascii"),
            saved_path=saved_path,
            encrypted=envelope.encrypted,
        )

    def _user_id(self, session_id: str | None) -> str | None:
        if self.access_control is None or not session_id:
            return None
        user = self.access_control.get_user_by_session(session_id)
        return user.id if user else None

    def _seal(self, data: bytes) -> EncryptedScreenshot | None:
        if not self.manager.config.enable_screenshot_encryption:
            return plain_envelope(data)
        if self.encryptor is None:
            return None
        return self.encryptor.encrypt_or_fallback(data)

    @staticmethod
    def _write_envelope(path: Path, envelope: EncryptedScreenshot) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(envelope.to_json(), encoding="utf-8")
