"""electron-pilot - security control plane for Electron remote debugging.

Callers drive a running Electron application (evaluate code, click, fill
inputs, take screenshots) through a single mediated path:

- Input validation and risk classification
- Risk gate driven by the active security profile
- Process-isolated sandbox for arbitrary code
- Append-only audit log of every decision

Entry points read PilotSettings once, run validate_startup, and inject the
resulting components:

    settings = get_settings()
    profile = validate_startup(settings)
    manager = SecurityManager.from_settings(settings, profile)
    # Default admin (PILOT_ADMIN_PASSWORD) and PILOT_RATE_LIMIT_* limits
    access_control = await start_access_control(settings)
    controller = ElectronController(
        manager, DevToolsConnection.from_settings(settings), access_control
    )
"""

from electron_pilot.config import (
    PilotSettings,
    SettingsContext,
    get_context_settings,
    get_settings,
    reload_settings,
    set_context_settings,
    set_settings,
    validate_settings,
)
from electron_pilot.controller import CommandOutcome, ElectronController
from electron_pilot.logging import configure_logging, get_logger
from electron_pilot.screenshot import ScreenshotOutcome, ScreenshotService
from electron_pilot.security import (
    ExecutionContext,
    OperationType,
    RiskLevel,
    SecureExecutionResult,
    SecurityLevel,
    SecurityManager,
    start_access_control,
    validate_startup,
)
from electron_pilot.target import DevToolsConnection, TargetConnection

__version__ = "0.1.0"

__all__ = [
    "PilotSettings",
    "SettingsContext",
    "get_context_settings",
    "get_settings",
    "reload_settings",
    "set_context_settings",
    "set_settings",
    "validate_settings",
    "CommandOutcome",
    "ElectronController",
    "configure_logging",
    "get_logger",
    "ScreenshotOutcome",
    "ScreenshotService",
    "ExecutionContext",
    "OperationType",
    "RiskLevel",
    "SecureExecutionResult",
    "SecurityLevel",
    "SecurityManager",
    "start_access_control",
    "validate_startup",
    "DevToolsConnection",
    "TargetConnection",
]
