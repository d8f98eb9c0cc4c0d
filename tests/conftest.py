"""Shared test fixtures and utilities for electron-pilot tests.

Provides:
- MockContext for isolating tests from global settings and PILOT_* variables
- Fake sandbox runtimes (the Python interpreter driven with -c scripts)
- A fake TargetConnection standing in for the live application
- A manual clock for session and rate-limit tests
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Generator
from unittest.mock import patch

import pytest

from electron_pilot.config import (
    PilotSettings,
    reload_settings,
    set_context_settings,
    set_settings,
)
from electron_pilot.security import (
    AuditConfig,
    AuditLogger,
    CodeSandbox,
    SecurityConfig,
    SecurityManager,
)
from electron_pilot.security.models import RiskLevel
from electron_pilot.target.connection import DevToolsTarget, EvaluationResult

TEST_SECRET = "test-secret-key-that-is-long-enough-for-validation"

NODE_AVAILABLE = shutil.which("node") is not None
requires_node = pytest.mark.skipif(not NODE_AVAILABLE, reason="node is not on PATH")


class MockContext:
    """Context manager for isolating tests from global state.

    Handles:
    - Clearing PILOT_* environment variables
    - Pointing audit and sandbox directories at a temporary directory
    - Resetting the global settings singleton afterwards

    Usage:
        with MockContext(security_level="balanced") as ctx:
            settings = ctx.settings
    """

    def __init__(self, **settings_kwargs):
        self._settings_kwargs = settings_kwargs
        self._temp_dir: tempfile.TemporaryDirectory | None = None
        self._settings: PilotSettings | None = None
        self._original_env: dict[str, str] = {}

    def __enter__(self) -> "MockContext":
        self._temp_dir = tempfile.TemporaryDirectory()
        base = Path(self._temp_dir.name)

        for var in [v for v in os.environ if v.startswith("PILOT_")]:
            self._original_env[var] = os.environ.pop(var)

        kwargs = {"audit_dir": base / "audit", **self._settings_kwargs}
        self._settings = PilotSettings(_env_file=None, **kwargs)
        set_settings(self._settings)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        set_context_settings(None)
        os.environ.update(self._original_env)
        reload_settings()
        if self._temp_dir:
            self._temp_dir.cleanup()

    @property
    def settings(self) -> PilotSettings:
        if self._settings is None:
            raise RuntimeError("MockContext not entered")
        return self._settings

    @property
    def base_dir(self) -> Path:
        if self._temp_dir is None:
            raise RuntimeError("MockContext not entered")
        return Path(self._temp_dir.name)


def python_runtime(script: str) -> list[str]:
    """Sandbox runtime prefix that runs script instead of the JS harness.

    The harness path is appended by the sandbox and shows up as sys.argv[1].
    """
    return [sys.executable, "-c", script]


# Writes a canned success payload
ECHO_SUCCESS = "import sys; sys.stdout.write('{\"success\": true, \"result\": 42}')"
# Reports the harness it was handed, proving the file exists during the run
READ_HARNESS = (
    "import json, sys\n"
    "source = open(sys.argv[1], encoding='utf-8').read()\n"
    "sys.stdout.write(json.dumps({'success': True, 'result': len(source)}))"
)
SLEEP_FOREVER = "import time; time.sleep(30)"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """In-memory TargetConnection.

    Records every evaluated expression. evaluate returns the queued results in
    order, then the default result.
    """

    def __init__(
        self,
        results: list[EvaluationResult] | None = None,
        targets: list[DevToolsTarget] | None = None,
        screenshot: bytes = b"\x89PNG\r\n\x1a\nfake-image",
        error: Exception | None = None,
    ):
        self.results = list(results or [])
        self.targets = targets if targets is not None else [
            DevToolsTarget(
                id="page-1",
                title="Test App",
                url="file:///app/index.html",
                websocket_debugger_url="ws://127.0.0.1:9222/devtools/page/page-1",
                type="page",
                port=9222,
            )
        ]
        self.screenshot = screenshot
        self.error = error
        self.expressions: list[str] = []
        self.screenshot_calls: list[str | None] = []

    async def list_targets(self) -> list[DevToolsTarget]:
        if self.error:
            raise self.error
        return list(self.targets)

    async def evaluate(self, expression: str) -> EvaluationResult:
        self.expressions.append(expression)
        if self.error:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return EvaluationResult(success=True, value="ok", type="string")

    async def capture_screenshot(self, window_title: str | None = None) -> bytes:
        self.screenshot_calls.append(window_title)
        if self.error:
            raise self.error
        return self.screenshot


def build_manager(
    tmp_path: Path,
    runtime: list[str] | None = None,
    threshold: RiskLevel = RiskLevel.MEDIUM,
    **config_changes: Any,
) -> SecurityManager:
    """SecurityManager wired to temporary directories and a fake runtime."""
    config = SecurityConfig(default_risk_threshold=threshold, **config_changes)
    sandbox = CodeSandbox(
        timeout_ms=config.sandbox_timeout_ms,
        runtime=runtime or python_runtime(ECHO_SUCCESS),
        scratch_root=tmp_path / "sandbox",
    )
    audit = AuditLogger(AuditConfig(enabled=config.enable_audit_log, log_dir=tmp_path / "audit"))
    return SecurityManager(config=config, sandbox=sandbox, audit=audit)


@pytest.fixture
def mock_context() -> Generator[MockContext, None, None]:
    """Fixture providing an isolated settings context."""
    with MockContext() as ctx:
        yield ctx


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Run with no PILOT_* variables set."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("PILOT_")}
    with patch.dict(os.environ, env, clear=True):
        yield


@pytest.fixture
def audit_logger(tmp_path: Path) -> AuditLogger:
    return AuditLogger(AuditConfig(enabled=True, log_dir=tmp_path / "audit"))


@pytest.fixture
def manager(tmp_path: Path) -> SecurityManager:
    """Manager with the default MEDIUM threshold and a canned-success sandbox."""
    return build_manager(tmp_path)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()
