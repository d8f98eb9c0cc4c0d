"""Tests for the code sandbox.

Most tests drive the sandbox with the Python interpreter as a stand-in
runtime, so process handling is exercised without Node. Tests that run the
real JavaScript harness are skipped when node is not installed.
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

from conftest import ECHO_SUCCESS, READ_HARNESS, SLEEP_FOREVER, python_runtime, requires_node
from electron_pilot.security.sandbox import (
    DEFAULT_BLACKLISTED_MODULES,
    CodeSandbox,
    build_harness,
    wrap_body,
)


def make_sandbox(tmp_path: Path, script: str = ECHO_SUCCESS, **kwargs) -> CodeSandbox:
    return CodeSandbox(runtime=python_runtime(script), scratch_root=tmp_path / "scratch", **kwargs)


class TestStaticCheck:
    """The static re-check rejects code before any process starts."""

    @pytest.mark.parametrize(
        "code",
        [
            "eval('1')",
            "setTimeout(x, 1)",
            "require('fs')",
            "import('x')",
            "({}).constructor",
            "Object.prototype.x",
            "process.env",
            "globalThis.x",
        ],
    )
    def test_dangerous_code_is_rejected(self, tmp_path: Path, code):
        sandbox = make_sandbox(tmp_path)

        assert sandbox.check_code(code)

    @pytest.mark.parametrize("module", DEFAULT_BLACKLISTED_MODULES)
    def test_every_module_name_is_rejected(self, tmp_path: Path, module):
        sandbox = make_sandbox(tmp_path)

        assert f"Forbidden module/object: {module}" in sandbox.check_code(f"{module}.x")

    def test_module_names_inside_identifiers_pass(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path)

        for code in ("document.title", "settings.os_name", "httpsEnabled", "const costs = 1"):
            assert sandbox.check_code(code) == [], code

    def test_extra_blacklisted_functions(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path, blacklisted_functions=["alert"])

        assert "Forbidden function: alert" in sandbox.check_code("alert(1)")

    @pytest.mark.asyncio
    async def test_rejected_code_never_spawns(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path)

        result = await sandbox.execute_code("process.exit(1)")

        assert not result.success
        assert result.error.startswith("Code validation failed:")
        assert result.exit_code is None
        assert not (tmp_path / "scratch").exists()


class TestBodyWrapping:
    def test_function_literal_is_invoked(self):
        assert wrap_body("() => 1") == "return (() => 1)();"
        assert wrap_body("function () { return 2; }") == "return (function () { return 2; })();"

    def test_code_with_return_is_used_verbatim(self):
        assert wrap_body("const a = 1; return a;") == "const a = 1; return a;"

    def test_statements_return_executed(self):
        assert wrap_body("let a = 1; a + 1;") == 'let a = 1; a + 1;\nreturn "executed";'

    def test_expression_is_returned(self):
        assert wrap_body(" 1 + 1 ") == "return (1 + 1);"

    def test_harness_embeds_body_as_json_string(self):
        harness = build_harness("'__NAMES__'")

        assert json.dumps("return ('__NAMES__');") in harness
        assert '["process", "global"' in harness


class TestExecution:
    """Process handling, exercised with Python stand-in runtimes."""

    @pytest.mark.asyncio
    async def test_success_payload(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path)

        result = await sandbox.execute_code("1 + 1")

        assert result.success
        assert result.result == 42
        assert result.exit_code == 0
        assert result.error is None

    @pytest.mark.asyncio
    async def test_harness_file_exists_during_run_and_is_removed(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path, READ_HARNESS)

        result = await sandbox.execute_code("document.title")

        assert result.success
        assert result.result > 0
        assert list((tmp_path / "scratch").iterdir()) == []

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path, SLEEP_FOREVER, timeout_ms=300)

        result = await sandbox.execute_code("1")

        assert not result.success
        assert result.error == "timeout"
        assert result.resource_limit_hit == "timeout"
        assert result.execution_time_ms < 10_000
        assert list((tmp_path / "scratch").iterdir()) == []

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path: Path):
        script = "import sys; sys.stderr.write('boom'); sys.exit(3)"
        sandbox = make_sandbox(tmp_path, script)

        result = await sandbox.execute_code("1")

        assert not result.success
        assert result.exit_code == 3
        assert result.error == "Process exited with code 3: boom"

    @pytest.mark.asyncio
    async def test_memory_limit_is_reported(self, tmp_path: Path):
        script = (
            "import sys; sys.stderr.write('FATAL ERROR: JavaScript heap out of memory'); sys.exit(134)"
        )
        sandbox = make_sandbox(tmp_path, script)

        result = await sandbox.execute_code("1")

        assert not result.success
        assert result.resource_limit_hit == "memory"

    @pytest.mark.asyncio
    async def test_unparseable_output(self, tmp_path: Path):
        sandbox = make_sandbox(tmp_path, "print('not json')")

        result = await sandbox.execute_code("1")

        assert not result.success
        assert result.error.startswith("Failed to parse execution result")

    @pytest.mark.asyncio
    async def test_failure_payload_is_scrubbed(self, tmp_path: Path):
        script = (
            "import json, sys\n"
            "sys.stdout.write(json.dumps({'success': False, "
            "'error': 'cannot open /home/alice/secret.txt with super-secret-value'}))"
        )
        sandbox = make_sandbox(tmp_path, script, redact=["super-secret-value"])

        result = await sandbox.execute_code("1")

        assert not result.success
        assert "/home/alice" not in result.error
        assert "super-secret-value" not in result.error
        assert "<path>" in result.error
        assert "[REDACTED]" in result.error

    @pytest.mark.asyncio
    async def test_missing_runtime(self, tmp_path: Path):
        sandbox = CodeSandbox(
            runtime=[str(tmp_path / "no-such-runtime")], scratch_root=tmp_path / "scratch"
        )

        result = await sandbox.execute_code("1")

        assert not result.success
        assert result.error.startswith("Sandbox unavailable:")
        assert str(tmp_path) not in result.error

    @pytest.mark.asyncio
    async def test_concurrent_executions_are_isolated(self, tmp_path: Path):
        script = (
            "import json, os, sys\n"
            "sys.stdout.write(json.dumps({'success': True, 'result': os.getcwd()}))"
        )
        sandbox = make_sandbox(tmp_path, script)

        results = await asyncio.gather(*(sandbox.execute_code("1") for _ in range(4)))

        assert all(r.success for r in results)
        assert len({r.result for r in results}) == 4
        assert list((tmp_path / "scratch").iterdir()) == []

    def test_node_runtime_gets_memory_flag(self, tmp_path: Path):
        sandbox = CodeSandbox(runtime=["node"], max_memory_mb=64, scratch_root=tmp_path)

        command = sandbox._build_command(tmp_path / "script.cjs")

        assert command == ["node", "--max-old-space-size=64", str(tmp_path / "script.cjs")]

    def test_other_runtime_gets_no_memory_flag(self, tmp_path: Path):
        sandbox = CodeSandbox(runtime=[sys.executable], scratch_root=tmp_path)

        command = sandbox._build_command(tmp_path / "script.cjs")

        assert command == [sys.executable, str(tmp_path / "script.cjs")]


@requires_node
class TestNodeHarness:
    """End-to-end runs of the JavaScript harness under node."""

    @pytest.mark.asyncio
    async def test_expression(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path)

        result = await sandbox.execute_code("1 + 2")

        assert result.success
        assert result.result == 3

    @pytest.mark.asyncio
    async def test_statements_return_executed(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path)

        result = await sandbox.execute_code("let a = 1; a += 1;")

        assert result.success
        assert result.result == "executed"

    @pytest.mark.asyncio
    async def test_dom_access_is_inert(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path)

        result = await sandbox.execute_code("document.querySelector('#x').click()")

        assert result.success
        assert result.result is None

    @pytest.mark.asyncio
    async def test_thrown_error(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path)

        result = await sandbox.execute_code("const a = null; return a.b;")

        assert not result.success
        assert "null" in result.error

    @pytest.mark.asyncio
    async def test_console_output_does_not_corrupt_result(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path)

        result = await sandbox.execute_code("console.log('hello'); return 5;")

        assert result.success
        assert result.result == 5

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self, tmp_path: Path):
        sandbox = CodeSandbox(scratch_root=tmp_path, timeout_ms=500)

        result = await sandbox.execute_code("while (true) {} return 1;")

        assert not result.success
        assert result.resource_limit_hit == "timeout"
