"""Process-isolated code sandbox.

Layer 2 of the execution path:
- Static re-check against forbidden functions, modules, and patterns
- Generated harness that shadows Node globals and provides an inert DOM
- Fresh short-lived subprocess per execution with a wall-clock timeout
- Per-execution scratch directory, always removed afterwards

This is best-effort, defense-in-depth isolation built on pattern matching
and a generated harness. It is not a formal sandbox.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Iterable

from electron_pilot.constants import CONTENT_PREVIEW_LENGTH, truncate
from electron_pilot.logging import Loggers
from electron_pilot.security.models import SandboxResult

logger = Loggers.sandbox()

DEFAULT_BLACKLISTED_FUNCTIONS: tuple[str, ...] = (
    "eval",
    "Function",
    "setTimeout",
    "setInterval",
    "setImmediate",
    "require",
    "import",
    "process",
    "global",
    "globalThis",
    "__dirname",
    "__filename",
    "Buffer",
    "XMLHttpRequest",
    "fetch",
    "WebSocket",
)

# Node core modules and host objects; matched as standalone identifiers
DEFAULT_BLACKLISTED_MODULES: tuple[str, ...] = (
    "fs",
    "child_process",
    "cluster",
    "crypto",
    "dgram",
    "dns",
    "http",
    "https",
    "net",
    "os",
    "stream",
    "tls",
    "util",
    "v8",
    "vm",
    "worker_threads",
    "zlib",
)

DANGEROUS_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\brequire\s*\(",
        r"\bimport\s+.*\s+from\b",
        r"\bimport\s*\(",
        r"\.\s*constructor\b",
        r"\b__proto__\b",
        r"\bprototype\s*\.",
        r"\bprocess\s*\.",
        r"\bglobal\s*\.",
        r"\bglobalThis\s*\.",
    )
)

# Names shadowed inside the execution scope
_SHADOWED_GLOBALS = (
    "process",
    "global",
    "globalThis",
    "require",
    "module",
    "exports",
    "__dirname",
    "__filename",
    "Buffer",
)
# Names bound to inert stand-ins so DOM-shaped expressions evaluate
_DOM_STAND_INS = (
    "document",
    "window",
    "self",
    "navigator",
    "location",
    "localStorage",
    "sessionStorage",
)

_FUNCTION_LITERAL = re.compile(
    r"^\s*(?:async\s+)?(?:function\b|\([^()]*\)\s*=>|[A-Za-z_$][\w$]*\s*=>)"
)
_RETURN = re.compile(r"\breturn\b")
_ABSOLUTE_PATH = re.compile(
    r"(?:file://)?(?:[A-Za-z]:\\|/)(?:[^\s:'\"()<>\\/]+[\\/])+[^\s:'\"()<>]*"
)

_HARNESS_TEMPLATE = r"""'use strict';
const __write = process.stdout.write.bind(process.stdout);
const __writeErr = process.stderr.write.bind(process.stderr);
const __body = __BODY__;
const __names = __NAMES__;
const __standIns = __STAND_INS__;
const __INERT = Symbol('inert');

function __inert(path) {
  return new Proxy(function () {}, {
    get(target, prop) {
      if (prop === __INERT) return path;
      if (prop === Symbol.toPrimitive) return () => '';
      if (prop === 'toJSON') return () => null;
      if (prop === 'then' || typeof prop === 'symbol') return undefined;
      return __inert(path + '.' + String(prop));
    },
    apply() { return __inert(path + '()'); },
    construct() { return __inert('new ' + path); },
    set() { return true; },
    has() { return true; },
    deleteProperty() { return true; },
  });
}

function __format(args) {
  return args.map((a) => {
    if (typeof a === 'string') return a;
    try { return JSON.stringify(a); } catch (e) { return String(a); }
  }).join(' ');
}

const __console = Object.freeze({
  log: (...a) => __writeErr('[SANDBOX] ' + __format(a) + '\n'),
  info: (...a) => __writeErr('[SANDBOX] ' + __format(a) + '\n'),
  debug: (...a) => __writeErr('[SANDBOX] ' + __format(a) + '\n'),
  warn: (...a) => __writeErr('[SANDBOX] ' + __format(a) + '\n'),
  error: (...a) => __writeErr('[SANDBOX] ' + __format(a) + '\n'),
});

function __emit(payload) {
  let text;
  try {
    text = JSON.stringify(payload);
  } catch (e) {
    text = JSON.stringify({ success: false, error: 'Result is not serializable: ' + e.message });
  }
  __write(text === undefined ? '{"success":true}' : text);
}

try {
  const values = __names.map(() => undefined);
  values.push(__console);
  for (const name of __standIns) values.push(__inert(name));
  const fn = new Function(...__names, 'console', ...__standIns, "'use strict';\n" + __body);
  __emit({ success: true, result: fn.apply(undefined, values) });
} catch (e) {
  __emit({
    success: false,
    error: e && e.message ? String(e.message) : String(e),
    stack: e && e.stack ? String(e.stack) : undefined,
  });
}
"""


def wrap_body(code: str) -> str:
    """Turn a caller expression into a function body.

    - function literal: invoked, its return value is the result
    - contains ``return``: used as the body verbatim
    - contains ``;``: run as statements, result is "executed"
    - otherwise: treated as a single expression
    """
    stripped = code.strip()
    if _FUNCTION_LITERAL.match(stripped):
        return f"return ({stripped})();"
    if _RETURN.search(stripped):
        return stripped
    if ";" in stripped:
        return f'{stripped}\nreturn "executed";'
    return f"return ({stripped});"


def build_harness(code: str) -> str:
    """Generate the harness source for one execution."""
    # Body last, so caller text is never scanned for placeholders
    return (
        _HARNESS_TEMPLATE.replace("__NAMES__", json.dumps(list(_SHADOWED_GLOBALS)))
        .replace("__STAND_INS__", json.dumps(list(_DOM_STAND_INS)))
        .replace("__BODY__", json.dumps(wrap_body(code)))
    )


class CodeSandbox:
    """Runs code strings in a fresh subprocess with a hard timeout.

    Each execution gets its own scratch directory keyed by a random id, so
    concurrent executions never share state.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        max_memory_mb: int = 50,
        runtime: Iterable[str] = ("node",),
        scratch_root: Path | str | None = None,
        blacklisted_functions: Iterable[str] = (),
        redact: Iterable[str] = (),
    ):
        """Initialize the sandbox.

        Args:
            timeout_ms: Wall-clock limit per execution.
            max_memory_mb: Heap ceiling passed to a Node runtime.
            runtime: Interpreter command prefix; the harness path is appended.
            scratch_root: Parent for per-execution scratch directories.
            blacklisted_functions: Extra forbidden function names.
            redact: Values (such as secrets) removed from returned error text.
        """
        self.timeout_ms = timeout_ms
        self.max_memory_mb = max_memory_mb
        self.runtime = list(runtime)
        self.scratch_root = (
            Path(scratch_root).expanduser()
            if scratch_root is not None
            else Path.home() / ".electron-pilot" / "sandbox"
        )
        self.blacklisted_functions = DEFAULT_BLACKLISTED_FUNCTIONS + tuple(
            f for f in blacklisted_functions if f not in DEFAULT_BLACKLISTED_FUNCTIONS
        )
        self._redact = tuple(v for v in redact if v)
        self._function_patterns = [
            (name, re.compile(rf"\b{re.escape(name)}\s*\("))
            for name in self.blacklisted_functions
        ]
        self._module_patterns = [
            (name, re.compile(rf"(?<![\w$.]){re.escape(name)}\b"))
            for name in DEFAULT_BLACKLISTED_MODULES
        ]

    def check_code(self, code: str) -> list[str]:
        """Static pre-check. Returns a list of problems (empty means clean)."""
        errors = []
        for name, pattern in self._function_patterns:
            if pattern.search(code):
                errors.append(f"Forbidden function: {name}")
        for name, pattern in self._module_patterns:
            if pattern.search(code):
                errors.append(f"Forbidden module/object: {name}")
        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(code):
                errors.append(f"Dangerous pattern detected: {pattern.pattern}")
        return errors

    async def execute_code(self, code: str) -> SandboxResult:
        """Execute code and return a SandboxResult. Never raises."""
        start = time.monotonic()
        execution_id = str(uuid.uuid4())
        log = logger.bind(sandbox_id=execution_id)

        problems = self.check_code(code)
        if problems:
            log.info("sandbox_static_check_failed", problems=problems)
            return SandboxResult(
                success=False,
                execution_time_ms=self._elapsed(start),
                error=f"Code validation failed: {', '.join(problems)}",
            )

        scratch = self.scratch_root / execution_id
        try:
            scratch.mkdir(parents=True, exist_ok=False)
            script = scratch / "script.cjs"
            script.write_text(build_harness(code), encoding="utf-8")
            log.debug("sandbox_started", runtime=self.runtime[0])
            result = await self._run(script, scratch, start)
        except OSError as e:
            log.warning("sandbox_setup_failed", error=str(e))
            result = SandboxResult(
                success=False,
                execution_time_ms=self._elapsed(start),
                error=self._scrub(f"Sandbox unavailable: {e}", scratch),
            )
        finally:
            self._cleanup(scratch, log)

        log.info(
            "sandbox_finished",
            success=result.success,
            execution_time_ms=result.execution_time_ms,
            resource_limit_hit=result.resource_limit_hit,
        )
        return result

    def _build_command(self, script: Path) -> list[str]:
        cmd = list(self.runtime)
        if Path(cmd[0]).name.lower() in ("node", "node.exe", "nodejs"):
            cmd.append(f"--max-old-space-size={self.max_memory_mb}")
        cmd.append(str(script))
        return cmd

    async def _run(self, script: Path, scratch: Path, start: float) -> SandboxResult:
        proc = await asyncio.create_subprocess_exec(
            *self._build_command(script),
            cwd=scratch,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_ms / 1000
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            return SandboxResult(
                success=False,
                execution_time_ms=self._elapsed(start),
                error="timeout",
                resource_limit_hit="timeout",
            )

        elapsed = self._elapsed(start)
        err_text = stderr.decode(errors="replace")

        if proc.returncode != 0:
            limit = "memory" if "heap out of memory" in err_text.lower() else None
            message = f"Process exited with code {proc.returncode}"
            if err_text.strip():
                message += f": {truncate(err_text.strip(), CONTENT_PREVIEW_LENGTH)}"
            return SandboxResult(
                success=False,
                execution_time_ms=elapsed,
                error=self._scrub(message, scratch),
                exit_code=proc.returncode,
                resource_limit_hit=limit,
            )

        try:
            payload = json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            return SandboxResult(
                success=False,
                execution_time_ms=elapsed,
                error=f"Failed to parse execution result: {e.msg}",
                exit_code=proc.returncode,
            )

        if not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(payload, dict) and payload.get("stack"):
                logger.debug("sandbox_code_error", stack=self._scrub(str(payload["stack"]), scratch))
            return SandboxResult(
                success=False,
                execution_time_ms=elapsed,
                error=self._scrub(str(error or "Execution failed"), scratch),
                exit_code=proc.returncode,
            )

        return SandboxResult(
            success=True,
            execution_time_ms=elapsed,
            result=payload.get("result"),
            exit_code=proc.returncode,
        )

    def _scrub(self, text: str, scratch: Path | None = None) -> str:
        """Remove filesystem paths and redacted values from caller-visible text."""
        if scratch is not None:
            text = text.replace(str(scratch), "<sandbox>")
        for value in self._redact:
            text = text.replace(value, "[REDACTED]")
        return _ABSOLUTE_PATH.sub("<path>", text)

    def _cleanup(self, scratch: Path, log) -> None:
        try:
            shutil.rmtree(scratch)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("sandbox_cleanup_failed", error=str(e))

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
