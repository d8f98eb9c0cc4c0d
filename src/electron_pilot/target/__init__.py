"""Live-target side: DevTools connection and interaction verb translation."""

from electron_pilot.target.commands import (
    COMMAND_BUILDERS,
    EVAL_COMMAND,
    build_expression,
    get_eval_code,
    parse_shortcut,
)
from electron_pilot.target.connection import (
    DevToolsConnection,
    DevToolsTarget,
    EvaluationResult,
    TargetConnection,
    select_target,
)

__all__ = [
    "COMMAND_BUILDERS",
    "EVAL_COMMAND",
    "build_expression",
    "get_eval_code",
    "parse_shortcut",
    "DevToolsConnection",
    "DevToolsTarget",
    "EvaluationResult",
    "TargetConnection",
    "select_target",
]
