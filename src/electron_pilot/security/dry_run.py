"""Dry-run analysis: what a command would do, without running it.

The analyzer classifies the command, extracts likely targets, builds a
numbered execution plan, and scores the execution risk from a weight table.
Nothing here executes, spawns, or touches the target.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from electron_pilot.constants import LOG_COMMAND_PREVIEW_LENGTH, truncate
from electron_pilot.logging import Loggers
from electron_pilot.security.models import RiskLevel, ValidationResult
from electron_pilot.security.validator import InputValidator

logger = Loggers.security()


class CommandType(Enum):
    DOM_MANIPULATION = "dom_manipulation"
    UI_INTERACTION = "ui_interaction"
    DATA_EXTRACTION = "data_extraction"
    NAVIGATION = "navigation"
    CODE_EXECUTION = "code_execution"
    GENERAL = "general"


# First match wins. Code execution is checked last so DOM code that merely
# mentions an eval-like name is not classified as code execution.
COMMAND_TYPE_PATTERNS: list[tuple[CommandType, re.Pattern[str]]] = [
    (
        CommandType.DOM_MANIPULATION,
        re.compile(r"document\.|element\.|querySelector|getElementById", re.IGNORECASE),
    ),
    (CommandType.UI_INTERACTION, re.compile(r"click|focus|submit|scroll|resize", re.IGNORECASE)),
    (
        CommandType.DATA_EXTRACTION,
        re.compile(r"innerText|innerHTML|value|getAttribute", re.IGNORECASE),
    ),
    (CommandType.NAVIGATION, re.compile(r"location\.|window\.open|history\.", re.IGNORECASE)),
    (CommandType.CODE_EXECUTION, re.compile(r"\beval\b|\bFunction\b|\bnew\s+Function\b")),
]

# Execution risk score weights
COMMAND_TYPE_WEIGHTS: dict[CommandType, int] = {
    CommandType.CODE_EXECUTION: 3,
    CommandType.NAVIGATION: 2,
    CommandType.DOM_MANIPULATION: 1,
}
FACTOR_WEIGHTS: dict[str, int] = {
    "sensitive_data_access": 2,
    "file_system_access": 2,
    "process_control": 3,
    "network_access": 1,
}
# (minimum score, level), highest first
RISK_SCORE_THRESHOLDS: list[tuple[int, RiskLevel]] = [
    (5, RiskLevel.CRITICAL),
    (3, RiskLevel.HIGH),
    (1, RiskLevel.MEDIUM),
    (0, RiskLevel.LOW),
]

_SELECTOR = re.compile(r"querySelector(?:All)?\(\s*['\"]([^'\"]+)['\"]\s*\)|['\"]([.#]?[\w-]+)['\"]")
_ELEMENT_ID = re.compile(r"getElementById\(\s*['\"]([^'\"]+)['\"]\s*\)")
_URL = re.compile(r"https?://[^\s'\"]+")

_DATA_READS = re.compile(r"innerText|innerHTML|value|getAttribute|textContent", re.IGNORECASE)
_DATA_WRITES = re.compile(r"innerHTML\s*=|value\s*=|setAttribute|appendChild", re.IGNORECASE)
_SENSITIVE = re.compile(r"password|token|key|secret|credential|cookie|session", re.IGNORECASE)
_STORAGE = re.compile(r"localStorage|sessionStorage", re.IGNORECASE)
_COOKIES = re.compile(r"document\.cookie", re.IGNORECASE)
_FILE_SYSTEM = re.compile(r"\bfs\.|readFile|writeFile|unlink|mkdir", re.IGNORECASE)
_PROCESS_CONTROL = re.compile(r"\b(?:spawn|exec|execSync|fork|kill|exit)\b", re.IGNORECASE)
_OUTBOUND = re.compile(r"fetch|XMLHttpRequest|WebSocket|window\.open", re.IGNORECASE)
_INBOUND = re.compile(r"addEventListener.*message|postMessage", re.IGNORECASE)


@dataclass(frozen=True)
class ExecutionStep:
    step: int
    action: str
    description: str
    risk_level: RiskLevel
    mitigation: str | None = None


@dataclass
class CommandAnalysis:
    """Static facts about a command."""

    command_type: CommandType
    targets: list[str]
    reads_data: bool = False
    writes_data: bool = False
    sensitive: bool = False
    storage: bool = False
    cookies: bool = False
    file_system: bool = False
    process_control: bool = False
    outbound_network: bool = False
    inbound_messages: bool = False
    risk_factors: list[str] = field(default_factory=list)


@dataclass
class DryRunResult:
    """Outcome of a dry run.

    Attributes:
        would_execute: True when validation passes and the level is not critical.
        command: The command as given.
        sanitized_command: The validator's sanitized copy.
        risk_level: Validator risk level.
        risks: Validator error messages.
        estimated_impact: Human-readable impact summary.
        recommendations: Operator guidance.
        execution_plan: Numbered preview of the execution pipeline.
        command_type: Detected command category.
        targets: Selectors, element ids, and URLs found in the command.
        execution_risk: Score-derived execution risk.
    """

    would_execute: bool
    command: str
    sanitized_command: str
    risk_level: RiskLevel
    risks: list[str]
    estimated_impact: str
    recommendations: list[str]
    execution_plan: list[ExecutionStep]
    command_type: CommandType
    targets: list[str]
    execution_risk: RiskLevel

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "would_execute": self.would_execute,
            "command": self.command,
            "sanitized_command": self.sanitized_command,
            "risk_level": self.risk_level.value,
            "risks": list(self.risks),
            "estimated_impact": self.estimated_impact,
            "recommendations": list(self.recommendations),
            "execution_plan": [
                {
                    "step": s.step,
                    "action": s.action,
                    "description": s.description,
                    "risk_level": s.risk_level.value,
                    "mitigation": s.mitigation,
                }
                for s in self.execution_plan
            ],
            "command_type": self.command_type.value,
            "targets": list(self.targets),
            "execution_risk": self.execution_risk.value,
        }


def detect_command_type(command: str) -> CommandType:
    for command_type, pattern in COMMAND_TYPE_PATTERNS:
        if pattern.search(command):
            return command_type
    return CommandType.GENERAL


def extract_targets(command: str) -> list[str]:
    """Best-effort extraction of selectors, element ids, and URLs."""
    targets: list[str] = []
    for match in _SELECTOR.finditer(command):
        targets.append(match.group(1) or match.group(2))
    targets.extend(m.group(1) for m in _ELEMENT_ID.finditer(command))
    targets.extend(_URL.findall(command))

    seen = set()
    unique = []
    for target in targets:
        if target and target not in seen:
            seen.add(target)
            unique.append(target)
    return unique


def analyze_command_content(command: str) -> CommandAnalysis:
    analysis = CommandAnalysis(
        command_type=detect_command_type(command),
        targets=extract_targets(command),
        reads_data=bool(_DATA_READS.search(command)),
        writes_data=bool(_DATA_WRITES.search(command)),
        sensitive=bool(_SENSITIVE.search(command)),
        storage=bool(_STORAGE.search(command)),
        cookies=bool(_COOKIES.search(command)),
        file_system=bool(_FILE_SYSTEM.search(command)),
        process_control=bool(_PROCESS_CONTROL.search(command)),
        outbound_network=bool(_OUTBOUND.search(command)),
        inbound_messages=bool(_INBOUND.search(command)),
    )
    if analysis.file_system:
        analysis.risk_factors.append("file_system_access")
    if analysis.process_control:
        analysis.risk_factors.append("process_control")
    if analysis.outbound_network:
        analysis.risk_factors.append("network_access")
    if analysis.sensitive:
        analysis.risk_factors.append("sensitive_data_access")
    return analysis


def risk_score(analysis: CommandAnalysis) -> int:
    score = COMMAND_TYPE_WEIGHTS.get(analysis.command_type, 0)
    return score + sum(FACTOR_WEIGHTS.get(f, 0) for f in analysis.risk_factors)


def score_to_risk(score: int) -> RiskLevel:
    for minimum, level in RISK_SCORE_THRESHOLDS:
        if score >= minimum:
            return level
    return RiskLevel.LOW


class DryRunAnalyzer:
    """Static inspection of commands. Never executes anything."""

    def __init__(self, validator: InputValidator | None = None):
        self.validator = validator or InputValidator()

    def analyze_command(
        self,
        command: str,
        args: Any = None,
        include_recommendations: bool = True,
    ) -> DryRunResult:
        logger.info("dry_run_started", command=truncate(str(command), LOG_COMMAND_PREVIEW_LENGTH))

        validation = self.validator.validate_command(command, args)
        text = command if isinstance(command, str) else ""
        analysis = analyze_command_content(text)
        execution_risk = score_to_risk(risk_score(analysis))

        result = DryRunResult(
            would_execute=validation.is_valid and validation.risk_level != RiskLevel.CRITICAL,
            command=text,
            sanitized_command=validation.sanitized_input.command or text,
            risk_level=validation.risk_level,
            risks=list(validation.errors),
            estimated_impact=self._estimate_impact(analysis),
            recommendations=(
                self._recommendations(analysis, validation) if include_recommendations else []
            ),
            execution_plan=self._execution_plan(analysis, execution_risk),
            command_type=analysis.command_type,
            targets=analysis.targets,
            execution_risk=execution_risk,
        )

        logger.info(
            "dry_run_completed",
            would_execute=result.would_execute,
            risk_level=result.risk_level.value,
            command_type=result.command_type.value,
        )
        return result

    def _execution_plan(self, analysis: CommandAnalysis, execution_risk: RiskLevel) -> list[ExecutionStep]:
        kind = analysis.command_type.value
        steps: list[tuple[str, str, RiskLevel, str | None]] = [
            (
                "Input Validation",
                "Validate and sanitize the command input",
                RiskLevel.LOW,
                "Filter dangerous patterns and escape special characters",
            ),
            (
                "Command Analysis",
                f"Analyze {kind} command for risks",
                RiskLevel.HIGH if len(analysis.risk_factors) > 2 else RiskLevel.MEDIUM,
                None,
            ),
            ("Permission Check", "Verify user has required permissions", RiskLevel.LOW, None),
        ]

        if analysis.command_type == CommandType.CODE_EXECUTION:
            steps.append(
                (
                    "Sandbox Preparation",
                    "Prepare isolated execution environment",
                    RiskLevel.MEDIUM,
                    "Use a short-lived subprocess with shadowed globals",
                )
            )

        if analysis.targets:
            steps.append(
                (
                    "Target Verification",
                    f"Verify target elements/URLs: {', '.join(analysis.targets[:3])}",
                    RiskLevel.HIGH if any(t.startswith("http") for t in analysis.targets) else RiskLevel.LOW,
                    None,
                )
            )

        steps.append(
            (
                "Command Execution",
                f"Execute {kind} in controlled environment",
                execution_risk,
                "Monitor execution time and resource usage",
            )
        )
        steps.append(
            (
                "Result Validation",
                "Validate and sanitize execution results",
                RiskLevel.LOW,
                "Filter sensitive data from results",
            )
        )

        return [
            ExecutionStep(step=i, action=a, description=d, risk_level=r, mitigation=m)
            for i, (a, d, r, m) in enumerate(steps, start=1)
        ]

    def _recommendations(self, analysis: CommandAnalysis, validation: ValidationResult) -> list[str]:
        recommendations = []

        if validation.risk_level == RiskLevel.CRITICAL:
            recommendations.append(
                "BLOCKED: Command contains critical security risks and should not be executed"
            )
            recommendations.append("Consider breaking down the operation into smaller, safer commands")
        if validation.risk_level == RiskLevel.HIGH:
            recommendations.append("HIGH RISK: Review command carefully before execution")
            recommendations.append("Consider running in a more restricted sandbox environment")
        if analysis.sensitive:
            recommendations.append("Sensitive data detected: Ensure proper encryption and access logging")
        if analysis.file_system:
            recommendations.append("File system access: Verify file paths and permissions")
        if analysis.outbound_network:
            recommendations.append("Network activity: Review target URLs and consider firewall rules")
        if analysis.storage or analysis.cookies:
            recommendations.append("Browser storage access: Avoid returning stored tokens or session values")
        if analysis.inbound_messages:
            recommendations.append("Message handling: Verify the origin of cross-window messages")
        if analysis.process_control:
            recommendations.append("Process control: Verify command is necessary and safe")
        if analysis.command_type == CommandType.CODE_EXECUTION:
            recommendations.append("Code execution: Consider using static analysis before runtime")

        if not recommendations:
            recommendations.append("Command appears safe for execution")
        return recommendations

    def _estimate_impact(self, analysis: CommandAnalysis) -> str:
        impacts = [_TYPE_IMPACT[analysis.command_type]]
        if analysis.reads_data and analysis.command_type != CommandType.DATA_EXTRACTION:
            impacts.append("Will read element content")
        if analysis.storage:
            impacts.append("May read or modify browser storage")
        if analysis.cookies:
            impacts.append("May read or modify cookies")
        if analysis.writes_data:
            impacts.append("May modify application data")
        if analysis.file_system:
            impacts.append("May access or modify files")
        if analysis.outbound_network:
            impacts.append("May initiate network requests")
        if analysis.inbound_messages:
            impacts.append("May exchange messages with other windows")
        return ". ".join(impacts)


_TYPE_IMPACT: dict[CommandType, str] = {
    CommandType.DOM_MANIPULATION: "May modify page content and user interface",
    CommandType.UI_INTERACTION: "Will trigger user interface events and interactions",
    CommandType.DATA_EXTRACTION: "Will read data from the page or application",
    CommandType.NAVIGATION: "May change page location or browser state",
    CommandType.CODE_EXECUTION: "Will execute arbitrary JavaScript code",
    CommandType.GENERAL: "General command execution",
}

_RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


def render_report(result: DryRunResult, width: int = 100) -> str:
    """Render a dry-run result as plain text."""
    console = Console(file=io.StringIO(), record=True, width=width, color_system=None)

    # Caller-derived text is wrapped in Text so rich markup in it is printed literally
    summary = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
    summary.add_column("Field", style="bold cyan", no_wrap=True)
    summary.add_column("Value")
    summary.add_row("Command", Text(truncate(result.command, LOG_COMMAND_PREVIEW_LENGTH)))
    summary.add_row("Type", result.command_type.value)
    summary.add_row("Risk level", result.risk_level.value)
    summary.add_row("Execution risk", result.execution_risk.value)
    summary.add_row("Would execute", "yes" if result.would_execute else "no")
    summary.add_row("Impact", Text(result.estimated_impact))
    if result.targets:
        summary.add_row("Targets", Text(", ".join(result.targets)))
    if result.risks:
        summary.add_row("Risks", Text("\n".join(result.risks)))
    console.print(Panel(summary, title="Dry-Run Analysis", border_style="cyan"))

    plan = Table(title="Execution Plan")
    plan.add_column("#", justify="right", no_wrap=True)
    plan.add_column("Action", style="bold", no_wrap=True)
    plan.add_column("Description")
    plan.add_column("Risk", no_wrap=True)
    plan.add_column("Mitigation", style="dim")
    for step in result.execution_plan:
        plan.add_row(
            str(step.step),
            Text(step.action),
            Text(step.description),
            f"[{_RISK_STYLES[step.risk_level]}]{step.risk_level.value}[/]",
            Text(step.mitigation or ""),
        )
    console.print(plan)

    if result.recommendations:
        console.print("Recommendations:", style="bold")
        for recommendation in result.recommendations:
            console.print(f"  - {recommendation}", markup=False)

    return console.export_text()
