"""Input validator for caller-supplied commands.

Layer 1 of the execution path:
- Reject empty, oversized, denylisted, markup-injection, and obfuscated input
- Classify everything else into a risk level by content heuristics
- Produce a sanitized copy of the command and its arguments

The rules live in ordered tables of ValidationRule records so the denylist
can be reviewed, versioned, and extended (from YAML) without touching the
matching code. validate_command is a pure function of its input.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from electron_pilot.constants import MAX_COMMAND_LENGTH
from electron_pilot.security.models import RiskLevel, SanitizedInput, ValidationResult

RULESET_VERSION = "2024.2"


@dataclass(frozen=True)
class ValidationRule:
    """One entry of the rule table.

    Attributes:
        name: Stable identifier, reported in ValidationResult.matched_rules.
        pattern: Compiled regex searched against the command.
        severity: Risk level contributed when the rule matches.
        message: Human-readable reason. CRITICAL rules report it as an error.
    """

    name: str
    pattern: re.Pattern[str]
    severity: RiskLevel
    message: str

    @property
    def blocks(self) -> bool:
        return self.severity == RiskLevel.CRITICAL


def _rule(name: str, pattern: str, severity: RiskLevel, message: str, flags: int = 0) -> ValidationRule:
    return ValidationRule(name, re.compile(pattern, flags), severity, message)


# Keywords that are never allowed, matched as whole words (case-sensitive)
DANGEROUS_KEYWORDS: tuple[str, ...] = (
    "eval",
    "Function",
    "require",
    "import(",
    "process",
    "child_process",
    "fs",
    "fetch",
    "XMLHttpRequest",
    "WebSocket",
    "__proto__",
    "constructor",
    "global",
    "globalThis",
)


def _keyword_pattern(keyword: str) -> str:
    if keyword.endswith("("):
        return rf"\b{re.escape(keyword[:-1])}\s*\("
    return rf"\b{re.escape(keyword)}\b"


DENYLIST_RULES: list[ValidationRule] = [
    _rule(
        f"keyword:{kw}",
        _keyword_pattern(kw),
        RiskLevel.CRITICAL,
        f"Dangerous keyword detected: {kw}",
    )
    for kw in DANGEROUS_KEYWORDS
]

XSS_RULES: list[ValidationRule] = [
    _rule("xss:script_tag", r"<\s*script", RiskLevel.CRITICAL, "Potential XSS pattern detected", re.IGNORECASE),
    _rule("xss:javascript_url", r"javascript\s*:", RiskLevel.CRITICAL, "Potential XSS pattern detected", re.IGNORECASE),
    _rule("xss:event_handler", r"\bon\w+\s*=(?!=)", RiskLevel.CRITICAL, "Potential XSS pattern detected", re.IGNORECASE),
]

# Heuristics applied to the command with string literal contents removed.
# Order matters only for reporting; the final level is the maximum.
HEURISTIC_RULES: list[ValidationRule] = [
    # Dynamic code construction and out-of-band channels
    _rule("dynamic:timer", r"\bset(?:Timeout|Interval|Immediate)\s*\(", RiskLevel.HIGH, "Deferred code scheduling"),
    _rule("dynamic:html_write", r"\bdocument\s*\.\s*write(?:ln)?\s*\(", RiskLevel.HIGH, "Document write"),
    _rule("dynamic:html_injection", r"\b(?:inner|outer)HTML\s*=(?!=)|\binsertAdjacentHTML\s*\(", RiskLevel.HIGH, "HTML injection"),
    _rule("network:beacon", r"\bsendBeacon\s*\(|\bEventSource\b|\bimportScripts\s*\(", RiskLevel.HIGH, "Network primitive"),
    _rule("network:post_message", r"\bpostMessage\s*\(", RiskLevel.HIGH, "Cross-context messaging"),
    _rule("navigation:window_open", r"\bwindow\s*\.\s*open\s*\(", RiskLevel.HIGH, "Opens a new window"),
    _rule("navigation:location_assign", r"\blocation(?:\s*\.\s*href)?\s*=(?!=)|\blocation\s*\.\s*(?:assign|replace)\s*\(", RiskLevel.HIGH, "Navigation"),
    _rule("process:close", r"\bwindow\s*\.\s*close\s*\(", RiskLevel.HIGH, "Closes the window"),
    # State access and mutation
    _rule("data:cookie", r"\bdocument\s*\.\s*cookie\b", RiskLevel.MEDIUM, "Cookie access"),
    _rule("data:storage", r"\b(?:localStorage|sessionStorage|indexedDB)\b", RiskLevel.MEDIUM, "Browser storage access"),
    _rule("mutation:assignment", r"(?<![=!<>+\-*/%&|^])=(?![=>])", RiskLevel.MEDIUM, "Assignment expression"),
    _rule("mutation:compound_assignment", r"(?:\+\+|--|[+\-*/%&|^]=)", RiskLevel.MEDIUM, "Assignment expression"),
    _rule("mutation:dom", r"\b(?:setAttribute|removeAttribute|appendChild|removeChild|replaceChild|insertBefore)\s*\(|\.\s*remove\s*\(\s*\)", RiskLevel.MEDIUM, "DOM mutation"),
    _rule("interaction:submit", r"\.\s*submit\s*\(", RiskLevel.MEDIUM, "Form submission"),
    _rule("interaction:dispatch", r"\bdispatchEvent\s*\(", RiskLevel.MEDIUM, "Synthetic event dispatch"),
    # DOM queries and safe interaction verbs
    _rule("dom:query", r"\b(?:querySelector(?:All)?|getElementById|getElementsBy\w+)\s*\(", RiskLevel.LOW, "DOM query"),
    _rule("interaction:safe", r"\.\s*(?:click|focus|blur|scrollIntoView|scrollTo|scrollBy)\s*\(", RiskLevel.LOW, "UI interaction"),
]

# Argument strings are data, not code: only markup injection applies to them
ARGUMENT_RULES: list[ValidationRule] = list(XSS_RULES)

VALIDATION_RULES: list[ValidationRule] = DENYLIST_RULES + XSS_RULES + HEURISTIC_RULES

_STRING_LITERAL = re.compile(r"'(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\"|`(?:\\.|[^`\\])*`", re.DOTALL)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Local declarations do not mutate page state
_DECLARATION = re.compile(r"\b(?:const|let|var)\s+[A-Za-z_$][\w$]*\s*=(?![=>])")

# Obfuscation patterns
_FROM_CHAR_CODE = re.compile(r"fromCharCode\s*\(([^)]*)\)")
_HEX_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")
_UNICODE_ESCAPE = re.compile(r"\\u(?:\{([0-9a-fA-F]{1,6})\}|([0-9a-fA-F]{4}))")
_ATOB = re.compile(r"\batob\s*\(\s*(['\"])([A-Za-z0-9+/=\s]*)\1\s*\)")
_CONCAT_LITERALS = re.compile(
    r"(?:'[^'\n]*'|\"[^\"\n]*\")(?:\s*\+\s*(?:'[^'\n]*'|\"[^\"\n]*\"))+"
)


def _decode_escape(match: re.Match[str]) -> str:
    """Decode one \\xNN or \\u escape, leaving out-of-range code points as written."""
    digits = next(group for group in match.groups() if group)
    code_point = int(digits, 16)
    if code_point > 0x10FFFF:
        return match.group(0)
    return chr(code_point)


def strip_control_chars(value: str) -> str:
    """Remove C0 control characters other than tab and newline."""
    return _CONTROL_CHARS.sub("", value)


def sanitize_selector(selector: str) -> str:
    """Return a selector safe to embed after JSON string encoding.

    Control characters are removed and whitespace runs collapsed. Quoting is
    left to escape_js_string.
    """
    return re.sub(r"\s+", " ", strip_control_chars(selector)).strip()


def escape_js_string(value: str) -> str:
    """Encode value as a double-quoted JavaScript string literal."""
    # ensure_ascii keeps U+2028/U+2029 out of the literal
    return json.dumps(strip_control_chars(value), ensure_ascii=True)


def _strip_string_literals(code: str) -> str:
    return _STRING_LITERAL.sub('""', code)


def heuristic_view(code: str) -> str:
    """Command text as seen by the risk heuristics."""
    return _DECLARATION.sub("", _strip_string_literals(code))


class InputValidator:
    """Classifies and sanitizes a command and its arguments.

    The validator holds no mutable state; extra rules are fixed at
    construction, so repeated calls with the same input return the same
    result.
    """

    def __init__(
        self,
        extra_rules: list[ValidationRule] | None = None,
        max_length: int = MAX_COMMAND_LENGTH,
    ):
        """Initialize the validator.

        Args:
            extra_rules: Operator rules appended after the built-in tables.
            max_length: Maximum command length in characters.
        """
        self.max_length = max_length
        self._extra_rules = tuple(extra_rules or ())
        self._blocking_rules = tuple(DENYLIST_RULES + XSS_RULES) + tuple(
            r for r in self._extra_rules if r.blocks
        )
        self._heuristic_rules = tuple(HEURISTIC_RULES) + tuple(
            r for r in self._extra_rules if not r.blocks
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> "InputValidator":
        """Create a validator with extra rules loaded from a YAML file.

        The file holds a list of mappings with name, pattern, severity and
        message keys. A missing file yields the built-in rules only.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or []

        rules = [
            _rule(
                item["name"],
                item["pattern"],
                RiskLevel(item.get("severity", "critical")),
                item.get("message", f"Matched rule {item['name']}"),
                re.IGNORECASE if item.get("ignore_case") else 0,
            )
            for item in data
        ]
        return cls(extra_rules=rules)

    @property
    def rules(self) -> tuple[ValidationRule, ...]:
        """All active rules, blocking first."""
        return self._blocking_rules + self._heuristic_rules

    def validate_command(self, command: Any, args: Any = None) -> ValidationResult:
        """Validate a command and its arguments.

        Args:
            command: The command string (anything else is rejected).
            args: Optional structured or free-form arguments.

        Returns:
            ValidationResult with risk level, errors, and a sanitized copy.
        """
        if not isinstance(command, str) or not command.strip():
            return self._reject(
                "" if not isinstance(command, str) else command,
                args,
                ["Command must be a non-empty string"],
                ("input:empty",),
            )

        if len(command) > self.max_length:
            return self._reject(
                command[: self.max_length],
                args,
                [f"Command too long ({len(command)} > {self.max_length} characters)"],
                ("input:length",),
            )

        errors: list[str] = []
        matched: list[str] = []
        levels: list[RiskLevel] = []

        for rule in self._blocking_rules:
            if rule.pattern.search(command):
                matched.append(rule.name)
                levels.append(rule.severity)
                if rule.message not in errors:
                    errors.append(rule.message)

        obfuscated = self._detect_obfuscation(command)
        if obfuscated:
            matched.append("obfuscation")
            levels.append(RiskLevel.CRITICAL)
            errors.append(f"Obfuscated dangerous keyword detected: {obfuscated}")

        stripped = heuristic_view(command)
        for rule in self._heuristic_rules:
            if rule.pattern.search(stripped):
                matched.append(rule.name)
                levels.append(rule.severity)

        arg_errors = self._validate_args(args)
        if arg_errors:
            matched.append("args")
            levels.append(RiskLevel.CRITICAL)
            errors.extend(arg_errors)

        risk_level = RiskLevel.highest(levels)
        return ValidationResult(
            is_valid=risk_level != RiskLevel.CRITICAL,
            sanitized_input=SanitizedInput(
                command=strip_control_chars(command).strip(),
                args=self._sanitize_args(args),
            ),
            risk_level=risk_level,
            errors=tuple(errors),
            matched_rules=tuple(matched),
        )

    def _reject(
        self, command: str, args: Any, errors: list[str], matched: tuple[str, ...]
    ) -> ValidationResult:
        return ValidationResult(
            is_valid=False,
            sanitized_input=SanitizedInput(command=strip_control_chars(command).strip(), args=None),
            risk_level=RiskLevel.CRITICAL,
            errors=tuple(errors),
            matched_rules=matched,
        )

    def _contains_keyword(self, text: str) -> str | None:
        for rule in DENYLIST_RULES:
            if rule.pattern.search(text):
                return rule.name.split(":", 1)[1]
        return None

    def _detect_obfuscation(self, command: str) -> str | None:
        """Best-effort check for rebuilt denylisted keywords.

        Decodes character-code lists, hex and unicode escapes, base64 literals
        passed to atob, and concatenated string fragments, then runs the
        keyword denylist over the decoded text. Not exhaustive.
        """
        candidates: list[str] = []

        for match in _FROM_CHAR_CODE.finditer(command):
            chars = []
            for part in match.group(1).split(","):
                part = part.strip()
                try:
                    chars.append(chr(int(part, 0)))
                except (ValueError, OverflowError):
                    continue
            candidates.append("".join(chars))

        if _HEX_ESCAPE.search(command) or _UNICODE_ESCAPE.search(command):
            decoded = _HEX_ESCAPE.sub(_decode_escape, command)
            decoded = _UNICODE_ESCAPE.sub(_decode_escape, decoded)
            candidates.append(decoded)

        for match in _ATOB.finditer(command):
            try:
                candidates.append(
                    base64.b64decode(match.group(2), validate=False).decode("utf-8", errors="ignore")
                )
            except (binascii.Error, ValueError):
                continue

        for match in _CONCAT_LITERALS.finditer(command):
            fragments = re.findall(r"'([^'\n]*)'|\"([^\"\n]*)\"", match.group(0))
            candidates.append("".join(a or b for a, b in fragments))

        for text in candidates:
            keyword = self._contains_keyword(text)
            if keyword:
                return keyword
        return None

    def _validate_args(self, args: Any) -> list[str]:
        errors: list[str] = []
        for value in _iter_strings(args):
            if len(value) > self.max_length:
                errors.append(f"Argument too long ({len(value)} > {self.max_length} characters)")
                continue
            for rule in ARGUMENT_RULES:
                if rule.pattern.search(value):
                    message = f"{rule.message} in arguments"
                    if message not in errors:
                        errors.append(message)
        return errors

    def _sanitize_args(self, args: Any) -> Any:
        if isinstance(args, str):
            return strip_control_chars(args)
        if isinstance(args, dict):
            return {
                key: (
                    sanitize_selector(value)
                    if key == "selector" and isinstance(value, str)
                    else self._sanitize_args(value)
                )
                for key, value in args.items()
            }
        if isinstance(args, (list, tuple)):
            return [self._sanitize_args(value) for value in args]
        return args


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


_default_validator = InputValidator()


def validate_command(command: Any, args: Any = None) -> ValidationResult:
    """Validate with the built-in rule tables."""
    return _default_validator.validate_command(command, args)
