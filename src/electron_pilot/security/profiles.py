"""Security levels, profiles, and the manager's mutable configuration.

A SecurityProfile is resolved once at startup from the settings and then
turned into a SecurityConfig owned by the SecurityManager.

Resolution order for the level:
    1. Explicit argument
    2. PILOT_SECURITY_LEVEL (PilotSettings.security_level)
    3. STRICT
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from electron_pilot.logging import Loggers
from electron_pilot.security.models import RiskLevel
from electron_pilot.security.validator import heuristic_view

if TYPE_CHECKING:
    from electron_pilot.config import PilotSettings

logger = Loggers.config()


class SecurityLevel(Enum):
    STRICT = "strict"  # Property reads only
    BALANCED = "balanced"  # Safe UI interactions and DOM queries
    PERMISSIVE = "permissive"  # Assignments and form submission
    DEVELOPMENT = "development"  # No sandbox, no screenshot encryption


DEFAULT_SECURITY_LEVEL = SecurityLevel.STRICT

_DOM_CALLS = (
    "querySelector",
    "querySelectorAll",
    "getElementById",
    "getElementsByClassName",
    "getElementsByTagName",
    "getComputedStyle",
    "getBoundingClientRect",
    "focus",
    "blur",
    "scrollIntoView",
    "dispatchEvent",
)

DOM_QUERY_CALLS = frozenset(
    {
        "querySelector",
        "querySelectorAll",
        "getElementById",
        "getElementsByClassName",
        "getElementsByTagName",
        "getElementsByName",
    }
)
UI_CALLS = frozenset(
    {"click", "focus", "blur", "scrollIntoView", "scrollTo", "scrollBy", "submit", "dispatchEvent"}
)
# Page API calls governed by allowed_function_calls; other calls are left to the risk gate
PAGE_API_CALLS = DOM_QUERY_CALLS | UI_CALLS | frozenset(
    {"getComputedStyle", "getBoundingClientRect", "addEventListener", "removeEventListener"}
)

_CALL = re.compile(r"(?<![\w$])([A-Za-z_$][\w$]*)\s*\(")
_MEMBER_ACCESS = re.compile(r"\.\s*[A-Za-z_$]|\[")
_ASSIGNMENT_RULES = ("mutation:assignment", "mutation:compound_assignment")


@dataclass(frozen=True)
class SecurityProfile:
    """Immutable description of one security level.

    The allow_* flags and allowed_function_calls form the code policy applied
    to caller-supplied code (COMMAND operations) on top of the risk threshold.
    """

    level: SecurityLevel
    allow_ui_interactions: bool
    allow_dom_queries: bool
    allow_property_access: bool
    allow_assignments: bool
    allowed_function_calls: tuple[str, ...]
    risk_threshold: RiskLevel

    @property
    def enable_sandbox(self) -> bool:
        return self.level != SecurityLevel.DEVELOPMENT

    @property
    def enable_screenshot_encryption(self) -> bool:
        return self.level != SecurityLevel.DEVELOPMENT

    def allows_call(self, name: str) -> bool:
        return "*" in self.allowed_function_calls or name in self.allowed_function_calls

    def policy_violation(self, command: str, matched_rules: tuple[str, ...] = ()) -> str | None:
        """Check caller code against this profile's code policy.

        Args:
            command: The validated command.
            matched_rules: Rule names reported by the validator for it.

        Returns:
            The reason the profile forbids the code, or None if it is allowed.
        """
        view = heuristic_view(command)

        if not self.allow_property_access and _MEMBER_ACCESS.search(view):
            return "property access is not allowed"
        if not self.allow_assignments and any(r in matched_rules for r in _ASSIGNMENT_RULES):
            return "assignments are not allowed"

        for name in _CALL.findall(view):
            if name not in PAGE_API_CALLS:
                continue
            if name in DOM_QUERY_CALLS and not self.allow_dom_queries:
                return "DOM queries are not allowed"
            if name in UI_CALLS and not self.allow_ui_interactions:
                return "UI interactions are not allowed"
            if not self.allows_call(name):
                return f"function call not allowed: {name}"
        return None


SECURITY_PROFILES: dict[SecurityLevel, SecurityProfile] = {
    SecurityLevel.STRICT: SecurityProfile(
        level=SecurityLevel.STRICT,
        allow_ui_interactions=False,
        allow_dom_queries=False,
        allow_property_access=True,
        allow_assignments=False,
        allowed_function_calls=(),
        risk_threshold=RiskLevel.LOW,
    ),
    SecurityLevel.BALANCED: SecurityProfile(
        level=SecurityLevel.BALANCED,
        allow_ui_interactions=True,
        allow_dom_queries=True,
        allow_property_access=True,
        allow_assignments=False,
        allowed_function_calls=_DOM_CALLS,
        risk_threshold=RiskLevel.MEDIUM,
    ),
    SecurityLevel.PERMISSIVE: SecurityProfile(
        level=SecurityLevel.PERMISSIVE,
        allow_ui_interactions=True,
        allow_dom_queries=True,
        allow_property_access=True,
        allow_assignments=True,
        allowed_function_calls=_DOM_CALLS
        + ("click", "submit", "addEventListener", "removeEventListener"),
        risk_threshold=RiskLevel.HIGH,
    ),
    SecurityLevel.DEVELOPMENT: SecurityProfile(
        level=SecurityLevel.DEVELOPMENT,
        allow_ui_interactions=True,
        allow_dom_queries=True,
        allow_property_access=True,
        allow_assignments=True,
        allowed_function_calls=("*",),
        risk_threshold=RiskLevel.CRITICAL,
    ),
}


def resolve_security_profile(
    settings: "PilotSettings | None" = None,
    level: SecurityLevel | str | None = None,
) -> SecurityProfile:
    """Resolve the profile to run with.

    Args:
        settings: Loaded settings (consulted for security_level).
        level: Explicit level, overriding the settings.

    Returns:
        The frozen SecurityProfile for the resolved level.
    """
    source = "argument"
    if level is None and settings is not None and settings.security_level:
        level = settings.security_level
        source = "settings"
    if level is None:
        level = DEFAULT_SECURITY_LEVEL
        source = "default"

    resolved = SecurityLevel(level.lower()) if isinstance(level, str) else level
    logger.info("security_profile_resolved", level=resolved.value, source=source)
    return SECURITY_PROFILES[resolved]


@dataclass
class SecurityConfig:
    """Process-wide security toggles, owned and mutated by the SecurityManager.

    Not transactionally isolated: a concurrent update_config may be observed by
    one in-flight request and not by another.
    """

    enable_sandbox: bool = True
    enable_input_validation: bool = True
    enable_audit_log: bool = True
    enable_screenshot_encryption: bool = True
    default_risk_threshold: RiskLevel = RiskLevel.MEDIUM
    sandbox_timeout_ms: int = 5000
    max_execution_time_ms: int = 30000
    # Code policy for COMMAND operations, applied while enable_input_validation is set
    profile: SecurityProfile | None = field(default=None, compare=False)

    @property
    def profile_level(self) -> SecurityLevel | None:
        return self.profile.level if self.profile is not None else None

    @classmethod
    def from_profile(
        cls, profile: SecurityProfile, settings: "PilotSettings | None" = None
    ) -> "SecurityConfig":
        """Build the manager configuration for a resolved profile."""
        config = cls(
            enable_sandbox=profile.enable_sandbox,
            enable_screenshot_encryption=profile.enable_screenshot_encryption,
            default_risk_threshold=profile.risk_threshold,
            profile=profile,
        )
        if settings is not None:
            config = replace(
                config,
                enable_audit_log=settings.audit_enabled,
                sandbox_timeout_ms=settings.sandbox_timeout_ms,
                max_execution_time_ms=settings.max_execution_time_ms,
            )
        return config

    def copy(self) -> "SecurityConfig":
        return replace(self)


def validate_startup(
    settings: "PilotSettings", level: SecurityLevel | str | None = None
) -> SecurityProfile:
    """Resolve the profile and run the fatal startup checks.

    The encryption secret is only required when the resolved profile keeps
    screenshot encryption enabled.

    Raises:
        ConfigurationError: If the settings cannot be used.
    """
    from electron_pilot.config import validate_settings

    profile = resolve_security_profile(settings, level)
    validate_settings(
        settings,
        require_encryption_key=profile.enable_screenshot_encryption,
    )
    return profile
