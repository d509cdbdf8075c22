"""
WAYPOINT PREFERENCES - Concern Filtering Profile

The user's tolerance for interruptions is a UserPreferences struct
(core/schemas.py) with five enumerated axes. Each (axis, level) pair maps to
exactly one documented filtering effect below. The verification prompt
renders these effects verbatim; no control logic compares preference
strings directly.

Axis               Levels                              Effect on filtering
----               ------                              -------------------
risk_comfort       low / medium / high                 how readily risky choices are surfaced
speed_vs_quality   speed / balanced / quality          whether polish questions survive
scope_flexibility  fixed / flexible / open             whether scope-expanding questions survive
detail_level       minimal / standard / detailed       threshold for minor clarifications
autonomy_level     guided / collaborative / autonomous who decides ambiguous defaults
"""
from typing import Dict, List, Optional, Tuple

from core.ontology import (
    AutonomyLevel,
    DetailLevel,
    RiskComfort,
    ScopeFlexibility,
    SpeedVsQuality,
)
from core.schemas import DEFAULT_USER_PREFERENCES, UserPreferences


# =============================================================================
# EFFECT TABLES
# =============================================================================

RISK_EFFECTS: Dict[RiskComfort, str] = {
    RiskComfort.LOW: "Surface any concern involving data loss, security, breaking changes, or irreversible operations, even when the plan already covers it partially.",
    RiskComfort.MEDIUM: "Surface concerns with meaningful risk; filter concerns whose risk is already mitigated in the plan.",
    RiskComfort.HIGH: "Filter risk-related concerns unless they are likely to break production or lose data.",
}

SPEED_EFFECTS: Dict[SpeedVsQuality, str] = {
    SpeedVsQuality.SPEED: "Filter questions about polish, refactoring, or optional improvements; keep only what blocks delivery.",
    SpeedVsQuality.BALANCED: "Keep quality questions that affect correctness or maintainability; filter purely cosmetic ones.",
    SpeedVsQuality.QUALITY: "Keep questions about test coverage, edge cases, and maintainability even when they are not blocking.",
}

SCOPE_EFFECTS: Dict[ScopeFlexibility, str] = {
    ScopeFlexibility.FIXED: "Filter questions that propose expanding scope beyond the stated feature.",
    ScopeFlexibility.FLEXIBLE: "Keep small, closely related scope additions; filter large expansions.",
    ScopeFlexibility.OPEN: "Keep scope-expanding questions when they add clear value.",
}

DETAIL_EFFECTS: Dict[DetailLevel, str] = {
    DetailLevel.MINIMAL: "Filter minor clarifications; keep only questions whose answer changes the implementation.",
    DetailLevel.STANDARD: "Keep clarifications that affect behavior users will notice.",
    DetailLevel.DETAILED: "Keep fine-grained clarifications, including naming and edge-case behavior.",
}

AUTONOMY_EFFECTS: Dict[AutonomyLevel, str] = {
    AutonomyLevel.GUIDED: "Pass questions about ambiguous defaults to the user rather than letting the agent decide.",
    AutonomyLevel.COLLABORATIVE: "Filter questions where a recommended option is clearly reasonable; pass genuine trade-offs.",
    AutonomyLevel.AUTONOMOUS: "Filter questions the agent can reasonably decide alone; pass only blockers and high-impact trade-offs.",
}


def preference_effects(preferences: UserPreferences) -> List[Tuple[str, str, str]]:
    """
    Resolve a profile into (axis, level, effect) rows.

    Returns:
        One row per axis, in a fixed order
    """
    return [
        ("Risk comfort", preferences.risk_comfort.value, RISK_EFFECTS[preferences.risk_comfort]),
        ("Speed vs quality", preferences.speed_vs_quality.value, SPEED_EFFECTS[preferences.speed_vs_quality]),
        ("Scope flexibility", preferences.scope_flexibility.value, SCOPE_EFFECTS[preferences.scope_flexibility]),
        ("Detail level", preferences.detail_level.value, DETAIL_EFFECTS[preferences.detail_level]),
        ("Autonomy level", preferences.autonomy_level.value, AUTONOMY_EFFECTS[preferences.autonomy_level]),
    ]


def is_default(preferences: Optional[UserPreferences]) -> bool:
    return preferences is None or preferences == DEFAULT_USER_PREFERENCES


def render_preference_guidance(preferences: Optional[UserPreferences]) -> str:
    """Markdown section for the verification prompt. Empty when no profile is given."""
    if preferences is None:
        return ""
    lines = ["## User Preferences", ""]
    for axis, level, effect in preference_effects(preferences):
        lines.append(f"- **{axis}** ({level}): {effect}")
    return "\n".join(lines)
