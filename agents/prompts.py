"""
WAYPOINT INTELLIGENCE - Agent Profiles and Prompt Builders

Transforms session state into the text and capability sets each agent
call needs.

Design:
- Capability sets and model tiers live in config/agents.yaml
- Stage defaults in core/ontology.py apply when the YAML omits a stage
- The verification prompt combines the concern, the plan, and the
  preference guidance, and asks for a single JSON verdict
"""
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional

from agents.preferences import render_preference_guidance
from core.ontology import STAGE_TOOLS, VERIFICATION_TOOLS, Stage, StepStatus
from core.schemas import Decision, PlanStep, UserPreferences


# =============================================================================
# CONFIG LOADER
# =============================================================================

_agent_config: Optional[Dict[str, Any]] = None
_config_path = Path(__file__).parent.parent / "config" / "agents.yaml"


def get_agent_config() -> Dict[str, Any]:
    """Load agent configuration from agents.yaml."""
    global _agent_config
    if _agent_config is None:
        with open(_config_path, "r") as f:
            _agent_config = yaml.safe_load(f) or {}
    return _agent_config


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def get_stage_profile(stage: int) -> Dict[str, Any]:
    """
    Capability profile for the coding agent in one stage.

    Returns:
        Dict with allowed_tools, model, timeout_s and skip_permissions.
        model and timeout_s are None unless agents.yaml sets them.
    """
    config = get_agent_config().get("coding", {})
    stages = config.get("stages", {}) or {}
    stage_cfg = stages.get(stage) or stages.get(str(stage)) or {}
    return {
        "allowed_tools": list(stage_cfg.get("allowed_tools") or STAGE_TOOLS[Stage(stage)]),
        "model": stage_cfg.get("model", config.get("model")),
        "timeout_s": _optional_float(stage_cfg.get("timeout_s", config.get("timeout_s"))),
        "skip_permissions": bool(stage_cfg.get("skip_permissions", False)),
    }


def get_verification_profile() -> Dict[str, Any]:
    config = get_agent_config().get("verification", {})
    return {
        "allowed_tools": list(config.get("allowed_tools") or VERIFICATION_TOOLS),
        "model": config.get("model", "haiku"),
        "timeout_s": float(config.get("timeout_s", 180)),
    }


# =============================================================================
# VERIFICATION PROMPT
# =============================================================================

STATUS_ICONS: Dict[str, str] = {
    StepStatus.PENDING.value: "[ ]",
    StepStatus.IN_PROGRESS.value: "[~]",
    StepStatus.COMPLETED.value: "[x]",
    StepStatus.BLOCKED.value: "[!]",
    StepStatus.SKIPPED.value: "[-]",
    StepStatus.NEEDS_REVIEW.value: "[?]",
}

_INSTRUCTIONS = """## Instructions

1. **Check the Plan**: Is this concern already addressed in a current or future plan step?
2. **Check the Codebase** (if a file is referenced): Read the file to see if a solution exists
3. **Decide the action**:
   - **pass**: Concern is valid and needs user input - pass through as-is
   - **filter**: Concern is fully addressed in plan or code - remove entirely
   - **repurpose**: Concern is semi-valid but the question is wrong or incomplete - transform into better question(s)

## Response Format (JSON only)

**If valid - pass through:**
{"action": "pass", "reason": "Why this needs user input"}

**If fully addressed - filter out:**
{"action": "filter", "reason": "Already in plan step X / Already implemented in Y"}

**If semi-valid - repurpose into better question(s):**
{"action": "repurpose", "reason": "Why the original question was incomplete", "questions": [
  {
    "questionText": "The refined question to ask",
    "category": "technical|design|scope|approach",
    "priority": 1,
    "options": [
      {"label": "Option A", "recommended": true},
      {"label": "Option B", "recommended": false}
    ]
  }
]}

## Rules
- Only use "filter" if you can CONFIRM the concern is fully addressed
- Use "repurpose" when the underlying concern is valid but the question needs refinement
- When in doubt, use "pass" - it is better to ask than to miss an issue
- Keep repurposed questions focused and actionable
- Preserve the original priority unless you have reason to change it"""


def format_plan_steps(steps: List[PlanStep]) -> str:
    if not steps:
        return "No plan steps defined yet."
    ordered = sorted(steps, key=lambda s: s.order_index)
    return "\n\n".join(
        f"{i}. {STATUS_ICONS.get(step.status, '[ ]')} {step.title}\n   {step.description or 'No description'}"
        for i, step in enumerate(ordered, start=1)
    )


def build_decision_validation_prompt(
    decision: Decision,
    steps: List[PlanStep],
    preferences: Optional[UserPreferences] = None,
) -> str:
    """
    Build the verification-agent prompt for one concern.

    Args:
        decision: The concern raised by the coding agent
        steps: Current plan steps, for "already covered" checks
        preferences: Optional filtering profile

    Returns:
        Prompt text asking for a single JSON verdict
    """
    file_context = ""
    if decision.file:
        location = f"{decision.file}:{decision.line}" if decision.line else decision.file
        file_context = f"\nReferenced File: {location}"

    options = "\n".join(
        f"- {o.label}{' (recommended)' if o.recommended else ''}" for o in decision.options
    )

    sections = [
        "Investigate this concern and determine how to handle it.",
        "## Current Implementation Plan\n" + format_plan_steps(steps),
        (
            "## Concern Details\n"
            f"Category: {decision.category}\n"
            f"Priority: {decision.priority}{file_context}\n\n"
            f"Concern:\n{decision.question_text}\n\n"
            f"Options provided:\n{options}"
        ),
    ]
    guidance = render_preference_guidance(preferences)
    if guidance:
        sections.append(guidance)
    sections.append(_INSTRUCTIONS)
    return "\n\n".join(sections)
