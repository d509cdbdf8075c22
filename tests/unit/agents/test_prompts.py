"""
Unit tests for agent profiles and the verification prompt.
"""
from agents.prompts import (
    build_decision_validation_prompt,
    format_plan_steps,
    get_stage_profile,
    get_verification_profile,
)
from core.ontology import STAGE_TOOLS, Stage
from core.schemas import Decision, DecisionOption, PlanStep, UserPreferences


def concern(**overrides):
    fields = dict(
        question_text="Should sessions expire?",
        priority=2,
        category="design",
        options=[DecisionOption(label="Yes", recommended=True), DecisionOption(label="No")],
    )
    fields.update(overrides)
    return Decision(**fields)


class TestProfiles:

    def test_implementation_stage_can_write(self):
        profile = get_stage_profile(3)
        assert "Write" in profile["allowed_tools"]
        assert profile["skip_permissions"] is True
        assert profile["timeout_s"] is None

    def test_discovery_stage_is_read_only(self):
        profile = get_stage_profile(1)
        assert profile["allowed_tools"] == STAGE_TOOLS[Stage.DISCOVERY]
        assert "Write" not in profile["allowed_tools"]
        assert profile["skip_permissions"] is False

    def test_verification_profile(self):
        profile = get_verification_profile()
        assert profile["model"] == "haiku"
        assert profile["timeout_s"] == 180.0
        assert "Write" not in profile["allowed_tools"]


class TestPrompt:

    def test_plan_listing(self):
        steps = [
            PlanStep(id="b", order_index=1, title="Second", status="completed"),
            PlanStep(id="a", order_index=0, title="First"),
        ]
        text = format_plan_steps(steps)
        assert text.index("First") < text.index("Second")
        assert "2. [x] Second" in text
        assert "No description" in text
        assert format_plan_steps([]) == "No plan steps defined yet."

    def test_prompt_contains_concern_and_format(self):
        prompt = build_decision_validation_prompt(concern(file="app.py", line=7), [])
        assert "Should sessions expire?" in prompt
        assert "Referenced File: app.py:7" in prompt
        assert "- Yes (recommended)" in prompt
        assert '{"action": "pass"' in prompt
        assert "## User Preferences" not in prompt

    def test_prompt_includes_preferences(self):
        prompt = build_decision_validation_prompt(concern(), [], UserPreferences())
        assert "## User Preferences" in prompt
