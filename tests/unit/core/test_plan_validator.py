"""
Unit tests for composable plan validation and re-prompt context.
"""
import msgspec
import pytest

from core.plan_validator import (
    PlanValidator,
    build_reprompt_context,
    check_plan_completeness,
    contains_marker_pattern,
    contains_placeholder,
    find_cycle,
    render_validation_context,
    validate_plan,
)
from core.schemas import (
    AcceptanceCriterionMapping,
    ComposablePlan,
    ExternalDependency,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanTestCoverage,
    StepDependency,
    StepTestCoverage,
)

LONG = "Implement the handler, wire it into the router and cover the happy path with tests."


def good_step(step_id, order=0, parent=None, complexity="medium"):
    return PlanStep(
        id=step_id,
        order_index=order,
        parent_id=parent,
        title=f"Build {step_id}",
        description=LONG,
        complexity=complexity,
    )


@pytest.fixture
def valid_plan():
    return ComposablePlan(
        meta=PlanMeta(session_id="sess-1"),
        steps=[good_step("s1"), good_step("s2", order=1, parent="s1")],
        dependencies=PlanDependencies(
            step_dependencies=[StepDependency(step_id="s2", depends_on="s1")],
            external_dependencies=[
                ExternalDependency(name="httpx", type="other", reason="HTTP client", required_by=["s2"]),
            ],
        ),
        test_coverage=PlanTestCoverage(
            framework="pytest",
            required_test_types=["unit"],
            step_coverage=[StepTestCoverage(step_id="s1", required_test_types=["unit"])],
        ),
        acceptance_mapping=PlanAcceptanceMapping(mappings=[
            AcceptanceCriterionMapping(
                criterion_id="AC-1",
                criterion_text="Users can log in",
                implementing_step_ids=["s1", "s2"],
                is_fully_covered=True,
            ),
        ]),
    )


def with_steps(plan, steps):
    return msgspec.structs.replace(plan, steps=steps)


# =============================================================================
# HELPERS
# =============================================================================

class TestHelpers:

    def test_placeholders(self):
        assert contains_placeholder("Details TBD")
        assert contains_placeholder("fill in [...]")
        assert not contains_placeholder("Todoist integration")

    def test_markers(self):
        assert contains_marker_pattern('see [PLAN_STEP id="x"]')
        assert not contains_marker_pattern("[not a marker]")

    def test_find_cycle(self):
        assert find_cycle([("a", "b"), ("b", "c")]) is None
        cycle = find_cycle([("a", "b"), ("b", "c"), ("c", "a")])
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}


# =============================================================================
# SECTIONS
# =============================================================================

class TestSections:

    def test_valid_plan_passes(self, valid_plan):
        result = validate_plan(valid_plan)
        assert result.overall, result.to_status().errors
        assert render_validation_context(result) == ""

    def test_meta_requires_session_id(self, valid_plan):
        plan = msgspec.structs.replace(valid_plan, meta=PlanMeta(session_id=""))
        result = validate_plan(plan)
        assert not result.meta.valid
        assert "Session ID is required" in result.meta.errors

    def test_empty_steps(self, valid_plan):
        result = validate_plan(with_steps(valid_plan, []))
        assert result.steps.errors == ["Plan must have at least one step"]

    def test_missing_complexity_collected(self, valid_plan):
        steps = [good_step("s1", complexity=None), good_step("s2", order=1)]
        result = validate_plan(with_steps(valid_plan, steps))
        assert result.steps_missing_complexity == ["s1"]
        assert "Steps missing complexity rating: s1" in result.steps.errors

    def test_short_description_collected(self, valid_plan):
        short = msgspec.structs.replace(good_step("s1"), description="Too short")
        result = validate_plan(with_steps(valid_plan, [short, good_step("s2", order=1)]))
        assert result.short_description_steps == ["s1"]

    def test_placeholder_and_marker_in_description(self, valid_plan):
        bad = msgspec.structs.replace(good_step("s1"), description=LONG + " TODO later [PLAN_STEP]")
        result = validate_plan(with_steps(valid_plan, [bad, good_step("s2", order=1)]))
        errors = " ".join(result.steps.errors)
        assert "placeholder" in errors
        assert "marker" in errors

    def test_orphan_and_parent_cycle(self, valid_plan):
        steps = [
            good_step("s1", parent="s2"),
            good_step("s2", order=1, parent="s1"),
            good_step("s3", order=2, parent="ghost"),
        ]
        errors = validate_plan(with_steps(valid_plan, steps)).steps.errors
        assert 'Step "s3" has orphaned parentId: ghost' in errors
        assert any(e.startswith("Circular parent reference detected") for e in errors)

    def test_dependency_cycle_and_unknown(self, valid_plan):
        deps = PlanDependencies(step_dependencies=[
            StepDependency(step_id="s1", depends_on="s2"),
            StepDependency(step_id="s2", depends_on="s1"),
            StepDependency(step_id="s9", depends_on="s1"),
        ])
        result = validate_plan(msgspec.structs.replace(valid_plan, dependencies=deps))
        errors = result.dependencies.errors
        assert "Step dependency references unknown step: s9" in errors
        assert any(e.startswith("Circular dependency detected") for e in errors)

    def test_external_type_checked(self, valid_plan):
        deps = PlanDependencies(external_dependencies=[
            ExternalDependency(name="left-pad", type="cdn", reason="x", required_by=["s1"]),
        ])
        result = validate_plan(msgspec.structs.replace(valid_plan, dependencies=deps))
        assert not result.dependencies.valid

    def test_framework_blank_is_invalid_unknown_is_accepted(self, valid_plan):
        blank = msgspec.structs.replace(valid_plan.test_coverage, framework="")
        unknown = msgspec.structs.replace(valid_plan.test_coverage, framework="unknown")
        assert not validate_plan(msgspec.structs.replace(valid_plan, test_coverage=blank)).test_coverage.valid
        assert validate_plan(msgspec.structs.replace(valid_plan, test_coverage=unknown)).test_coverage.valid

    def test_unmapped_criterion(self, valid_plan):
        mapping = PlanAcceptanceMapping(mappings=[
            AcceptanceCriterionMapping(criterion_id="AC-2", criterion_text="Logout", implementing_step_ids=[]),
        ])
        result = validate_plan(msgspec.structs.replace(valid_plan, acceptance_mapping=mapping))
        assert result.unmapped_criteria == ["AC-2"]

    def test_empty_mapping_is_valid(self, valid_plan):
        plan = msgspec.structs.replace(valid_plan, acceptance_mapping=PlanAcceptanceMapping())
        assert validate_plan(plan).acceptance_mapping.valid


# =============================================================================
# COMPLETENESS AND RE-PROMPT
# =============================================================================

class TestCompleteness:

    def test_missing_plan(self):
        result = check_plan_completeness(None)
        assert not result.complete
        assert "No plan found" in result.missing_context

    def test_incomplete_plan_reprompt(self, valid_plan):
        steps = [
            msgspec.structs.replace(good_step("s1", complexity=None), description="short"),
            good_step("s2", order=1),
        ]
        result = check_plan_completeness(with_steps(valid_plan, steps))
        assert not result.complete
        assert "## Plan Validation Issues" in result.missing_context

        context = build_reprompt_context(result.validation)
        assert context.incomplete_sections == ["steps"]
        assert context.steps_lacking_complexity == ["s1"]
        assert context.insufficient_descriptions == ["s1"]
        assert context.summary == (
            "Plan incomplete: 1 incomplete section(s): steps; "
            "1 step(s) missing complexity ratings; "
            "1 step(s) with insufficient descriptions"
        )

    def test_status_flags(self, valid_plan):
        plan = msgspec.structs.replace(valid_plan, test_coverage=PlanTestCoverage())
        status = validate_plan(plan).to_status()
        assert status.steps is True
        assert status.test_coverage is False
        assert status.overall is False
        assert "testCoverage" in status.errors

    def test_validator_incomplete_sections(self, valid_plan):
        assert PlanValidator().get_incomplete_sections(valid_plan) == []
        assert PlanValidator().generate_validation_context(valid_plan) == ""
