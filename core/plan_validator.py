"""
WAYPOINT PLAN VALIDATOR - The Completeness Auditor

A composable plan has five sections (meta, steps, dependencies, test coverage,
acceptance mapping). Each is validated independently into a SectionResult;
the plan is complete only when all five are valid.

Checks:
1. Meta: version, session id, ISO timestamps, non-negative review count
2. Steps: at least one; every step has a complexity rating, a title of at most
   200 characters, a description of 50..5000 characters, no placeholder text,
   no embedded markers, a known parent, and no parent-chain cycle
3. Dependencies: known step references, acyclic (rustworkx), typed externals
4. Test coverage: framework, at least one required test type, known steps
5. Acceptance mapping: every criterion implemented by at least one known step

The offending identifiers are collected as structured lists during
validation, so the re-prompt never has to parse its own error messages.
"""
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import msgspec
import rustworkx as rx

from core.ontology import ExternalDependencyType, PlanSection, StepComplexity, StepStatus
from core.schemas import (
    ComposablePlan,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanTestCoverage,
    PlanValidationStatus,
)


# =============================================================================
# LIMITS AND PATTERNS
# =============================================================================

MIN_DESCRIPTION_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 5000
MAX_TITLE_LENGTH = 200

PLACEHOLDER_PATTERNS = [
    re.compile(r"\bTBD\b", re.IGNORECASE),
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"\bFIXME\b", re.IGNORECASE),
    re.compile(r"\bXXX\b", re.IGNORECASE),
    re.compile(r"\bPLACEHOLDER\b", re.IGNORECASE),
    re.compile(r"\bTO BE DETERMINED\b", re.IGNORECASE),
    re.compile(r"\bTO BE DEFINED\b", re.IGNORECASE),
    re.compile(r"\bNEEDS?\s+(TO BE\s+)?(FILLED|COMPLETED|WRITTEN)\b", re.IGNORECASE),
    re.compile(r"\[\.{3,}\]"),
    re.compile(r"<\.{3,}>"),
]

MARKER_PATTERN = re.compile(
    r"\[/?(DECISION_NEEDED|PLAN_STEP|PR_CREATED|CI_STATUS|STEP_COMPLETE|"
    r"IMPLEMENTATION_COMPLETE|RETURN_TO_STAGE_2)[^\]]*\]"
)

SECTION_NAMES: Dict[PlanSection, str] = {
    PlanSection.META: "Plan Metadata",
    PlanSection.STEPS: "Plan Steps",
    PlanSection.DEPENDENCIES: "Dependencies",
    PlanSection.TEST_COVERAGE: "Test Coverage",
    PlanSection.ACCEPTANCE_MAPPING: "Acceptance Criteria Mapping",
}

_STEP_STATUSES = {s.value for s in StepStatus}
_COMPLEXITIES = {c.value for c in StepComplexity}
_EXTERNAL_TYPES = {t.value for t in ExternalDependencyType}


def contains_placeholder(text: str) -> bool:
    return any(p.search(text) for p in PLACEHOLDER_PATTERNS)


def contains_marker_pattern(text: str) -> bool:
    return bool(MARKER_PATTERN.search(text))


def _is_iso_datetime(value: str) -> bool:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return False
    return True


def find_cycle(edges: Iterable[Tuple[str, str]]) -> Optional[List[str]]:
    """
    Find one directed cycle among string-labelled edges.

    Returns:
        The cycle as a closed path (["a", "b", "a"]) or None when acyclic
    """
    graph = rx.PyDiGraph()
    index: Dict[str, int] = {}
    for source, target in edges:
        for name in (source, target):
            if name not in index:
                index[name] = graph.add_node(name)
        graph.add_edge(index[source], index[target], None)

    if rx.is_directed_acyclic_graph(graph):
        return None

    for node in graph.node_indices():
        cycle_edges = rx.digraph_find_cycle(graph, source=node)
        if len(cycle_edges) > 0:
            path = [graph[cycle_edges[0][0]]]
            path.extend(graph[target] for _, target in cycle_edges)
            return path
    return None


# =============================================================================
# RESULT SCHEMAS
# =============================================================================

class SectionResult(msgspec.Struct, kw_only=True):
    valid: bool = True
    errors: List[str] = msgspec.field(default_factory=list)


class PlanValidationResult(msgspec.Struct, kw_only=True):
    meta: SectionResult
    steps: SectionResult
    dependencies: SectionResult
    test_coverage: SectionResult
    acceptance_mapping: SectionResult
    overall: bool
    steps_missing_complexity: List[str] = msgspec.field(default_factory=list)
    short_description_steps: List[str] = msgspec.field(default_factory=list)
    unmapped_criteria: List[str] = msgspec.field(default_factory=list)

    def sections(self) -> List[Tuple[PlanSection, SectionResult]]:
        return [
            (PlanSection.META, self.meta),
            (PlanSection.STEPS, self.steps),
            (PlanSection.DEPENDENCIES, self.dependencies),
            (PlanSection.TEST_COVERAGE, self.test_coverage),
            (PlanSection.ACCEPTANCE_MAPPING, self.acceptance_mapping),
        ]

    def incomplete_sections(self) -> List[str]:
        return [section.value for section, result in self.sections() if not result.valid]

    def to_status(self) -> PlanValidationStatus:
        return PlanValidationStatus(
            meta=self.meta.valid,
            steps=self.steps.valid,
            dependencies=self.dependencies.valid,
            test_coverage=self.test_coverage.valid,
            acceptance_mapping=self.acceptance_mapping.valid,
            overall=self.overall,
            errors={s.value: r.errors for s, r in self.sections() if r.errors},
        )


class RepromptContext(msgspec.Struct, kw_only=True):
    """Exactly what the next planning turn must fix."""
    summary: str
    incomplete_sections: List[str] = msgspec.field(default_factory=list)
    steps_lacking_complexity: List[str] = msgspec.field(default_factory=list)
    unmapped_acceptance_criteria: List[str] = msgspec.field(default_factory=list)
    insufficient_descriptions: List[str] = msgspec.field(default_factory=list)
    detailed_context: str = ""


class PlanCompletenessResult(msgspec.Struct, kw_only=True):
    complete: bool
    missing_context: str
    validation: PlanValidationResult


# =============================================================================
# VALIDATOR
# =============================================================================

class PlanValidator:
    """Validates each section of a composable plan independently."""

    def validate_meta(self, meta: PlanMeta) -> SectionResult:
        errors = []
        if not meta.version:
            errors.append("Version is required")
        if not meta.session_id:
            errors.append("Session ID is required")
        if not _is_iso_datetime(meta.created_at):
            errors.append("createdAt must be a valid ISO datetime")
        if not _is_iso_datetime(meta.updated_at):
            errors.append("updatedAt must be a valid ISO datetime")
        if meta.review_count < 0:
            errors.append("Review count must be non-negative")
        return SectionResult(valid=not errors, errors=errors)

    def validate_steps(self, steps: List[PlanStep]) -> Tuple[SectionResult, List[str], List[str]]:
        """
        Returns:
            (section result, ids missing complexity, ids with short descriptions)
        """
        if not steps:
            return SectionResult(valid=False, errors=["Plan must have at least one step"]), [], []

        errors: List[str] = []
        missing_complexity: List[str] = []
        short_descriptions: List[str] = []
        ids = [s.id for s in steps]
        id_set = set(ids)

        seen = set()
        for step_id in ids:
            if step_id in seen:
                errors.append(f'Duplicate step ID: "{step_id}"')
            seen.add(step_id)

        for n, step in enumerate(steps, start=1):
            label = f"Step {n} ({step.id or 'missing id'})"
            if not step.id:
                errors.append(f"{label}: Step ID is required")

            title = step.title.strip()
            if not title:
                errors.append(f"{label}: title is required")
            elif len(title) > MAX_TITLE_LENGTH:
                errors.append(f"{label}: title must be at most {MAX_TITLE_LENGTH} characters")
            if contains_placeholder(title):
                errors.append(f"{label}: title contains placeholder text")
            if contains_marker_pattern(title):
                errors.append(f"{label}: title contains invalid marker patterns")

            description = step.description.strip()
            if len(description) < MIN_DESCRIPTION_LENGTH:
                errors.append(
                    f"{label}: description must be at least {MIN_DESCRIPTION_LENGTH} characters "
                    f"(has {len(description)})"
                )
                short_descriptions.append(step.id)
            elif len(description) > MAX_DESCRIPTION_LENGTH:
                errors.append(f"{label}: description must be at most {MAX_DESCRIPTION_LENGTH} characters")
            if contains_placeholder(description):
                errors.append(f"{label}: description contains placeholder text")
            if contains_marker_pattern(description):
                errors.append(f"{label}: description contains invalid marker patterns")

            if step.status not in _STEP_STATUSES:
                errors.append(f"{label}: invalid status '{step.status}'")
            if step.order_index < 0:
                errors.append(f"{label}: orderIndex must be non-negative")

            if step.complexity is None:
                missing_complexity.append(step.id)
            elif step.complexity not in _COMPLEXITIES:
                errors.append(f"{label}: invalid complexity '{step.complexity}'")

            if step.parent_id is not None and step.parent_id not in id_set:
                errors.append(f'Step "{step.id}" has orphaned parentId: {step.parent_id}')

        if missing_complexity:
            errors.append(f"Steps missing complexity rating: {', '.join(missing_complexity)}")

        parent_cycle = find_cycle(
            (s.parent_id, s.id) for s in steps if s.parent_id is not None and s.parent_id in id_set
        )
        if parent_cycle:
            errors.append(f"Circular parent reference detected: {' -> '.join(parent_cycle)}")

        return SectionResult(valid=not errors, errors=errors), missing_complexity, short_descriptions

    def validate_dependencies(self, dependencies: PlanDependencies, step_ids: List[str]) -> SectionResult:
        errors: List[str] = []
        known = set(step_ids)

        for dep in dependencies.step_dependencies:
            if dep.step_id not in known:
                errors.append(f"Step dependency references unknown step: {dep.step_id}")
            if dep.depends_on not in known:
                errors.append(f"Step dependency references unknown dependency: {dep.depends_on}")

        cycle = find_cycle((d.step_id, d.depends_on) for d in dependencies.step_dependencies)
        if cycle:
            errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

        for ext in dependencies.external_dependencies:
            if not ext.name:
                errors.append("Dependency name is required")
            if ext.type not in _EXTERNAL_TYPES:
                errors.append(
                    f'External dependency "{ext.name}" has invalid type "{ext.type}" '
                    f"(expected one of: {', '.join(sorted(_EXTERNAL_TYPES))})"
                )
            if not ext.reason:
                errors.append(f'External dependency "{ext.name}": Dependency reason is required')
            if not ext.required_by:
                errors.append(
                    f'External dependency "{ext.name}": At least one step must require this dependency'
                )
            for step_id in ext.required_by:
                if step_id not in known:
                    errors.append(f'External dependency "{ext.name}" references unknown step: {step_id}')

        return SectionResult(valid=not errors, errors=errors)

    def validate_test_coverage(self, coverage: PlanTestCoverage, step_ids: List[str]) -> SectionResult:
        errors: List[str] = []
        known = set(step_ids)

        if not coverage.framework.strip():
            errors.append("Testing framework is required")
        if not coverage.required_test_types:
            errors.append("At least one global test type is required")
        target = coverage.global_coverage_target
        if target is not None and not 0 <= target <= 100:
            errors.append("Global coverage target must be between 0 and 100")

        for entry in coverage.step_coverage:
            if entry.step_id not in known:
                errors.append(f"Test coverage references unknown step: {entry.step_id}")
            if not entry.required_test_types:
                errors.append(f"Test coverage for {entry.step_id}: At least one test type is required")
            if entry.coverage_target is not None and not 0 <= entry.coverage_target <= 100:
                errors.append(f"Test coverage for {entry.step_id}: coverage target must be between 0 and 100")

        return SectionResult(valid=not errors, errors=errors)

    def validate_acceptance_mapping(
        self,
        mapping: PlanAcceptanceMapping,
        step_ids: List[str],
    ) -> Tuple[SectionResult, List[str]]:
        """
        Returns:
            (section result, ids of criteria with no implementing step)
        """
        errors: List[str] = []
        unmapped: List[str] = []
        known = set(step_ids)

        if not _is_iso_datetime(mapping.updated_at):
            errors.append("updatedAt must be a valid ISO datetime")

        for entry in mapping.mappings:
            if not entry.criterion_id:
                errors.append("Criterion ID is required")
            if not entry.criterion_text:
                errors.append(f'Acceptance criterion "{entry.criterion_id}": Criterion text is required')
            if not entry.implementing_step_ids:
                errors.append(f'Acceptance criterion "{entry.criterion_id}" has no implementing steps')
                unmapped.append(entry.criterion_id)
            for step_id in entry.implementing_step_ids:
                if step_id not in known:
                    errors.append(
                        f'Acceptance mapping for "{entry.criterion_id}" references unknown step: {step_id}'
                    )

        return SectionResult(valid=not errors, errors=errors), unmapped

    def validate_plan(self, plan: ComposablePlan) -> PlanValidationResult:
        """
        Validate all five sections.

        Args:
            plan: The composable plan to check

        Returns:
            PlanValidationResult with per-section results and offending identifiers
        """
        step_ids = [s.id for s in plan.steps]
        steps_result, missing_complexity, short_descriptions = self.validate_steps(plan.steps)
        mapping_result, unmapped = self.validate_acceptance_mapping(plan.acceptance_mapping, step_ids)

        meta_result = self.validate_meta(plan.meta)
        deps_result = self.validate_dependencies(plan.dependencies, step_ids)
        coverage_result = self.validate_test_coverage(plan.test_coverage, step_ids)

        overall = all(r.valid for r in (meta_result, steps_result, deps_result, coverage_result, mapping_result))
        return PlanValidationResult(
            meta=meta_result,
            steps=steps_result,
            dependencies=deps_result,
            test_coverage=coverage_result,
            acceptance_mapping=mapping_result,
            overall=overall,
            steps_missing_complexity=missing_complexity,
            short_description_steps=short_descriptions,
            unmapped_criteria=unmapped,
        )

    def get_incomplete_sections(self, plan: ComposablePlan) -> List[str]:
        return self.validate_plan(plan).incomplete_sections()

    def generate_validation_context(self, plan: ComposablePlan) -> str:
        """Markdown describing every issue in the plan. Empty string for a valid plan."""
        return render_validation_context(self.validate_plan(plan))


# =============================================================================
# RE-PROMPT RENDERING
# =============================================================================

def render_validation_context(result: PlanValidationResult) -> str:
    if result.overall:
        return ""

    lines = [
        "## Plan Validation Issues",
        "",
        "The plan is not yet complete. Address the following issues before the plan can be approved:",
        "",
    ]
    for section, section_result in result.sections():
        if section_result.valid:
            continue
        lines.append(f"### {SECTION_NAMES[section]}")
        lines.extend(f"- {error}" for error in section_result.errors)
        lines.append("")

    lines.append("### How to Fix")
    lines.append("")
    if not result.meta.valid:
        lines.append("- Provide complete plan metadata in a [PLAN_META] block")
    if result.steps_missing_complexity:
        lines.append(
            "- Add complexity=\"low|medium|high\" to these [PLAN_STEP] markers: "
            + ", ".join(result.steps_missing_complexity)
        )
    if result.short_description_steps:
        lines.append(
            f"- Expand descriptions to at least {MIN_DESCRIPTION_LENGTH} characters for: "
            + ", ".join(result.short_description_steps)
        )
    if not result.steps.valid and not (result.steps_missing_complexity or result.short_description_steps):
        lines.append("- Correct the step errors listed above and re-emit the affected [PLAN_STEP] markers")
    if not result.dependencies.valid:
        lines.append("- Fix [PLAN_DEPENDENCIES]: reference only existing steps and break any circular chain")
    if not result.test_coverage.valid:
        lines.append("- Declare the test framework and required test types in [PLAN_TEST_COVERAGE]")
    if result.unmapped_criteria or not result.acceptance_mapping.valid:
        lines.append(
            "- Map every acceptance criterion to at least one existing step in [PLAN_ACCEPTANCE_MAPPING]"
        )
    lines.append("")
    return "\n".join(lines)


def _summary(context: RepromptContext) -> str:
    parts = []
    if context.incomplete_sections:
        parts.append(
            f"{len(context.incomplete_sections)} incomplete section(s): {', '.join(context.incomplete_sections)}"
        )
    if context.steps_lacking_complexity:
        parts.append(f"{len(context.steps_lacking_complexity)} step(s) missing complexity ratings")
    if context.unmapped_acceptance_criteria:
        parts.append(f"{len(context.unmapped_acceptance_criteria)} unmapped acceptance criteria")
    if context.insufficient_descriptions:
        parts.append(f"{len(context.insufficient_descriptions)} step(s) with insufficient descriptions")
    if not parts:
        return "Plan validation passed"
    return f"Plan incomplete: {'; '.join(parts)}"


def build_reprompt_context(result: PlanValidationResult) -> RepromptContext:
    """Structured re-prompt for the next planning turn, built from the validation result."""
    context = RepromptContext(
        summary="",
        incomplete_sections=result.incomplete_sections(),
        steps_lacking_complexity=list(result.steps_missing_complexity),
        unmapped_acceptance_criteria=list(result.unmapped_criteria),
        insufficient_descriptions=list(result.short_description_steps),
        detailed_context=render_validation_context(result),
    )
    context.summary = _summary(context)
    return context


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_default_validator = PlanValidator()


def validate_plan(plan: ComposablePlan) -> PlanValidationResult:
    """Quick check of a composable plan with the default validator."""
    return _default_validator.validate_plan(plan)


def check_plan_completeness(plan: Optional[ComposablePlan]) -> PlanCompletenessResult:
    """Completeness verdict plus the re-prompt text for an incomplete plan."""
    if plan is None:
        missing = SectionResult(valid=False, errors=["No plan found"])
        return PlanCompletenessResult(
            complete=False,
            missing_context="No plan found in session directory. Please create a plan first.",
            validation=PlanValidationResult(
                meta=missing,
                steps=missing,
                dependencies=missing,
                test_coverage=missing,
                acceptance_mapping=missing,
                overall=False,
            ),
        )

    result = validate_plan(plan)
    return PlanCompletenessResult(
        complete=result.overall,
        missing_context=render_validation_context(result),
        validation=result,
    )
