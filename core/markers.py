"""
WAYPOINT MARKERS - The Agent Output Reader

The coding agent reports structure through bracketed blocks embedded in
free text:

    [DECISION_NEEDED priority="1" category="scope"]...[/DECISION_NEEDED]
    [PLAN_STEP id="s1" parent="null" status="pending" complexity="low"]...[/PLAN_STEP]
    [STEP_MODIFICATIONS]modified: [...] added: [...] removed: [...][/STEP_MODIFICATIONS]
    [REMOVE_STEPS]["s3"][/REMOVE_STEPS]
    [IMPLEMENTATION_STATUS]step_id: s1 ...[/IMPLEMENTATION_STATUS]
    [STEP_COMPLETE id="s1"]...[/STEP_COMPLETE]
    [PR_CREATED]Title: ... Branch: a -> b[/PR_CREATED]

This module is the only place that reads that text. Every extractor returns
a typed record (msgspec.Struct) or the NOT_FOUND sentinel, so downstream
code never re-parses text and can tell "block absent" apart from
"block present but empty".

Parsing is deliberately tolerant: prose around blocks, loose lists instead
of JSON arrays, case-insensitive field names.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Union

import msgspec

from core.ontology import StepComplexity, StepStatus
from core.schemas import (
    AcceptanceCriterionMapping,
    ComposablePlan,
    Decision,
    DecisionOption,
    ExternalDependency,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanTestCoverage,
    StepDependency,
    StepTestCoverage,
    now_utc,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SENTINEL
# =============================================================================

class _NotFound:
    """Returned by an extractor when its block does not occur in the text."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


def is_found(value: Any) -> bool:
    return value is not NOT_FOUND


# =============================================================================
# MARKER RECORDS
# =============================================================================

class StepModifications(msgspec.Struct, kw_only=True):
    modified_step_ids: List[str] = msgspec.field(default_factory=list)
    added_step_ids: List[str] = msgspec.field(default_factory=list)
    removed_step_ids: List[str] = msgspec.field(default_factory=list)


class StepCompletion(msgspec.Struct, kw_only=True):
    step_id: str
    summary: str = ""
    status: str = StepStatus.COMPLETED.value
    commit: Optional[str] = None
    files_modified: List[str] = msgspec.field(default_factory=list)
    tests_added: List[str] = msgspec.field(default_factory=list)
    tests_passing: bool = True
    formal: bool = True          # False when inferred from "Step N Complete" prose


class ImplementationStatus(msgspec.Struct, kw_only=True):
    step_id: str = ""
    status: str = ""
    files_modified: int = 0
    tests_status: str = ""
    work_type: str = ""
    progress: int = 0
    message: str = ""


class ImplementationComplete(msgspec.Struct, kw_only=True):
    summary: str = ""
    all_tests_passing: bool = False
    tests_added: List[str] = msgspec.field(default_factory=list)


class PRCreated(msgspec.Struct, kw_only=True):
    title: str = ""
    source_branch: str = ""
    target_branch: str = ""
    url: Optional[str] = None


class CIStatus(msgspec.Struct, kw_only=True):
    status: str
    checks: str = ""


class ParsedOutput(msgspec.Struct, kw_only=True):
    """Everything one agent turn reported. Absent blocks become None / empty."""
    decisions: List[Decision] = msgspec.field(default_factory=list)
    plan_steps: List[PlanStep] = msgspec.field(default_factory=list)
    step_completions: List[StepCompletion] = msgspec.field(default_factory=list)
    step_modifications: Optional[StepModifications] = None
    removed_step_ids: List[str] = msgspec.field(default_factory=list)
    implementation_status: Optional[ImplementationStatus] = None
    implementation_complete: Optional[ImplementationComplete] = None
    pr_created: Optional[PRCreated] = None
    plan_approved: bool = False
    plan_file_path: Optional[str] = None
    ci_status: Optional[CIStatus] = None
    ci_failed: bool = False
    pr_approved: bool = False
    return_to_planning_reason: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

_ATTR = re.compile(r"(\w+)=[\"']([^\"']*)[\"']")
_OPTION_PREFIX = re.compile(r"^-\s+\*?\*?Option\s+\w+", re.IGNORECASE)
_OPTION_LINE = re.compile(
    r"^-\s+(?:\*?\*?Option\s+\w+:\s*\*?\*?\s*)?(.+?)(?:\s+\(recommended\))?$",
    re.IGNORECASE,
)


def _block(name: str) -> "re.Pattern[str]":
    return re.compile(rf"\[{name}([^\]]*)\]([\s\S]*?)\[/{name}\]")


_DECISION = _block("DECISION_NEEDED")
_PLAN_STEP = _block("PLAN_STEP")
_STEP_MODS = re.compile(r"\[STEP_MODIFICATIONS\]([\s\S]*?)\[/STEP_MODIFICATIONS\]")
_REMOVE_STEPS = re.compile(r"\[REMOVE_STEPS\]([\s\S]*?)\[/REMOVE_STEPS\]")
_IMPL_STATUS = re.compile(r"\[IMPLEMENTATION_STATUS\]([\s\S]*?)\[/IMPLEMENTATION_STATUS\]")
_IMPL_COMPLETE = re.compile(r"\[IMPLEMENTATION_COMPLETE\]([\s\S]*?)\[/IMPLEMENTATION_COMPLETE\]")
_STEP_COMPLETE = re.compile(r"\[STEP_COMPLETE\s+id=[\"']([^\"']+)[\"']\]([\s\S]*?)\[/STEP_COMPLETE\]")
_STEP_COMPLETE_OPEN = re.compile(r"\[STEP_COMPLETE\s+id=[\"']([^\"']+)[\"']\]")
_STEP_COMPLETE_PROSE = re.compile(
    r"(?:^|\n)(?:#+\s*)?\*?\*?Step\s+(\d+|[a-z]+-\d+)\s+(?:Complete|Completed|Done)\*?\*?[ \t]*(?=\n|$)",
    re.IGNORECASE,
)
_PR_CREATED = re.compile(r"\[PR_CREATED\]([\s\S]*?)\[/PR_CREATED\]")
_CI_STATUS = re.compile(r"\[CI_STATUS\s+status=\"(passing|failing|pending)\"\]([\s\S]*?)\[/CI_STATUS\]")
_RETURN_TO_PLANNING = re.compile(r"\[RETURN_TO_STAGE_2\]([\s\S]*?)\[/RETURN_TO_STAGE_2\]")
_PLAN_FILE = re.compile(r"\[PLAN_FILE\s+path=\"([^\"]+)\"\]")
_PLAN_APPROVED = re.compile(r"^\[PLAN_APPROVED\]$", re.MULTILINE)


def _attributes(attr_text: str) -> Dict[str, str]:
    return {m.group(1): m.group(2) for m in _ATTR.finditer(attr_text)}


def _safe_int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    if not value:
        return default
    match = re.match(r"\s*(-?\d+)", value)
    return int(match.group(1)) if match else default


def _field(content: str, key: str) -> str:
    """Value of the first 'key: value' line (case-insensitive), or ''."""
    match = re.search(
        rf"^[ \t]*[-*]?[ \t]*{re.escape(key)}[ \t]*:[ \t]*(.*)$",
        content,
        re.IGNORECASE | re.MULTILINE,
    )
    return match.group(1).strip() if match else ""


def _yes(value: str) -> bool:
    return value.strip().lower() in ("yes", "true")


def _csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip() and part.strip().lower() != "none"]


def _json_string_list(text: str) -> Optional[List[str]]:
    """Decode a JSON array and keep only its strings. None when text is not a JSON array."""
    try:
        parsed = msgspec.json.decode(text.strip())
    except msgspec.DecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    return [item for item in parsed if isinstance(item, str)]


def _dedupe(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


# =============================================================================
# EXTRACTORS
# =============================================================================

def extract_decisions(text: str) -> Union[List[Decision], _NotFound]:
    """
    Extract concerns from [DECISION_NEEDED] blocks.

    A line is an option when it starts with "-" and either sits at or after
    the first "- Option X:" line, carries that prefix itself, or is flagged
    "(recommended)". Blocks without options are dropped; when no option is
    flagged, the first one becomes the recommendation.
    """
    matches = list(_DECISION.finditer(text))
    if not matches:
        return NOT_FOUND

    decisions: List[Decision] = []
    for match in matches:
        attrs = _attributes(match.group(1))
        lines = match.group(2).strip().split("\n")

        options_start = next(
            (i for i, line in enumerate(lines) if _OPTION_PREFIX.match(line.strip())),
            -1,
        )

        question_lines: List[str] = []
        options: List[DecisionOption] = []
        for i, raw in enumerate(lines):
            line = raw.strip()
            in_options = options_start >= 0 and i >= options_start
            recommended = "(recommended)" in line.lower()

            if line.startswith("-") and (in_options or recommended or _OPTION_PREFIX.match(line)):
                option_match = _OPTION_LINE.match(line)
                if option_match:
                    label = re.sub(r"\s*\(recommended\)\s*", "", option_match.group(1), flags=re.IGNORECASE)
                    label = re.sub(r"^\*\*|\*\*$", "", label).strip()
                    options.append(DecisionOption(label=label, recommended=recommended))
            elif line:
                question_lines.append(line)

        if not options:
            logger.debug("Dropping DECISION_NEEDED block without options")
            continue
        if not any(o.recommended for o in options):
            options[0].recommended = True

        decisions.append(Decision(
            question_text="\n".join(question_lines).strip(),
            priority=_safe_int(attrs.get("priority"), 3),
            category=attrs.get("category") or "general",
            options=options,
            file=attrs.get("file") or None,
            line=_safe_int(attrs.get("line"), None),
            step_id=attrs.get("step") or attrs.get("stepId") or None,
        ))
    return decisions


def extract_plan_steps(text: str) -> Union[List[PlanStep], _NotFound]:
    """Extract [PLAN_STEP] blocks. The first content line is the title, the rest the description."""
    matches = list(_PLAN_STEP.finditer(text))
    if not matches:
        return NOT_FOUND

    steps: List[PlanStep] = []
    for index, match in enumerate(matches):
        attrs = _attributes(match.group(1))
        lines = match.group(2).strip().split("\n")

        parent = attrs.get("parent")
        complexity = (attrs.get("complexity") or "").strip().lower()
        steps.append(PlanStep(
            id=attrs.get("id", ""),
            parent_id=None if parent in (None, "", "null") else parent,
            order_index=index,
            title=lines[0].strip() if lines else "",
            description="\n".join(lines[1:]).strip(),
            status=attrs.get("status") or StepStatus.PENDING.value,
            complexity=complexity if complexity in {c.value for c in StepComplexity} else None,
            acceptance_criteria_ids=_csv(attrs.get("acceptanceCriteria", "")),
            estimated_files=_csv(attrs.get("estimatedFiles", "")),
        ))
    return steps


def _array_field(content: str, name: str) -> List[str]:
    json_match = re.search(rf"{name}\s*:\s*(\[[^\]]*\])", content, re.IGNORECASE)
    if json_match:
        parsed = _json_string_list(json_match.group(1))
        if parsed is not None:
            return parsed

    simple_match = re.search(rf"{name}\s*:\s*([^\n]+)", content, re.IGNORECASE)
    if simple_match:
        value = simple_match.group(1).strip()
        if not value.startswith("["):
            return [s.replace('"', "").replace("'", "").strip() for s in value.split(",") if s.strip(" \"'")]
    return []


def extract_step_modifications(text: str) -> Union[StepModifications, _NotFound]:
    """Extract the first [STEP_MODIFICATIONS] block (modified / added / removed id lists)."""
    match = _STEP_MODS.search(text)
    if not match:
        return NOT_FOUND
    content = match.group(1).strip()
    return StepModifications(
        modified_step_ids=_array_field(content, "modified"),
        added_step_ids=_array_field(content, "added"),
        removed_step_ids=_array_field(content, "removed"),
    )


def extract_removed_steps(text: str) -> Union[List[str], _NotFound]:
    """Collect ids from every [REMOVE_STEPS] block, deduplicated in first-seen order."""
    matches = list(_REMOVE_STEPS.finditer(text))
    if not matches:
        return NOT_FOUND

    removed: List[str] = []
    for match in matches:
        content = match.group(1).strip()
        parsed = _json_string_list(content)
        if parsed is not None:
            removed.extend(parsed)
            continue
        for piece in re.split(r"[\n,]", content):
            item = re.sub(r"^[-*\s]+", "", piece).replace('"', "").replace("'", "").strip()
            if item and not item.startswith("[") and not item.startswith("]"):
                removed.append(item)
    return _dedupe(removed)


def extract_implementation_status(text: str) -> Union[ImplementationStatus, _NotFound]:
    match = _IMPL_STATUS.search(text)
    if not match:
        return NOT_FOUND
    content = match.group(1)
    return ImplementationStatus(
        step_id=_field(content, "step_id"),
        status=_field(content, "status"),
        files_modified=_safe_int(_field(content, "files_modified"), 0),
        tests_status=_field(content, "tests_status"),
        work_type=_field(content, "work_type"),
        progress=_safe_int(_field(content, "progress"), 0),
        message=_field(content, "message"),
    )


def extract_step_completions(text: str) -> Union[List[StepCompletion], _NotFound]:
    """
    Extract step completions in order of preference:
    1. [STEP_COMPLETE id="x"]...[/STEP_COMPLETE]
    2. a bare [STEP_COMPLETE id="x"] without closing tag
    3. prose such as "**Step 2 Complete**" (recorded with formal=False)
    """
    completions: List[StepCompletion] = []
    seen = set()

    for match in _STEP_COMPLETE.finditer(text):
        content = match.group(2).strip()
        status = _field(content, "status").lower()
        passing = _field(content, "tests passing")
        seen.add(match.group(1))
        completions.append(StepCompletion(
            step_id=match.group(1),
            summary=_field(content, "summary") or content,
            status=status or StepStatus.COMPLETED.value,
            commit=_field(content, "commit") or None,
            files_modified=_csv(_field(content, "files modified")),
            tests_added=_csv(_field(content, "tests added")),
            tests_passing=_yes(passing) if passing else True,
        ))

    closed_spans = [m.span() for m in _STEP_COMPLETE.finditer(text)]
    for match in _STEP_COMPLETE_OPEN.finditer(text):
        step_id = match.group(1)
        if step_id in seen or any(start <= match.start() < end for start, end in closed_spans):
            continue
        rest = text[match.end():]
        summary = re.split(r"\n\n|\[STEP_|\[IMPLEMENTATION", rest, maxsplit=1)[0].strip()
        seen.add(step_id)
        completions.append(StepCompletion(step_id=step_id, summary=summary or f"Step {step_id} completed"))

    for match in _STEP_COMPLETE_PROSE.finditer(text):
        step_id = match.group(1)
        if step_id in seen:
            continue
        context = text[match.end():match.end() + 500]
        summary = re.split(r"\n(?:#+\s|\*\*Step|\[STEP)", context, maxsplit=1)[0].strip()
        seen.add(step_id)
        completions.append(StepCompletion(
            step_id=step_id,
            summary=summary or f"Step {step_id} completed",
            formal=False,
        ))

    return completions if completions else NOT_FOUND


def extract_implementation_complete(text: str) -> Union[ImplementationComplete, _NotFound]:
    match = _IMPL_COMPLETE.search(text)
    if not match:
        if "[IMPLEMENTATION_COMPLETE]" in text:
            return ImplementationComplete()
        return NOT_FOUND
    content = match.group(1).strip()
    return ImplementationComplete(
        summary=content,
        all_tests_passing=_yes(_field(content, "all tests passing")),
        tests_added=_csv(_field(content, "tests added")),
    )


def extract_pr_created(text: str) -> Union[PRCreated, _NotFound]:
    match = _PR_CREATED.search(text)
    if not match:
        return NOT_FOUND
    content = match.group(1)
    branch = re.search(r"Branch:\s*(\S+)\s*(?:→|->)\s*(\S+)", content)
    url = re.search(r"URL:\s*(\S+)", content)
    return PRCreated(
        title=_field(content, "title"),
        source_branch=branch.group(1) if branch else "",
        target_branch=branch.group(2) if branch else "",
        url=url.group(1).strip() if url else None,
    )


def extract_ci_status(text: str) -> Union[CIStatus, _NotFound]:
    match = _CI_STATUS.search(text)
    if not match:
        return NOT_FOUND
    return CIStatus(status=match.group(1), checks=match.group(2).strip())


def extract_return_to_planning(text: str) -> Union[str, _NotFound]:
    match = _RETURN_TO_PLANNING.search(text)
    if not match:
        return NOT_FOUND
    content = match.group(1).strip()
    return _field(content, "reason") or content


def extract_plan_file(text: str) -> Union[str, _NotFound]:
    match = _PLAN_FILE.search(text)
    return match.group(1) if match else NOT_FOUND


def has_step_modification_markers(text: str) -> bool:
    return "[STEP_MODIFICATIONS]" in text or "[REMOVE_STEPS]" in text


def has_composable_plan_markers(text: str) -> bool:
    return any(
        tag in text
        for tag in ("[PLAN_META]", "[PLAN_DEPENDENCIES]", "[PLAN_TEST_COVERAGE]", "[PLAN_ACCEPTANCE_MAPPING]")
    )


# =============================================================================
# COMPOSABLE PLAN SECTIONS
# =============================================================================

def extract_plan_meta(text: str) -> Union[PlanMeta, _NotFound]:
    match = re.search(r"\[PLAN_META\]([\s\S]*?)\[/PLAN_META\]", text)
    if not match:
        return NOT_FOUND
    content = match.group(1)
    now = now_utc()
    return PlanMeta(
        version=_field(content, "version") or "1.0.0",
        session_id=_field(content, "sessionId") or _field(content, "session_id"),
        created_at=_field(content, "createdAt") or _field(content, "created_at") or now,
        updated_at=_field(content, "updatedAt") or _field(content, "updated_at") or now,
        is_approved=(_field(content, "isApproved") or _field(content, "is_approved")).lower() == "true",
        review_count=_safe_int(_field(content, "reviewCount") or _field(content, "review_count"), 0),
    )


_STEP_DEP = re.compile(r"(?:^|\n)\s*[-*]?\s*(\S+)\s+(?:->|depends\s+on)\s+([^\s:]+)(?:\s*:\s*(.+))?", re.IGNORECASE)
_EXTERNAL_DEP = re.compile(
    r"[-*]\s*(\S+)\s*\((\w+)\)(?:\s*@\s*([^\s:]+))?\s*:\s*(.+?)(?:\s*\[required\s*by:\s*([^\]]+)\])?$",
    re.IGNORECASE,
)


def extract_plan_dependencies(text: str) -> Union[PlanDependencies, _NotFound]:
    """
    Extract [PLAN_DEPENDENCIES].

    Step lines:      "s2 -> s1: reason" or "s2 depends on s1"
    External lines:  "- name (type) @version: reason [required by: s1, s2]"
                     under an "External:" heading
    """
    match = re.search(r"\[PLAN_DEPENDENCIES\]([\s\S]*?)\[/PLAN_DEPENDENCIES\]", text)
    if not match:
        return NOT_FOUND
    content = match.group(1).strip()

    step_deps = [
        StepDependency(
            step_id=m.group(1),
            depends_on=m.group(2),
            reason=m.group(3).strip() if m.group(3) else None,
        )
        for m in _STEP_DEP.finditer(content)
    ]

    external: List[ExternalDependency] = []
    section = re.search(r"external(?:\s+dependencies)?:([\s\S]*?)(?:$|\n\n)", content, re.IGNORECASE)
    if section:
        for line in section.group(1).split("\n"):
            ext = _EXTERNAL_DEP.search(line.strip())
            if ext:
                external.append(ExternalDependency(
                    name=ext.group(1),
                    type=ext.group(2).lower(),
                    version=ext.group(3),
                    reason=ext.group(4).strip(),
                    required_by=_csv(ext.group(5) or ""),
                ))

    return PlanDependencies(step_dependencies=step_deps, external_dependencies=external)


_COVERAGE_KEYS = {
    "framework", "requiredtesttypes", "required_test_types", "testtypes",
    "globalcoveragetarget", "coverage_target",
}


def extract_plan_test_coverage(text: str) -> Union[PlanTestCoverage, _NotFound]:
    match = re.search(r"\[PLAN_TEST_COVERAGE\]([\s\S]*?)\[/PLAN_TEST_COVERAGE\]", text)
    if not match:
        return NOT_FOUND
    content = match.group(1).strip()

    types_text = (
        _field(content, "requiredTestTypes")
        or _field(content, "required_test_types")
        or _field(content, "testTypes")
    )
    target = _safe_int(_field(content, "globalCoverageTarget") or _field(content, "coverage_target"), None)

    step_coverage = []
    for m in re.finditer(r"(?:^|\n)\s*[-*]\s*(\S+)\s*:\s*(.+)", content):
        if m.group(1).lower() in _COVERAGE_KEYS:
            continue
        step_coverage.append(StepTestCoverage(step_id=m.group(1), required_test_types=_csv(m.group(2))))

    return PlanTestCoverage(
        framework=_field(content, "framework") or "unknown",
        required_test_types=_csv(types_text) if types_text else ["unit"],
        step_coverage=step_coverage,
        global_coverage_target=float(target) if target is not None else None,
    )


_MAPPING = re.compile(
    r"(?:^|\n)\s*[-*]?\s*(\S+)\s*:\s*(?:['\"]([^'\"]+)['\"]|([^->]+))\s*->\s*([^\[\n]+)(?:\s*\[(fully\s*covered|partial)\])?",
    re.IGNORECASE,
)


def extract_plan_acceptance_mapping(text: str) -> Union[PlanAcceptanceMapping, _NotFound]:
    """Extract lines like "AC-1: 'criterion text' -> s1, s2 [fully covered]"."""
    match = re.search(r"\[PLAN_ACCEPTANCE_MAPPING\]([\s\S]*?)\[/PLAN_ACCEPTANCE_MAPPING\]", text)
    if not match:
        return NOT_FOUND

    mappings = []
    for m in _MAPPING.finditer(match.group(1).strip()):
        coverage = (m.group(5) or "").lower()
        mappings.append(AcceptanceCriterionMapping(
            criterion_id=m.group(1),
            criterion_text=(m.group(2) or m.group(3) or "").strip(),
            implementing_step_ids=_csv(m.group(4)),
            is_fully_covered=coverage.replace(" ", "") == "fullycovered",
        ))
    return PlanAcceptanceMapping(mappings=mappings)


def extract_composable_plan(text: str, session_id: str = "") -> Union[ComposablePlan, _NotFound]:
    """
    Assemble a composable plan from PLAN_STEP blocks plus any section blocks.

    Missing sections get empty defaults; validation_status is left all-False
    for the validator to fill in.
    """
    steps = extract_plan_steps(text)
    if not steps:
        return NOT_FOUND

    meta = extract_plan_meta(text)
    dependencies = extract_plan_dependencies(text)
    coverage = extract_plan_test_coverage(text)
    mapping = extract_plan_acceptance_mapping(text)

    return ComposablePlan(
        meta=meta if is_found(meta) else PlanMeta(session_id=session_id),
        steps=steps,
        dependencies=dependencies if is_found(dependencies) else PlanDependencies(),
        test_coverage=coverage if is_found(coverage) else PlanTestCoverage(),
        acceptance_mapping=mapping if is_found(mapping) else PlanAcceptanceMapping(),
    )


# =============================================================================
# PARSER FACADE
# =============================================================================

def _or(value: Any, default: Any) -> Any:
    return value if is_found(value) else default


class MarkerParser:
    """Runs every extractor over one turn's output."""

    def parse(self, text: str) -> ParsedOutput:
        mods = extract_step_modifications(text)
        return ParsedOutput(
            decisions=_or(extract_decisions(text), []),
            plan_steps=_or(extract_plan_steps(text), []),
            step_completions=_or(extract_step_completions(text), []),
            step_modifications=_or(mods, None),
            removed_step_ids=_or(extract_removed_steps(text), []),
            implementation_status=_or(extract_implementation_status(text), None),
            implementation_complete=_or(extract_implementation_complete(text), None),
            pr_created=_or(extract_pr_created(text), None),
            plan_approved=bool(_PLAN_APPROVED.search(text)),
            plan_file_path=_or(extract_plan_file(text), None),
            ci_status=_or(extract_ci_status(text), None),
            ci_failed="[CI_FAILED]" in text,
            pr_approved="[PR_APPROVED]" in text,
            return_to_planning_reason=_or(extract_return_to_planning(text), None),
        )


def parse_output(text: str) -> ParsedOutput:
    """Convenience function for one-off parsing."""
    return MarkerParser().parse(text)
