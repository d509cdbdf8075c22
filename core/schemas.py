"""
WAYPOINT SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure records).

This module defines the records that flow between the agent, the
integrity layer, and the session directory:
- PlanStep / Plan: the legacy flat plan document
- ComposablePlan: plan with meta, dependencies, coverage and acceptance mapping
- Decision / Question: concerns raised by the agent and their persisted form
- Session / StatusRecord / ConversationEntry: per-session bookkeeping
- Serialization helpers for the JSON documents on disk

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
3. CAMEL ON DISK: Python attributes are snake_case, JSON keys are camelCase
4. STRING STATUSES: Enum values are stored, so unknown values survive a round trip
"""
import msgspec
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
import hashlib
import re
import uuid

from core.ontology import (
    StepStatus,
    SessionStatus,
    TurnStatus,
    RiskComfort,
    SpeedVsQuality,
    ScopeFlexibility,
    DetailLevel,
    AutonomyLevel,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Generate a new UUID hex string for records."""
    return uuid.uuid4().hex


_HORIZONTAL_WS = re.compile(r"[ \t]+")
_BLANK_RUNS = re.compile(r"\n+")


def normalize_whitespace(text: str) -> str:
    """Normalize line endings and runs of whitespace so cosmetic edits hash equal."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _BLANK_RUNS.sub("\n", text)
    return text.strip()


def compute_step_hash(title: str, description: str) -> str:
    """
    Compute the content fingerprint of a step.

    Hash = sha256(normalized_title + "|" + normalized_description)[:16]

    Args:
        title: Step title
        description: Step description

    Returns:
        First 16 hex characters of the digest
    """
    hash_input = f"{normalize_whitespace(title)}|{normalize_whitespace(description)}"
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# PLAN RECORDS
# =============================================================================

class PlanStep(msgspec.Struct, kw_only=True, rename="camel"):
    """One unit of planned work. Steps form a forest via parent_id."""
    id: str
    parent_id: Optional[str] = None
    order_index: int = 0
    title: str = ""
    description: str = ""
    status: str = StepStatus.PENDING.value
    complexity: Optional[str] = None
    content_hash: Optional[str] = None
    acceptance_criteria_ids: List[str] = msgspec.field(default_factory=list)
    estimated_files: List[str] = msgspec.field(default_factory=list)
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)

    def compute_hash(self) -> str:
        return compute_step_hash(self.title, self.description)


class Plan(msgspec.Struct, kw_only=True, rename="camel"):
    """Legacy flat plan document (plan.json)."""
    version: str = "1.0"
    plan_version: int = 1
    session_id: str = ""
    is_approved: bool = False
    review_count: int = 0
    created_at: str = msgspec.field(default_factory=now_utc)
    steps: List[PlanStep] = msgspec.field(default_factory=list)


class PlanMeta(msgspec.Struct, kw_only=True, rename="camel"):
    version: str = "1.0"
    session_id: str = ""
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)
    is_approved: bool = False
    review_count: int = 0


class StepDependency(msgspec.Struct, kw_only=True, rename="camel"):
    step_id: str
    depends_on: str
    reason: Optional[str] = None


class ExternalDependency(msgspec.Struct, kw_only=True, rename="camel"):
    name: str
    type: str
    reason: str = ""
    version: Optional[str] = None
    required_by: List[str] = msgspec.field(default_factory=list)


class PlanDependencies(msgspec.Struct, kw_only=True, rename="camel"):
    step_dependencies: List[StepDependency] = msgspec.field(default_factory=list)
    external_dependencies: List[ExternalDependency] = msgspec.field(default_factory=list)


class StepTestCoverage(msgspec.Struct, kw_only=True, rename="camel"):
    step_id: str
    required_test_types: List[str] = msgspec.field(default_factory=list)
    coverage_target: Optional[float] = None
    test_cases: List[str] = msgspec.field(default_factory=list)


class PlanTestCoverage(msgspec.Struct, kw_only=True, rename="camel"):
    framework: str = ""
    required_test_types: List[str] = msgspec.field(default_factory=list)
    step_coverage: List[StepTestCoverage] = msgspec.field(default_factory=list)
    global_coverage_target: Optional[float] = None


class AcceptanceCriterionMapping(msgspec.Struct, kw_only=True, rename="camel"):
    criterion_id: str
    criterion_text: str = ""
    implementing_step_ids: List[str] = msgspec.field(default_factory=list)
    is_fully_covered: bool = False


class PlanAcceptanceMapping(msgspec.Struct, kw_only=True, rename="camel"):
    mappings: List[AcceptanceCriterionMapping] = msgspec.field(default_factory=list)
    updated_at: str = msgspec.field(default_factory=now_utc)


class PlanValidationStatus(msgspec.Struct, kw_only=True, rename="camel"):
    """Per-section validity flags. All False until a validator has run."""
    meta: bool = False
    steps: bool = False
    dependencies: bool = False
    test_coverage: bool = False
    acceptance_mapping: bool = False
    overall: bool = False
    errors: Dict[str, List[str]] = msgspec.field(default_factory=dict)


class ComposablePlan(msgspec.Struct, kw_only=True, rename="camel"):
    """Plan split into five independently validated sections."""
    meta: PlanMeta = msgspec.field(default_factory=PlanMeta)
    steps: List[PlanStep] = msgspec.field(default_factory=list)
    dependencies: PlanDependencies = msgspec.field(default_factory=PlanDependencies)
    test_coverage: PlanTestCoverage = msgspec.field(default_factory=PlanTestCoverage)
    acceptance_mapping: PlanAcceptanceMapping = msgspec.field(default_factory=PlanAcceptanceMapping)
    validation_status: PlanValidationStatus = msgspec.field(default_factory=PlanValidationStatus)


# =============================================================================
# CONCERNS AND QUESTIONS
# =============================================================================

class DecisionOption(msgspec.Struct, kw_only=True, rename="camel"):
    label: str
    recommended: bool = False
    description: Optional[str] = None


class Decision(msgspec.Struct, kw_only=True, rename="camel"):
    """A concern raised by the coding agent, before verification."""
    question_text: str
    priority: int = 3
    category: str = "general"
    options: List[DecisionOption] = msgspec.field(default_factory=list)
    file: Optional[str] = None
    line: Optional[int] = None
    step_id: Optional[str] = None


class QuestionOption(msgspec.Struct, kw_only=True, rename="camel"):
    value: str
    label: str
    recommended: bool = False
    description: Optional[str] = None


class Question(msgspec.Struct, kw_only=True, rename="camel"):
    """A concern that survived verification and awaits a user answer."""
    id: str = msgspec.field(default_factory=generate_id)
    stage: str
    question_type: str
    category: str
    priority: int
    question_text: str
    options: List[QuestionOption] = msgspec.field(default_factory=list)
    answer: Optional[Any] = None
    is_required: bool = False
    file: Optional[str] = None
    line: Optional[int] = None
    step_id: Optional[str] = None
    asked_at: str = msgspec.field(default_factory=now_utc)
    answered_at: Optional[str] = None


class QuestionsFile(msgspec.Struct, kw_only=True, rename="camel"):
    version: str = "1.0"
    session_id: str = ""
    questions: List[Question] = msgspec.field(default_factory=list)


# =============================================================================
# SESSION RECORDS
# =============================================================================

class UserPreferences(msgspec.Struct, kw_only=True, frozen=True, rename="camel"):
    """Filtering profile used when verifying concerns. Defaults are the documented baseline."""
    risk_comfort: RiskComfort = RiskComfort.MEDIUM
    speed_vs_quality: SpeedVsQuality = SpeedVsQuality.BALANCED
    scope_flexibility: ScopeFlexibility = ScopeFlexibility.FLEXIBLE
    detail_level: DetailLevel = DetailLevel.STANDARD
    autonomy_level: AutonomyLevel = AutonomyLevel.COLLABORATIVE


DEFAULT_USER_PREFERENCES = UserPreferences()


class Session(msgspec.Struct, kw_only=True, rename="camel"):
    """One change request moving through the five stages."""
    version: str = "1.0"
    id: str = msgspec.field(default_factory=generate_id)
    project_id: str
    feature_id: str
    title: str
    feature_description: str = ""
    acceptance_criteria: List[str] = msgspec.field(default_factory=list)
    project_path: str
    base_branch: str = "main"
    feature_branch: str = ""
    status: str = SessionStatus.DISCOVERY.value
    current_stage: int = 1
    replanning_count: int = 0
    agent_session_id: Optional[str] = None
    pr_url: Optional[str] = None
    pr_title: Optional[str] = None
    pr_source_branch: Optional[str] = None
    pr_target_branch: Optional[str] = None
    plan_validation_context: Optional[str] = None
    plan_validation_attempts: int = 0
    preferences: Optional[UserPreferences] = None
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)


class StatusRecord(msgspec.Struct, kw_only=True, rename="camel"):
    """Runtime summary written after every turn (status.json)."""
    session_id: str = ""
    timestamp: str = msgspec.field(default_factory=now_utc)
    current_stage: int = 1
    current_step_id: Optional[str] = None
    status: str = "idle"
    agent_spawn_count: int = 0
    last_action: str = ""
    last_action_at: str = msgspec.field(default_factory=now_utc)
    last_output_length: int = 0


class ConversationEntry(msgspec.Struct, kw_only=True, rename="camel"):
    """One agent turn. Written as STARTED before the call and finished after."""
    id: str = msgspec.field(default_factory=generate_id)
    stage: int
    step_id: Optional[str] = None
    prompt: str = ""
    output: str = ""
    agent_session_id: Optional[str] = None
    cost_usd: float = 0.0
    is_error: bool = False
    error: Optional[str] = None
    status: str = TurnStatus.STARTED.value
    started_at: str = msgspec.field(default_factory=now_utc)
    finished_at: Optional[str] = None


class ConversationsFile(msgspec.Struct, kw_only=True, rename="camel"):
    entries: List[ConversationEntry] = msgspec.field(default_factory=list)


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def to_builtins(obj: Any) -> Any:
    """Convert a struct (or nested structs) to JSON-ready builtins."""
    return msgspec.to_builtins(obj)


def from_builtins(data: Any, type_: Any) -> Any:
    """Convert decoded JSON back into a typed struct. Raises msgspec.ValidationError on shape mismatch."""
    return msgspec.convert(data, type=type_)
