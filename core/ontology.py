"""
WAYPOINT ONTOLOGY - The Dictionary of the System

If schemas.py is the Grammar (how we structure records),
ontology.py is the Dictionary (the words we can use).

This module defines:
- Enums: The vocabulary (Stage, StepStatus, CircuitState, ...)
- Stage tables: status mapping, legal transitions, agent capability sets

Key Principle: Every string that crosses a persistence or agent boundary
is declared here exactly once. Control logic compares enum members, never
ad hoc literals.
"""
from typing import Dict, List, Tuple
from enum import Enum, IntEnum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class Stage(IntEnum):
    """The five fixed stages a session passes through."""
    DISCOVERY = 1          # Explore codebase, raise questions
    PLAN_REVIEW = 2        # Produce and refine the plan
    IMPLEMENTATION = 3     # Execute plan steps
    PR_CREATION = 4        # Submit the change
    PR_REVIEW = 5          # Review the submitted change


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""
    QUEUED = "queued"
    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    PR_CREATION = "pr_creation"
    PR_REVIEW = "pr_review"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a single plan step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    NEEDS_REVIEW = "needs_review"


class StepComplexity(str, Enum):
    """Declared effort for a step."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"          # Normal operation
    HALF_OPEN = "HALF_OPEN"    # Monitoring, one more stall opens
    OPEN = "OPEN"              # Halted, manual reset required


class ValidationAction(str, Enum):
    """Verdict of the verification agent for one concern."""
    PASS = "pass"
    FILTER = "filter"
    REPURPOSE = "repurpose"


class QuestionStage(str, Enum):
    """Which phase a persisted question belongs to."""
    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"


class QuestionCategory(str, Enum):
    SCOPE = "scope"
    APPROACH = "approach"
    TECHNICAL = "technical"
    DESIGN = "design"
    BLOCKER = "blocker"
    CRITICAL = "critical"
    MAJOR = "major"
    SUGGESTION = "suggestion"


class QuestionType(str, Enum):
    """Answer-input shape, inferred from the option count."""
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    TEXT = "text"
    CONFIRMATION = "confirmation"


class TurnStatus(str, Enum):
    """Lifecycle of one recorded agent turn."""
    STARTED = "started"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class TurnDecision(str, Enum):
    """What the supervisor should do after a processed turn."""
    PROCEED = "proceed"          # Stage complete, advance
    CONTINUE = "continue"        # Same stage, run another turn
    NEED_INPUT = "need_input"    # Questions await the user
    REPROMPT = "reprompt"        # Feed validation context back to the agent
    HALT = "halt"                # Circuit open or session locked


class ExternalDependencyType(str, Enum):
    NPM = "npm"
    API = "api"
    SERVICE = "service"
    FILE = "file"
    OTHER = "other"


class PlanSection(str, Enum):
    """The five independently validated sections of a composable plan."""
    META = "meta"
    STEPS = "steps"
    DEPENDENCIES = "dependencies"
    TEST_COVERAGE = "testCoverage"
    ACCEPTANCE_MAPPING = "acceptanceMapping"


# =============================================================================
# STAGE TABLES
# =============================================================================

STAGE_STATUS: Dict[Stage, SessionStatus] = {
    Stage.DISCOVERY: SessionStatus.DISCOVERY,
    Stage.PLAN_REVIEW: SessionStatus.PLANNING,
    Stage.IMPLEMENTATION: SessionStatus.IMPLEMENTING,
    Stage.PR_CREATION: SessionStatus.PR_CREATION,
    Stage.PR_REVIEW: SessionStatus.PR_REVIEW,
}

# Legal stage moves. Stage 5 can only loop back to planning.
VALID_TRANSITIONS: Dict[Stage, Tuple[Stage, ...]] = {
    Stage.DISCOVERY: (Stage.PLAN_REVIEW,),
    Stage.PLAN_REVIEW: (Stage.DISCOVERY, Stage.IMPLEMENTATION),
    Stage.IMPLEMENTATION: (Stage.PLAN_REVIEW, Stage.PR_CREATION),
    Stage.PR_CREATION: (Stage.PR_REVIEW,),
    Stage.PR_REVIEW: (Stage.PLAN_REVIEW,),
}

STAGE_QUESTION_STAGE: Dict[Stage, QuestionStage] = {
    Stage.DISCOVERY: QuestionStage.DISCOVERY,
    Stage.PLAN_REVIEW: QuestionStage.PLANNING,
    Stage.IMPLEMENTATION: QuestionStage.IMPLEMENTATION,
    Stage.PR_CREATION: QuestionStage.REVIEW,
    Stage.PR_REVIEW: QuestionStage.REVIEW,
}

# Defaults when config/agents.yaml does not override a stage
STAGE_TOOLS: Dict[Stage, List[str]] = {
    Stage.DISCOVERY: ["Read", "Glob", "Grep", "Task"],
    Stage.PLAN_REVIEW: ["Read", "Glob", "Grep", "Task"],
    Stage.IMPLEMENTATION: ["Read", "Glob", "Grep", "Task", "Write", "Edit", "Bash"],
    Stage.PR_CREATION: ["Read", "Bash(git:*)", "Bash(gh:*)"],
    Stage.PR_REVIEW: ["Read", "Glob", "Grep", "Task", "Bash(git:diff*)", "Bash(gh:pr*)"],
}

VERIFICATION_TOOLS: List[str] = ["Read", "Glob", "Grep", "WebFetch", "WebSearch"]

TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED.value, StepStatus.SKIPPED.value})

# Readiness preference. Unspecified complexity sorts as medium.
COMPLEXITY_ORDER: Dict[str, int] = {
    StepComplexity.LOW.value: 1,
    StepComplexity.MEDIUM.value: 2,
    StepComplexity.HIGH.value: 3,
}


# =============================================================================
# USER PREFERENCE AXES
# =============================================================================

class RiskComfort(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SpeedVsQuality(str, Enum):
    SPEED = "speed"
    BALANCED = "balanced"
    QUALITY = "quality"


class ScopeFlexibility(str, Enum):
    FIXED = "fixed"
    FLEXIBLE = "flexible"
    OPEN = "open"


class DetailLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    DETAILED = "detailed"


class AutonomyLevel(str, Enum):
    GUIDED = "guided"
    COLLABORATIVE = "collaborative"
    AUTONOMOUS = "autonomous"
