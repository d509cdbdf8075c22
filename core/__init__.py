"""
WAYPOINT CORE - Central exports for the integrity layer.

This module provides access to:
- Vocabulary and records (ontology, schemas)
- Marker parsing of agent output (MarkerParser)
- Plan mutation and completeness checks (plan_integrity, plan_validator)
- Deterministic completion queries (completion)
- Loop health (CircuitBreaker)
"""

from core.ontology import CircuitState, Stage, StepStatus, TurnDecision
from core.schemas import ComposablePlan, Decision, PlanStep, Question, Session
from core.markers import NOT_FOUND, MarkerParser, ParsedOutput, is_found
from core.plan_integrity import (
    StepModificationResult,
    find_cascade_deleted_steps,
    process_step_modifications,
)
from core.plan_validator import PlanValidator, check_plan_completeness, validate_plan
from core.completion import (
    get_next_ready_step,
    is_implementation_complete,
    is_plan_approved,
)
from core.circuit_breaker import CircuitBreaker

__all__ = [
    # Vocabulary
    "CircuitState",
    "Stage",
    "StepStatus",
    "TurnDecision",
    # Records
    "ComposablePlan",
    "Decision",
    "PlanStep",
    "Question",
    "Session",
    # Markers
    "NOT_FOUND",
    "MarkerParser",
    "ParsedOutput",
    "is_found",
    # Plan integrity
    "StepModificationResult",
    "find_cascade_deleted_steps",
    "process_step_modifications",
    "PlanValidator",
    "check_plan_completeness",
    "validate_plan",
    # Completion
    "get_next_ready_step",
    "is_implementation_complete",
    "is_plan_approved",
    # Breaker
    "CircuitBreaker",
]
