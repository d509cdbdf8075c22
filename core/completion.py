"""
WAYPOINT COMPLETION ORACLE - State Over Self-Report

The agent says "[IMPLEMENTATION_COMPLETE]" and "[PLAN_APPROVED]" when it
believes it is done. Those markers are logged, never trusted. Stage
advancement is decided here, from persisted state only:

- Plan approved:   explicit approval flag, OR every planning question answered
                   (no planning questions yet means not approved)
- Implementation:  non-empty step list and every step completed or skipped
- Next step:       pending, parent absent or completed; lowest complexity first,
                   then lowest order index
- Step evidence:   a commit that did not exist when the step started
"""
from typing import Dict, List, Optional, Sequence, Union

from core.ontology import (
    COMPLEXITY_ORDER,
    QuestionStage,
    StepComplexity,
    StepStatus,
    TERMINAL_STEP_STATUSES,
)
from core.schemas import ComposablePlan, Plan, PlanStep, Question

AnyPlan = Union[Plan, ComposablePlan]

_DEFAULT_COMPLEXITY_RANK = COMPLEXITY_ORDER[StepComplexity.MEDIUM.value]


def _steps(plan: Optional[AnyPlan]) -> List[PlanStep]:
    if plan is None:
        return []
    return list(plan.steps)


def _approval_flag(plan: Optional[AnyPlan]) -> bool:
    if plan is None:
        return False
    if isinstance(plan, ComposablePlan):
        return plan.meta.is_approved
    return plan.is_approved


# =============================================================================
# APPROVAL
# =============================================================================

def is_plan_approved(plan: Optional[AnyPlan], questions: Sequence[Question]) -> bool:
    if _approval_flag(plan):
        return True
    planning = [q for q in questions if q.stage == QuestionStage.PLANNING.value]
    if not planning:
        return False
    return all(q.answered_at is not None for q in planning)


def get_unanswered_questions(questions: Sequence[Question], stage: Optional[str] = None) -> List[Question]:
    return [
        q for q in questions
        if q.answered_at is None and (stage is None or q.stage == stage)
    ]


def has_unanswered_questions(questions: Sequence[Question], stage: Optional[str] = None) -> bool:
    return bool(get_unanswered_questions(questions, stage))


# =============================================================================
# IMPLEMENTATION
# =============================================================================

def is_implementation_complete(plan: Optional[AnyPlan]) -> bool:
    steps = _steps(plan)
    if not steps:
        return False
    return all(step.status in TERMINAL_STEP_STATUSES for step in steps)


def _is_ready(step: PlanStep, by_id: Dict[str, PlanStep]) -> bool:
    if step.status != StepStatus.PENDING.value:
        return False
    if step.parent_id is None:
        return True
    parent = by_id.get(step.parent_id)
    return parent is not None and parent.status == StepStatus.COMPLETED.value


def get_all_ready_steps(plan: Optional[AnyPlan]) -> List[PlanStep]:
    steps = _steps(plan)
    by_id = {s.id: s for s in steps}
    return [s for s in steps if _is_ready(s, by_id)]


def _readiness_key(step: PlanStep):
    rank = COMPLEXITY_ORDER.get(step.complexity or "", _DEFAULT_COMPLEXITY_RANK)
    return rank, step.order_index


def get_next_ready_step(plan: Optional[AnyPlan]) -> Optional[PlanStep]:
    """
    Pick the step to implement next.

    Ready steps are ordered by declared complexity (low, medium, high;
    unspecified ranks as medium) and then by order index.

    Returns:
        The chosen step, or None when nothing is ready
    """
    ready = get_all_ready_steps(plan)
    if not ready:
        return None
    return min(ready, key=_readiness_key)


def get_step_counts(plan: Optional[AnyPlan]) -> Dict[str, int]:
    steps = _steps(plan)
    return {
        "total": len(steps),
        "completed": sum(1 for s in steps if s.status == StepStatus.COMPLETED.value),
        "skipped": sum(1 for s in steps if s.status == StepStatus.SKIPPED.value),
        "pending": sum(1 for s in steps if s.status == StepStatus.PENDING.value),
        "in_progress": sum(1 for s in steps if s.status == StepStatus.IN_PROGRESS.value),
        "blocked": sum(1 for s in steps if s.status == StepStatus.BLOCKED.value),
        "needs_review": sum(1 for s in steps if s.status == StepStatus.NEEDS_REVIEW.value),
    }


def get_complexity_counts(plan: Optional[AnyPlan]) -> Dict[str, int]:
    counts = {c.value: 0 for c in StepComplexity}
    counts["unspecified"] = 0
    for step in _steps(plan):
        key = step.complexity if step.complexity in counts else "unspecified"
        counts[key] += 1
    return counts


# =============================================================================
# COMMIT CORROBORATION
# =============================================================================

def has_new_commit(since_sha: Optional[str], current_sha: Optional[str]) -> bool:
    """True when HEAD moved since the recorded revision. Unknown revisions are never evidence."""
    if not since_sha or not current_sha:
        return False
    return since_sha != current_sha
