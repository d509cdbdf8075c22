"""
Unit tests for the completion oracle.
"""
from core.completion import (
    get_all_ready_steps,
    get_complexity_counts,
    get_next_ready_step,
    get_step_counts,
    get_unanswered_questions,
    has_new_commit,
    has_unanswered_questions,
    is_implementation_complete,
    is_plan_approved,
)
from core.schemas import ComposablePlan, Plan, PlanMeta, PlanStep, Question


def question(stage="planning", answered=False):
    return Question(
        stage=stage,
        question_type="single_choice",
        category="technical",
        priority=2,
        question_text="?",
        answered_at="2025-01-01T00:00:00+00:00" if answered else None,
    )


def plan_of(*steps, approved=False):
    return ComposablePlan(meta=PlanMeta(is_approved=approved), steps=list(steps))


# =============================================================================
# APPROVAL
# =============================================================================

class TestApproval:

    def test_explicit_flag(self):
        assert is_plan_approved(plan_of(approved=True), [])
        assert is_plan_approved(Plan(is_approved=True), [])

    def test_no_planning_questions_is_not_approved(self):
        assert not is_plan_approved(plan_of(), [])
        assert not is_plan_approved(plan_of(), [question(stage="discovery", answered=True)])
        assert not is_plan_approved(None, [])

    def test_all_planning_questions_answered(self):
        questions = [question(answered=True), question(answered=True), question(stage="discovery")]
        assert is_plan_approved(plan_of(), questions)
        questions.append(question())
        assert not is_plan_approved(plan_of(), questions)

    def test_unanswered_filtered_by_stage(self):
        questions = [question(), question(stage="discovery"), question(answered=True)]
        assert len(get_unanswered_questions(questions)) == 2
        assert len(get_unanswered_questions(questions, "planning")) == 1
        assert not has_unanswered_questions(questions, "review")


# =============================================================================
# IMPLEMENTATION
# =============================================================================

class TestImplementationComplete:

    def test_empty_plan_is_never_complete(self):
        assert not is_implementation_complete(plan_of())
        assert not is_implementation_complete(None)

    def test_completed_and_skipped_count(self):
        assert is_implementation_complete(plan_of(
            PlanStep(id="a", status="completed"),
            PlanStep(id="b", status="skipped"),
        ))

    def test_needs_review_blocks_completion(self):
        assert not is_implementation_complete(plan_of(
            PlanStep(id="a", status="completed"),
            PlanStep(id="b", status="needs_review"),
        ))


# =============================================================================
# READINESS
# =============================================================================

class TestReadiness:

    def test_low_complexity_preferred_over_order(self):
        plan = plan_of(
            PlanStep(id="s1", order_index=0, complexity="high"),
            PlanStep(id="s2", order_index=1, complexity="low"),
            PlanStep(id="s3", order_index=2),
        )
        assert get_next_ready_step(plan).id == "s2"

    def test_unspecified_ranks_as_medium(self):
        plan = plan_of(
            PlanStep(id="s1", order_index=0, complexity="high"),
            PlanStep(id="s2", order_index=1),
            PlanStep(id="s3", order_index=2, complexity="medium"),
        )
        assert get_next_ready_step(plan).id == "s2"

    def test_child_waits_for_parent(self):
        plan = plan_of(
            PlanStep(id="p", order_index=0, status="in_progress"),
            PlanStep(id="c", order_index=1, parent_id="p", complexity="low"),
        )
        assert get_all_ready_steps(plan) == []
        assert get_next_ready_step(plan) is None

    def test_child_ready_once_parent_completed(self):
        plan = plan_of(
            PlanStep(id="p", order_index=0, status="completed"),
            PlanStep(id="c", order_index=1, parent_id="p"),
            PlanStep(id="orphan", order_index=2, parent_id="gone"),
        )
        assert [s.id for s in get_all_ready_steps(plan)] == ["c"]

    def test_counts(self):
        plan = plan_of(
            PlanStep(id="a", status="completed", complexity="low"),
            PlanStep(id="b", status="blocked"),
            PlanStep(id="c", complexity="weird"),
        )
        counts = get_step_counts(plan)
        assert counts["total"] == 3
        assert counts["completed"] == 1
        assert counts["blocked"] == 1
        assert get_complexity_counts(plan) == {"low": 1, "medium": 0, "high": 0, "unspecified": 2}


# =============================================================================
# COMMIT EVIDENCE
# =============================================================================

class TestCommitEvidence:

    def test_moved_head_is_evidence(self):
        assert has_new_commit("aaa", "bbb")

    def test_unchanged_or_unknown_is_not(self):
        assert not has_new_commit("aaa", "aaa")
        assert not has_new_commit(None, "bbb")
        assert not has_new_commit("aaa", None)
