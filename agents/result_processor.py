"""
WAYPOINT RESULT PROCESSOR - One Turn In, One Decision Out

Applies the output of a single coding-agent turn to session state and
tells the supervisor what to do next.

Turn lifecycle:
    begin_turn()        conversation entry written as STARTED
        |
        v
    run the agent       (supervisor, under the session lock)
        |
        v
    process_turn()
        1. concerns     blockers surface immediately; the rest are verified
        2. plan         new PLAN_STEP ids appended, existing ids untouched,
                        validated STEP_MODIFICATIONS applied with cascade
        3. stage 2      completeness check, re-prompt context set or cleared
        4. stage 3      completion reconciled with commits, retry counters
        5. oracle       stage completion from persisted state only
        6. breaker      loop result recorded (implementation turns)
        7. entry        finished as COMPLETED
        |
        v
    advance()           stage transition for a PROCEED outcome

A crash between begin_turn() and the end of process_turn() leaves a
STARTED entry behind; mark_interrupted() turns those into INTERRUPTED.
"""
import logging
from typing import Dict, List, Optional, Tuple

import msgspec

from agents.decision_validator import DecisionValidator, ValidationLog, append_validation_log
from agents.runner import AgentResult
from core.circuit_breaker import CircuitBreaker
from core.completion import (
    get_unanswered_questions,
    is_implementation_complete,
    is_plan_approved,
)
from core.markers import (
    ParsedOutput,
    PRCreated,
    StepCompletion,
    extract_plan_acceptance_mapping,
    extract_plan_dependencies,
    extract_plan_test_coverage,
    has_step_modification_markers,
    is_found,
    parse_output,
)
from core.ontology import (
    STAGE_QUESTION_STAGE,
    CircuitState,
    QuestionCategory,
    QuestionType,
    SessionStatus,
    Stage,
    StepStatus,
    TurnDecision,
    TurnStatus,
)
from core.plan_integrity import (
    StepModificationResult,
    apply_step_modifications,
    process_step_modifications,
)
from core.plan_validator import RepromptContext, build_reprompt_context, check_plan_completeness
from core.schemas import (
    ComposablePlan,
    ConversationEntry,
    Decision,
    DecisionOption,
    PlanMeta,
    PlanStep,
    Question,
    QuestionOption,
    Session,
    now_utc,
)
from infrastructure.git_inspector import GitInspector
from infrastructure.session_store import SessionStore, StageTransitionError, session_dir

logger = logging.getLogger(__name__)

MAX_STEP_RETRIES = 3

_VALID_CATEGORIES = {c.value for c in QuestionCategory}

# step.metadata keys
RETRY_COUNT_KEY = "retryCount"
STARTED_REVISION_KEY = "startedRevision"

__all__ = [
    "SessionResultProcessor",
    "StageTransitionError",
    "TurnOutcome",
    "decision_to_question",
    "infer_question_type",
    "merge_plan_steps",
]


# =============================================================================
# OUTCOME
# =============================================================================

class TurnOutcome(msgspec.Struct, kw_only=True):
    """What one processed turn changed and what should happen next."""
    decision: TurnDecision
    reason: str = ""
    next_stage: Optional[int] = None
    entry_id: Optional[str] = None
    questions: List[Question] = msgspec.field(default_factory=list)
    blockers: List[Question] = msgspec.field(default_factory=list)
    validation_log: Optional[ValidationLog] = None
    added_step_ids: List[str] = msgspec.field(default_factory=list)
    step_modifications: Optional[StepModificationResult] = None
    reprompt: Optional[RepromptContext] = None
    completed_step_ids: List[str] = msgspec.field(default_factory=list)
    retried_step_ids: List[str] = msgspec.field(default_factory=list)
    blocked_step_ids: List[str] = msgspec.field(default_factory=list)
    circuit_state: Optional[CircuitState] = None


# =============================================================================
# QUESTION SHAPING
# =============================================================================

def infer_question_type(options: List[DecisionOption]) -> QuestionType:
    if not options:
        return QuestionType.TEXT
    if len(options) <= 4:
        return QuestionType.SINGLE_CHOICE
    return QuestionType.MULTI_CHOICE


def option_value(label: str) -> str:
    return "_".join(label.lower().split())


def decision_to_question(decision: Decision, stage: Stage, blocker: bool = False) -> Question:
    """Persisted form of a concern: category normalized, priority clamped to 1..3."""
    category = decision.category if decision.category in _VALID_CATEGORIES else QuestionCategory.TECHNICAL.value
    priority = min(3, max(1, decision.priority))
    return Question(
        stage=STAGE_QUESTION_STAGE[stage].value,
        question_type=infer_question_type(decision.options).value,
        category=category,
        priority=priority,
        question_text=decision.question_text,
        options=[
            QuestionOption(
                value=option_value(o.label),
                label=o.label,
                recommended=o.recommended,
                description=o.description,
            )
            for o in decision.options
        ],
        is_required=blocker or decision.priority <= 2,
        file=decision.file,
        line=decision.line,
        step_id=decision.step_id,
    )


def is_blocker(decision: Decision, stage: Stage) -> bool:
    """Blockers mean the agent cannot continue. During implementation every concern is one."""
    return decision.category == QuestionCategory.BLOCKER.value or stage == Stage.IMPLEMENTATION


# =============================================================================
# PLAN MERGE
# =============================================================================

def merge_plan_steps(existing: List[PlanStep], proposed: List[PlanStep]) -> Tuple[List[PlanStep], List[str]]:
    """
    Append proposed steps whose ids are new. Existing steps are never touched.

    Returns:
        (merged steps, ids that were appended)
    """
    steps = sorted(existing, key=lambda s: s.order_index)
    known = {s.id for s in steps}
    next_index = (steps[-1].order_index + 1) if steps else 0
    added: List[str] = []
    for step in proposed:
        if not step.id or step.id in known:
            continue
        steps.append(msgspec.structs.replace(step, order_index=next_index))
        known.add(step.id)
        added.append(step.id)
        next_index += 1
    return steps, added


# =============================================================================
# PROCESSOR
# =============================================================================

class SessionResultProcessor:
    """
    Applies agent turns to a session.

    Usage:
        processor = SessionResultProcessor(store, validator, git)
        entry = await processor.begin_turn(session, prompt)
        result = await runner.run(request)
        outcome = await processor.process_turn(session, entry, result)
        session = await processor.advance(session, outcome)
    """

    def __init__(
        self,
        store: SessionStore,
        validator: Optional[DecisionValidator] = None,
        git: Optional[GitInspector] = None,
        max_step_retries: int = MAX_STEP_RETRIES,
        breaker_thresholds: Optional[Dict[str, int]] = None,
    ):
        self.store = store
        self.validator = validator
        self.git = git
        self.max_step_retries = max_step_retries
        self.breaker_thresholds = breaker_thresholds or {}

    def breaker_for(self, session: Session) -> CircuitBreaker:
        return CircuitBreaker(
            self.store.storage,
            session_dir(session.project_id, session.feature_id),
            **self.breaker_thresholds,
        )

    # =========================================================================
    # TURN BOOKKEEPING
    # =========================================================================

    async def begin_turn(self, session: Session, prompt: str, step_id: Optional[str] = None) -> ConversationEntry:
        entry = ConversationEntry(stage=session.current_stage, step_id=step_id, prompt=prompt)
        await self.store.append_conversation(session.project_id, session.feature_id, entry)
        await self.store.update_status(
            session.project_id, session.feature_id,
            status="running",
            last_action=f"stage{session.current_stage}_started",
            current_stage=session.current_stage,
            current_step_id=step_id,
            spawned=True,
        )
        return entry

    async def mark_interrupted(self, session: Session) -> int:
        return await self.store.mark_interrupted(session.project_id, session.feature_id)

    async def start_step(self, session: Session, step_id: str) -> Optional[PlanStep]:
        """Mark a step in progress and remember HEAD so completion can be corroborated."""
        plan = await self.store.read_plan(session.project_id, session.feature_id)
        if plan is None:
            return None
        revision = await self.git.current_revision() if self.git is not None else None
        for i, step in enumerate(plan.steps):
            if step.id == step_id:
                metadata = dict(step.metadata)
                if revision:
                    metadata[STARTED_REVISION_KEY] = revision
                metadata["startedAt"] = now_utc()
                plan.steps[i] = msgspec.structs.replace(
                    step, status=StepStatus.IN_PROGRESS.value, metadata=metadata
                )
                await self.store.write_plan(session.project_id, session.feature_id, plan)
                return plan.steps[i]
        return None

    # =========================================================================
    # PROCESS
    # =========================================================================

    async def process_turn(
        self,
        session: Session,
        entry: ConversationEntry,
        result: AgentResult,
    ) -> TurnOutcome:
        """
        Apply one turn's output.

        Args:
            session: Session as it was when the turn started
            entry: The STARTED conversation entry from begin_turn()
            result: What the agent returned

        Returns:
            TurnOutcome with the decision for the supervisor
        """
        stage = Stage(session.current_stage)
        text = result.output
        parsed = parse_output(text)
        outcome = TurnOutcome(decision=TurnDecision.CONTINUE, entry_id=entry.id)

        plan = await self.store.read_plan(session.project_id, session.feature_id)
        if plan is None:
            plan = ComposablePlan(meta=PlanMeta(session_id=session.id))

        await self._handle_concerns(session, stage, parsed, plan, outcome)
        plan_changed = self._merge_plan(text, parsed, plan, outcome)

        session_updates: Dict[str, object] = {}
        if result.resume_token:
            session_updates["agent_session_id"] = result.resume_token

        if stage == Stage.PLAN_REVIEW:
            plan.meta.review_count += 1
            self._check_completeness(session, plan, outcome, session_updates)
            plan_changed = True
        elif stage == Stage.IMPLEMENTATION:
            plan_changed = await self._reconcile_steps(parsed, plan, outcome) or plan_changed
        elif stage == Stage.PR_CREATION and parsed.pr_created is not None:
            session_updates.update(self._pr_fields(session, parsed.pr_created))

        if parsed.plan_approved:
            logger.info(f"Agent reported plan approval for {session.feature_id} (not trusted)")
        if parsed.implementation_complete is not None:
            logger.info(f"Agent reported implementation complete for {session.feature_id} (not trusted)")

        if plan_changed:
            plan.meta.updated_at = now_utc()
            await self.store.write_plan(session.project_id, session.feature_id, plan)
        if session_updates:
            session = await self.store.update_session(session.project_id, session.feature_id, **session_updates)

        questions = await self.store.read_questions(session.project_id, session.feature_id)
        self._decide(session, stage, parsed, plan, questions, outcome)

        if stage == Stage.IMPLEMENTATION:
            files_changed = sum(len(c.files_modified) for c in parsed.step_completions)
            if parsed.implementation_status is not None:
                files_changed += parsed.implementation_status.files_modified
            breaker = self.breaker_for(session)
            outcome.circuit_state = await breaker.record_loop_result(files_changed, result.is_error)
            if outcome.circuit_state == CircuitState.OPEN:
                outcome.decision = TurnDecision.HALT
                outcome.reason = "Circuit breaker open: manual reset required"
                outcome.next_stage = None

        await self.store.update_conversation(
            session.project_id, session.feature_id, entry.id,
            output=text,
            agent_session_id=result.resume_token,
            cost_usd=result.cost_usd,
            is_error=result.is_error,
            error=result.error,
            status=TurnStatus.COMPLETED.value,
            finished_at=now_utc(),
        )
        await self.store.update_status(
            session.project_id, session.feature_id,
            status="error" if result.is_error else "idle",
            last_action=f"stage{int(stage)}_{'error' if result.is_error else 'complete'}",
            output_length=len(text),
        )
        logger.info(f"Turn {entry.id} for {session.feature_id} (stage {int(stage)}): {outcome.decision.value}")
        return outcome

    # =========================================================================
    # CONCERNS
    # =========================================================================

    async def _handle_concerns(
        self,
        session: Session,
        stage: Stage,
        parsed: ParsedOutput,
        plan: ComposablePlan,
        outcome: TurnOutcome,
    ) -> None:
        if not parsed.decisions:
            return

        blockers = [d for d in parsed.decisions if is_blocker(d, stage)]
        others = [d for d in parsed.decisions if not is_blocker(d, stage)]

        surviving = others
        if others and self.validator is not None:
            surviving, log = await self.validator.validate_batch(others, list(plan.steps), session.preferences)
            outcome.validation_log = log
            await append_validation_log(
                self.store.storage, session_dir(session.project_id, session.feature_id), log
            )
            if not surviving:
                logger.info(f"All {len(others)} concern(s) filtered as false positives")

        outcome.blockers = [decision_to_question(d, stage, blocker=True) for d in blockers]
        outcome.questions = [decision_to_question(d, stage) for d in surviving]
        await self.store.add_questions(
            session.project_id, session.feature_id, outcome.blockers + outcome.questions
        )

    # =========================================================================
    # PLAN
    # =========================================================================

    def _merge_plan(self, text: str, parsed: ParsedOutput, plan: ComposablePlan, outcome: TurnOutcome) -> bool:
        changed = False
        proposed = parsed.plan_steps
        existing_ids = {s.id for s in plan.steps}
        new_ids = [s.id for s in proposed if s.id not in existing_ids]

        if has_step_modification_markers(text):
            mods = process_step_modifications(text, list(plan.steps), new_ids)
            outcome.step_modifications = mods
            if mods.is_valid and mods.has_changes:
                plan.steps = apply_step_modifications(list(plan.steps), mods, proposed)
                changed = True
                if mods.cascade_deleted_step_ids:
                    logger.info(f"Cascade removed steps: {mods.cascade_deleted_step_ids}")

        plan.steps, added = merge_plan_steps(list(plan.steps), proposed)
        if added:
            outcome.added_step_ids = added
            changed = True

        for extract, attr in (
            (extract_plan_dependencies, "dependencies"),
            (extract_plan_test_coverage, "test_coverage"),
            (extract_plan_acceptance_mapping, "acceptance_mapping"),
        ):
            section = extract(text)
            if is_found(section):
                setattr(plan, attr, section)
                changed = True

        if changed:
            plan.meta.is_approved = False
        return changed

    def _check_completeness(
        self,
        session: Session,
        plan: ComposablePlan,
        outcome: TurnOutcome,
        session_updates: Dict[str, object],
    ) -> None:
        completeness = check_plan_completeness(plan)
        plan.validation_status = completeness.validation.to_status()
        if completeness.complete:
            session_updates["plan_validation_context"] = None
            session_updates["plan_validation_attempts"] = 0
            return
        outcome.reprompt = build_reprompt_context(completeness.validation)
        session_updates["plan_validation_context"] = completeness.missing_context
        session_updates["plan_validation_attempts"] = session.plan_validation_attempts + 1
        logger.info(f"Plan for {session.feature_id} incomplete: {outcome.reprompt.summary}")

    # =========================================================================
    # IMPLEMENTATION
    # =========================================================================

    async def _reconcile_steps(self, parsed: ParsedOutput, plan: ComposablePlan, outcome: TurnOutcome) -> bool:
        by_index = {step.id: i for i, step in enumerate(plan.steps)}
        changed = False
        handled = set()

        for completion in parsed.step_completions:
            index = by_index.get(completion.step_id)
            if index is None:
                logger.warning(f"Completion reported for unknown step {completion.step_id}")
                continue
            if completion.step_id in handled:
                continue
            handled.add(completion.step_id)
            plan.steps[index] = await self._apply_completion(plan.steps[index], completion, outcome)
            changed = True

        status = parsed.implementation_status
        if status is not None and status.step_id in by_index and status.step_id not in handled:
            if status.tests_status.lower() == "failing":
                index = by_index[status.step_id]
                plan.steps[index] = self._record_retry(plan.steps[index], outcome)
                changed = True

        return changed

    async def _apply_completion(self, step: PlanStep, completion: StepCompletion, outcome: TurnOutcome) -> PlanStep:
        if completion.status not in (StepStatus.COMPLETED.value, "complete") or not completion.tests_passing:
            return self._record_retry(step, outcome)

        corroborated = await self._has_commit_evidence(step)
        metadata = dict(step.metadata)
        metadata.pop(RETRY_COUNT_KEY, None)
        metadata.update({
            "completedAt": now_utc(),
            "summary": completion.summary,
            "filesModified": list(completion.files_modified),
            "testsAdded": list(completion.tests_added),
            "formalMarker": completion.formal,
        })
        if completion.commit:
            metadata["commit"] = completion.commit

        if corroborated is False:
            metadata["uncorroborated"] = True
            logger.warning(f"Step {step.id} reported complete without a new commit")
            return msgspec.structs.replace(step, status=StepStatus.NEEDS_REVIEW.value, metadata=metadata)

        outcome.completed_step_ids.append(step.id)
        return msgspec.structs.replace(
            step,
            status=StepStatus.COMPLETED.value,
            content_hash=step.compute_hash(),
            metadata=metadata,
        )

    async def _has_commit_evidence(self, step: PlanStep) -> Optional[bool]:
        """True/False when checkable; None when there is no inspector or start revision."""
        started = step.metadata.get(STARTED_REVISION_KEY)
        if self.git is None or not started:
            return None
        return await self.git.has_new_revision_since(started)

    def _record_retry(self, step: PlanStep, outcome: TurnOutcome) -> PlanStep:
        metadata = dict(step.metadata)
        retries = int(metadata.get(RETRY_COUNT_KEY, 0)) + 1
        metadata[RETRY_COUNT_KEY] = retries
        if retries >= self.max_step_retries:
            logger.warning(f"Step {step.id} blocked after {retries} retries")
            outcome.blocked_step_ids.append(step.id)
            return msgspec.structs.replace(step, status=StepStatus.BLOCKED.value, metadata=metadata)
        outcome.retried_step_ids.append(step.id)
        return msgspec.structs.replace(step, status=StepStatus.PENDING.value, metadata=metadata)

    @staticmethod
    def _pr_fields(session: Session, pr: PRCreated) -> Dict[str, object]:
        """Session fields recording a created PR. The title falls back to the session title."""
        fields: Dict[str, object] = {"pr_title": pr.title or session.title}
        if pr.source_branch:
            fields["pr_source_branch"] = pr.source_branch
        if pr.target_branch:
            fields["pr_target_branch"] = pr.target_branch
        if pr.url:
            fields["pr_url"] = pr.url
        return fields

    # =========================================================================
    # ORACLE
    # =========================================================================

    def _decide(
        self,
        session: Session,
        stage: Stage,
        parsed: ParsedOutput,
        plan: ComposablePlan,
        questions: List[Question],
        outcome: TurnOutcome,
    ) -> None:
        unanswered = get_unanswered_questions(questions, STAGE_QUESTION_STAGE[stage].value)

        if outcome.blockers:
            outcome.decision = TurnDecision.NEED_INPUT
            outcome.reason = f"{len(outcome.blockers)} blocker(s) need an answer"
            return
        if unanswered:
            outcome.decision = TurnDecision.NEED_INPUT
            outcome.reason = f"{len(unanswered)} unanswered question(s)"
            return

        if stage == Stage.DISCOVERY:
            if plan.steps:
                self._proceed(outcome, Stage.PLAN_REVIEW, "Discovery produced a plan")
            else:
                outcome.reason = "No plan steps yet"
        elif stage == Stage.PLAN_REVIEW:
            if outcome.reprompt is not None:
                outcome.decision = TurnDecision.REPROMPT
                outcome.reason = outcome.reprompt.summary
            elif is_plan_approved(plan, questions):
                self._proceed(outcome, Stage.IMPLEMENTATION, "Plan complete and approved")
            else:
                outcome.reason = "Plan awaiting approval"
        elif stage == Stage.IMPLEMENTATION:
            if parsed.return_to_planning_reason:
                self._proceed(outcome, Stage.PLAN_REVIEW, parsed.return_to_planning_reason)
            elif is_implementation_complete(plan):
                self._proceed(outcome, Stage.PR_CREATION, "All steps completed or skipped")
            elif outcome.blocked_step_ids:
                outcome.decision = TurnDecision.NEED_INPUT
                outcome.reason = f"Steps blocked: {', '.join(outcome.blocked_step_ids)}"
            else:
                outcome.reason = "Steps remaining"
        elif stage == Stage.PR_CREATION:
            if session.pr_title or session.pr_url:
                self._proceed(outcome, Stage.PR_REVIEW, f"PR created: {session.pr_url or session.pr_title}")
            else:
                outcome.reason = "No PR yet"
        elif stage == Stage.PR_REVIEW:
            if parsed.return_to_planning_reason or parsed.ci_failed:
                self._proceed(
                    outcome, Stage.PLAN_REVIEW,
                    parsed.return_to_planning_reason or "CI failed",
                )
            elif parsed.pr_approved:
                outcome.decision = TurnDecision.PROCEED
                outcome.reason = "PR approved"
            else:
                outcome.reason = "Review in progress"

    @staticmethod
    def _proceed(outcome: TurnOutcome, next_stage: Stage, reason: str) -> None:
        outcome.decision = TurnDecision.PROCEED
        outcome.next_stage = int(next_stage)
        outcome.reason = reason

    # =========================================================================
    # ADVANCE
    # =========================================================================

    async def advance(self, session: Session, outcome: TurnOutcome) -> Session:
        """
        Apply a PROCEED outcome.

        A PROCEED without a next stage ends the session as completed.

        Raises:
            StageTransitionError: If the next stage is not a legal move
        """
        if outcome.decision != TurnDecision.PROCEED:
            return session
        if outcome.next_stage is None:
            return await self.store.update_session(
                session.project_id, session.feature_id, status=SessionStatus.COMPLETED.value
            )
        return await self.store.transition_stage(session.project_id, session.feature_id, outcome.next_stage)
