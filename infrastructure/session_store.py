"""
WAYPOINT SESSION STORE - Session Documents on Disk

One directory per session, addressed by "<projectId>/<featureId>":

    session.json            Session record
    plan.json               Plan (legacy flat or composable document)
    plan/                   Composable plan split into one file per section:
        meta.json  steps/<id>.json  dependencies.json  test-coverage.json
        acceptance-mapping.json  validation.json
    questions.json          Questions awaiting or holding answers
    conversations.json      Turn log
    status.json             Runtime summary

Indexes:
    projects.json           projectId -> project path
    <projectId>/index.json  featureIds of the project

Legacy plan.json documents are upgraded on read and never rewritten in the
legacy shape. A plan document that cannot be decoded reads as None.
"""
import hashlib
import logging
import re
from typing import Any, Dict, List, Optional

import msgspec

from core.ontology import STAGE_STATUS, VALID_TRANSITIONS, Stage, TurnStatus
from core.plan_migration import ensure_composable_plan
from core.schemas import (
    ComposablePlan,
    ConversationEntry,
    ConversationsFile,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanTestCoverage,
    PlanValidationStatus,
    Question,
    QuestionsFile,
    Session,
    StatusRecord,
    UserPreferences,
    now_utc,
)
from infrastructure.storage import CorruptDocumentError, FileStorage, StorageError

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
PLAN_FILE = "plan.json"
PLAN_DIR = "plan"
QUESTIONS_FILE = "questions.json"
CONVERSATIONS_FILE = "conversations.json"
STATUS_FILE = "status.json"
PROJECTS_INDEX = "projects.json"

# Never overwritten by update_session
PROTECTED_FIELDS = frozenset({"id", "project_id", "feature_id", "version", "created_at"})

MAX_FEATURE_ID_LENGTH = 64

_NON_SLUG = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASH_RUNS = re.compile(r"-+")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SessionNotFoundError(StorageError):
    pass


class SessionExistsError(StorageError):
    pass


class StageTransitionError(Exception):
    """Requested stage move is not in the transition table."""

    def __init__(self, current: int, target: int):
        valid = ", ".join(str(int(s)) for s in VALID_TRANSITIONS.get(Stage(current), ()))
        super().__init__(f"Invalid stage transition: {current} -> {target}. Valid targets: {valid}")
        self.current = current
        self.target = target


# =============================================================================
# IDS
# =============================================================================

def get_project_id(project_path: str) -> str:
    """sha256 of the project path, first 32 hex chars."""
    return hashlib.sha256(project_path.encode("utf-8")).hexdigest()[:32]


def get_feature_id(title: str) -> str:
    """
    Filesystem-safe slug of a title.

    Raises:
        ValueError: If the title has no alphanumeric characters
    """
    slug = _NON_SLUG.sub("", title.lower())
    slug = _WHITESPACE.sub("-", slug)
    slug = _DASH_RUNS.sub("-", slug).strip("-")
    if not slug:
        raise ValueError("Title must contain at least one alphanumeric character")
    return slug[:MAX_FEATURE_ID_LENGTH]


def session_dir(project_id: str, feature_id: str) -> str:
    return f"{project_id}/{feature_id}"


# =============================================================================
# STORE
# =============================================================================

class SessionStore:
    """
    Typed access to every per-session document.

    Usage:
        store = SessionStore(FileStorage(data_dir))
        session = await store.create_session(title="Add login", project_path="/repo")
        plan = await store.read_plan(session.project_id, session.feature_id)
    """

    def __init__(self, storage: FileStorage):
        self.storage = storage

    def _path(self, project_id: str, feature_id: str, name: str) -> str:
        return f"{session_dir(project_id, feature_id)}/{name}"

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def create_session(
        self,
        title: str,
        project_path: str,
        feature_description: str = "",
        base_branch: str = "main",
        acceptance_criteria: Optional[List[str]] = None,
        preferences: Optional[UserPreferences] = None,
    ) -> Session:
        """
        Create the session directory with its initial documents.

        Raises:
            ValueError: If title or project path is blank
            SessionExistsError: If a session with the same ids exists
        """
        if not title.strip():
            raise ValueError("Title is required")
        if not project_path.strip():
            raise ValueError("Project path is required")

        project_id = get_project_id(project_path)
        feature_id = get_feature_id(title)
        if await self.storage.exists(self._path(project_id, feature_id, SESSION_FILE)):
            raise SessionExistsError(
                f"Session already exists: {project_id}/{feature_id}. Use a different title."
            )

        session = Session(
            project_id=project_id,
            feature_id=feature_id,
            title=title,
            feature_description=feature_description,
            acceptance_criteria=list(acceptance_criteria or []),
            project_path=project_path,
            base_branch=base_branch,
            feature_branch=f"feature/{feature_id}",
            preferences=preferences,
        )
        await self.storage.ensure_dir(session_dir(project_id, feature_id))
        await self.storage.write_json(self._path(project_id, feature_id, SESSION_FILE), session)
        await self.write_plan(
            project_id, feature_id,
            ComposablePlan(meta=PlanMeta(session_id=session.id)),
        )
        await self.storage.write_json(
            self._path(project_id, feature_id, QUESTIONS_FILE),
            QuestionsFile(session_id=session.id),
        )
        await self.write_status(
            project_id, feature_id,
            StatusRecord(session_id=session.id, last_action="session_created"),
        )
        await self._index_session(project_id, feature_id, project_path)
        logger.info(f"Created session {project_id}/{feature_id}")
        return session

    async def _index_session(self, project_id: str, feature_id: str, project_path: str) -> None:
        async with self.storage.with_lock(PROJECTS_INDEX):
            projects = await self.storage.read_json(PROJECTS_INDEX) or {}
            projects[project_id] = project_path
            await self.storage.write_json(PROJECTS_INDEX, projects)

        index_path = f"{project_id}/index.json"
        async with self.storage.with_lock(index_path):
            features = await self.storage.read_json(index_path) or []
            if feature_id not in features:
                features.append(feature_id)
                await self.storage.write_json(index_path, features)

    async def get_session(self, project_id: str, feature_id: str) -> Optional[Session]:
        return await self.storage.read_struct(self._path(project_id, feature_id, SESSION_FILE), Session)

    async def require_session(self, project_id: str, feature_id: str) -> Session:
        session = await self.get_session(project_id, feature_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {project_id}/{feature_id}")
        return session

    async def update_session(self, project_id: str, feature_id: str, **updates: Any) -> Session:
        """
        Apply field updates to a session. Protected fields are ignored.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        path = self._path(project_id, feature_id, SESSION_FILE)
        async with self.storage.with_lock(path):
            session = await self.require_session(project_id, feature_id)
            safe = {k: v for k, v in updates.items() if k not in PROTECTED_FIELDS}
            dropped = set(updates) - set(safe)
            if dropped:
                logger.warning(f"Ignoring protected session fields: {sorted(dropped)}")
            safe["updated_at"] = now_utc()
            session = msgspec.structs.replace(session, **safe)
            await self.storage.write_json(path, session)
        return session

    async def transition_stage(self, project_id: str, feature_id: str, target: int) -> Session:
        """
        Move a session to another stage and set the matching status.

        Moving backwards counts as a replan.

        Raises:
            StageTransitionError: If the move is not allowed
        """
        session = await self.require_session(project_id, feature_id)
        current = Stage(session.current_stage)
        if target not in [int(s) for s in VALID_TRANSITIONS[current]]:
            raise StageTransitionError(session.current_stage, target)

        replanning = session.replanning_count + (1 if target < session.current_stage else 0)
        logger.info(f"Session {project_id}/{feature_id}: stage {session.current_stage} -> {target}")
        return await self.update_session(
            project_id, feature_id,
            current_stage=int(target),
            status=STAGE_STATUS[Stage(target)].value,
            replanning_count=replanning,
        )

    async def list_projects(self) -> Dict[str, str]:
        return await self.storage.read_json(PROJECTS_INDEX) or {}

    async def list_sessions(self, project_id: str) -> List[Session]:
        features = await self.storage.read_json(f"{project_id}/index.json") or []
        sessions = []
        for feature_id in features:
            session = await self.get_session(project_id, feature_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def list_all_sessions(self) -> List[Session]:
        sessions: List[Session] = []
        for project_id in await self.list_projects():
            sessions.extend(await self.list_sessions(project_id))
        return sessions

    # =========================================================================
    # PLAN
    # =========================================================================

    async def read_plan(self, project_id: str, feature_id: str) -> Optional[ComposablePlan]:
        """
        Read the plan in whichever layout is on disk.

        Returns:
            ComposablePlan (legacy documents upgraded), or None when absent or undecodable
        """
        plan_dir = self._path(project_id, feature_id, PLAN_DIR)
        try:
            if await self.storage.exists(f"{plan_dir}/meta.json"):
                return await self._read_plan_directory(plan_dir)
            data = await self.storage.read_json(self._path(project_id, feature_id, PLAN_FILE))
            if data is None:
                return None
            return ensure_composable_plan(data)
        except (CorruptDocumentError, msgspec.ValidationError) as e:
            logger.warning(f"Unreadable plan for {project_id}/{feature_id}: {e}")
            return None

    async def write_plan(self, project_id: str, feature_id: str, plan: ComposablePlan) -> None:
        """Write the plan back in the layout already in use (plan.json by default)."""
        plan_dir = self._path(project_id, feature_id, PLAN_DIR)
        if await self.storage.exists(f"{plan_dir}/meta.json"):
            await self.write_plan_directory(plan_dir, plan)
            return
        path = self._path(project_id, feature_id, PLAN_FILE)
        async with self.storage.with_lock(path):
            await self.storage.write_json(path, plan)

    async def _read_plan_directory(self, plan_dir: str) -> ComposablePlan:
        meta = await self.storage.read_struct(f"{plan_dir}/meta.json", PlanMeta)
        steps: List[PlanStep] = []
        for name in await self.storage.list(f"{plan_dir}/steps"):
            if not name.endswith(".json"):
                continue
            step = await self.storage.read_struct(f"{plan_dir}/steps/{name}", PlanStep)
            if step is not None:
                steps.append(step)
        steps.sort(key=lambda s: s.order_index)

        dependencies = await self.storage.read_struct(f"{plan_dir}/dependencies.json", PlanDependencies)
        coverage = await self.storage.read_struct(f"{plan_dir}/test-coverage.json", PlanTestCoverage)
        mapping = await self.storage.read_struct(f"{plan_dir}/acceptance-mapping.json", PlanAcceptanceMapping)
        validation = await self.storage.read_struct(f"{plan_dir}/validation.json", PlanValidationStatus)
        return ComposablePlan(
            meta=meta or PlanMeta(),
            steps=steps,
            dependencies=dependencies or PlanDependencies(),
            test_coverage=coverage or PlanTestCoverage(),
            acceptance_mapping=mapping or PlanAcceptanceMapping(),
            validation_status=validation or PlanValidationStatus(),
        )

    async def write_plan_directory(self, plan_dir: str, plan: ComposablePlan) -> None:
        """Write a plan as one file per section. Step files for removed steps are deleted."""
        async with self.storage.with_lock(f"{plan_dir}/meta.json"):
            await self.storage.write_json(f"{plan_dir}/meta.json", plan.meta)
            keep = set()
            for step in plan.steps:
                name = f"{step.id}.json"
                keep.add(name)
                await self.storage.write_json(f"{plan_dir}/steps/{name}", step)
            for name in await self.storage.list(f"{plan_dir}/steps"):
                if name.endswith(".json") and name not in keep:
                    await self.storage.delete(f"{plan_dir}/steps/{name}")
                    await self.storage.delete(f"{plan_dir}/steps/{name}.bak")
            await self.storage.write_json(f"{plan_dir}/dependencies.json", plan.dependencies)
            await self.storage.write_json(f"{plan_dir}/test-coverage.json", plan.test_coverage)
            await self.storage.write_json(f"{plan_dir}/acceptance-mapping.json", plan.acceptance_mapping)
            await self.storage.write_json(f"{plan_dir}/validation.json", plan.validation_status)

    async def approve_plan(self, project_id: str, feature_id: str) -> ComposablePlan:
        """
        Record the user's explicit plan approval.

        Any later plan change clears the flag again.

        Raises:
            SessionNotFoundError: If the session does not exist
            ValueError: If the session has no readable plan
        """
        await self.require_session(project_id, feature_id)
        plan = await self.read_plan(project_id, feature_id)
        if plan is None:
            raise ValueError(f"No plan to approve for {project_id}/{feature_id}")
        plan.meta.is_approved = True
        plan.meta.updated_at = now_utc()
        await self.write_plan(project_id, feature_id, plan)
        logger.info(f"Plan approved for {project_id}/{feature_id}")
        return plan

    # =========================================================================
    # QUESTIONS
    # =========================================================================

    async def read_questions(self, project_id: str, feature_id: str) -> List[Question]:
        doc = await self.storage.read_struct(self._path(project_id, feature_id, QUESTIONS_FILE), QuestionsFile)
        return list(doc.questions) if doc is not None else []

    async def add_questions(self, project_id: str, feature_id: str, questions: List[Question]) -> None:
        if not questions:
            return
        path = self._path(project_id, feature_id, QUESTIONS_FILE)
        async with self.storage.with_lock(path):
            doc = await self.storage.read_struct(path, QuestionsFile) or QuestionsFile()
            doc.questions.extend(questions)
            await self.storage.write_json(path, doc)

    async def answer_question(self, project_id: str, feature_id: str, question_id: str, answer: Any) -> Question:
        """
        Record an answer.

        Raises:
            KeyError: If no question has that id
        """
        path = self._path(project_id, feature_id, QUESTIONS_FILE)
        async with self.storage.with_lock(path):
            doc = await self.storage.read_struct(path, QuestionsFile) or QuestionsFile()
            for i, question in enumerate(doc.questions):
                if question.id == question_id:
                    answered = msgspec.structs.replace(question, answer=answer, answered_at=now_utc())
                    doc.questions[i] = answered
                    await self.storage.write_json(path, doc)
                    return answered
        raise KeyError(question_id)

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    async def read_conversations(self, project_id: str, feature_id: str) -> List[ConversationEntry]:
        doc = await self.storage.read_struct(
            self._path(project_id, feature_id, CONVERSATIONS_FILE), ConversationsFile
        )
        return list(doc.entries) if doc is not None else []

    async def append_conversation(self, project_id: str, feature_id: str, entry: ConversationEntry) -> None:
        path = self._path(project_id, feature_id, CONVERSATIONS_FILE)
        async with self.storage.with_lock(path):
            doc = await self.storage.read_struct(path, ConversationsFile) or ConversationsFile()
            doc.entries.append(entry)
            await self.storage.write_json(path, doc)

    async def update_conversation(
        self, project_id: str, feature_id: str, entry_id: str, **changes: Any
    ) -> Optional[ConversationEntry]:
        path = self._path(project_id, feature_id, CONVERSATIONS_FILE)
        async with self.storage.with_lock(path):
            doc = await self.storage.read_struct(path, ConversationsFile)
            if doc is None:
                return None
            for i, entry in enumerate(doc.entries):
                if entry.id == entry_id:
                    doc.entries[i] = msgspec.structs.replace(entry, **changes)
                    await self.storage.write_json(path, doc)
                    return doc.entries[i]
        return None

    async def mark_interrupted(self, project_id: str, feature_id: str) -> int:
        """
        Turn every STARTED entry into INTERRUPTED.

        Returns:
            Number of entries changed. Zero means nothing was written.
        """
        path = self._path(project_id, feature_id, CONVERSATIONS_FILE)
        async with self.storage.with_lock(path):
            doc = await self.storage.read_struct(path, ConversationsFile)
            if doc is None:
                return 0
            changed = 0
            now = now_utc()
            for i, entry in enumerate(doc.entries):
                if entry.status == TurnStatus.STARTED.value:
                    doc.entries[i] = msgspec.structs.replace(
                        entry, status=TurnStatus.INTERRUPTED.value, finished_at=now
                    )
                    changed += 1
            if changed:
                await self.storage.write_json(path, doc)
                logger.warning(f"Marked {changed} dangling turn(s) interrupted in {project_id}/{feature_id}")
        return changed

    # =========================================================================
    # STATUS
    # =========================================================================

    async def read_status(self, project_id: str, feature_id: str) -> Optional[StatusRecord]:
        return await self.storage.read_struct(self._path(project_id, feature_id, STATUS_FILE), StatusRecord)

    async def write_status(self, project_id: str, feature_id: str, status: StatusRecord) -> None:
        await self.storage.write_json(self._path(project_id, feature_id, STATUS_FILE), status)

    async def update_status(
        self,
        project_id: str,
        feature_id: str,
        status: str,
        last_action: str,
        current_stage: Optional[int] = None,
        current_step_id: Optional[str] = None,
        output_length: Optional[int] = None,
        spawned: bool = False,
    ) -> StatusRecord:
        path = self._path(project_id, feature_id, STATUS_FILE)
        async with self.storage.with_lock(path):
            record = await self.storage.read_struct(path, StatusRecord) or StatusRecord()
            now = now_utc()
            record = msgspec.structs.replace(
                record,
                timestamp=now,
                status=status,
                last_action=last_action,
                last_action_at=now,
                current_stage=current_stage if current_stage is not None else record.current_stage,
                current_step_id=current_step_id if current_step_id is not None else record.current_step_id,
                last_output_length=output_length if output_length is not None else record.last_output_length,
                agent_spawn_count=record.agent_spawn_count + (1 if spawned else 0),
            )
            await self.storage.write_json(path, record)
        return record
