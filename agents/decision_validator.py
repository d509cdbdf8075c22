"""
WAYPOINT VERIFICATION - The Concern Filter

Before a concern raised by the coding agent reaches the user, a second,
read-only agent checks it against the plan and the codebase and returns
one of three verdicts:

- pass:       the concern is real, ask the user
- filter:     already covered by a plan step or existing code, drop it
- repurpose:  the concern is real but badly posed, replace it with
              better questions (zero replacements means filter)

Failure policy: the verifier can only remove noise, never hide a real
problem. A timeout, spawn error, non-zero exit or unreadable answer is a
pass with a synthetic reason.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import msgspec

from agents.prompts import build_decision_validation_prompt, get_verification_profile
from agents.runner import (
    AgentFailure,
    AgentRequest,
    AgentResult,
    AgentRunner,
    UnparsableOutput,
    gather_in_order,
    invoke_with_fallback,
)
from core.ontology import ValidationAction
from core.schemas import Decision, DecisionOption, PlanStep, UserPreferences, now_utc

logger = logging.getLogger(__name__)

VALIDATION_LOG_FILE = "validation-logs.json"

_ACTIONS = {a.value for a in ValidationAction}


# =============================================================================
# RESULT SCHEMAS
# =============================================================================

class ValidationResult(msgspec.Struct, kw_only=True, rename="camel"):
    decision: Decision
    action: str
    reason: str
    repurposed_questions: Optional[List[Decision]] = None
    validated_at: str = msgspec.field(default_factory=now_utc)
    duration_ms: int = 0
    prompt: str = ""
    output: str = ""


class ValidationLog(msgspec.Struct, kw_only=True, rename="camel"):
    """Audit record of one verification batch."""
    timestamp: str = msgspec.field(default_factory=now_utc)
    total_decisions: int = 0
    passed_count: int = 0
    filtered_count: int = 0
    repurposed_count: int = 0
    results: List[ValidationResult] = msgspec.field(default_factory=list)


class ValidationLogFile(msgspec.Struct, kw_only=True):
    entries: List[ValidationLog] = msgspec.field(default_factory=list)


class _Verdict(msgspec.Struct, kw_only=True):
    action: str
    reason: str
    questions: Optional[List[Decision]] = None


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def extract_json_object(text: str, start: int) -> Optional[str]:
    """
    Return the balanced JSON object starting at text[start] == "{".

    Braces inside string literals are ignored, including escaped quotes.
    Returns None when the object never closes.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _find_object_with_key(text: str, key: str) -> Optional[Dict[str, Any]]:
    """First complete JSON object in the text, outermost first, that has the key."""
    start = text.find("{")
    while start >= 0:
        candidate = extract_json_object(text, start)
        if candidate is not None:
            try:
                data = msgspec.json.decode(candidate)
            except msgspec.DecodeError:
                data = None
            if isinstance(data, dict) and key in data:
                return data
        start = text.find("{", start + 1)
    return None


def _to_decision(raw: Dict[str, Any], original: Decision) -> Decision:
    priority = raw.get("priority")
    if not isinstance(priority, int) or isinstance(priority, bool) or priority < 1:
        priority = 2
    options = [
        DecisionOption(
            label=str(o.get("label", "")),
            recommended=bool(o.get("recommended", False)),
            description=o.get("description"),
        )
        for o in (raw.get("options") or [])
        if isinstance(o, dict) and o.get("label")
    ]
    return Decision(
        question_text=str(raw.get("questionText") or ""),
        category=str(raw.get("category") or "technical"),
        priority=priority,
        options=options,
        file=original.file,
        line=original.line,
        step_id=original.step_id,
    )


def parse_validation_response(text: str, decision: Decision) -> _Verdict:
    """
    Read the verifier's verdict from free text.

    Accepts {"action", "reason", "questions"?} and the older
    {"valid", "reason"} shape.

    Raises:
        UnparsableOutput: If no verdict can be read
    """
    data = _find_object_with_key(text, "action")
    if data is not None and isinstance(data.get("action"), str) and data["action"] in _ACTIONS:
        action = data["action"]
        if action != ValidationAction.REPURPOSE.value:
            return _Verdict(action=action, reason=data.get("reason") or "No reason provided")
        questions = [
            _to_decision(q, decision)
            for q in (data.get("questions") or [])
            if isinstance(q, dict)
        ]
        return _Verdict(
            action=action,
            reason=data.get("reason") or "Question repurposed",
            questions=questions or None,
        )

    legacy = _find_object_with_key(text, "valid")
    if legacy is not None and isinstance(legacy.get("valid"), bool):
        action = ValidationAction.PASS if legacy["valid"] else ValidationAction.FILTER
        return _Verdict(action=action.value, reason=legacy.get("reason") or "No reason provided")

    raise UnparsableOutput("Could not parse validation response")


def conservative_reason(kind: AgentFailure, detail: str) -> str:
    if kind == AgentFailure.TIMEOUT:
        return "Validation timed out - passing conservatively"
    if kind == AgentFailure.EXIT_CODE:
        return f"Validation process failed (code {detail}) - passing conservatively"
    if kind == AgentFailure.SPAWN:
        return f"Validation spawn error: {detail} - passing conservatively"
    return f"{detail} - passing conservatively"


# =============================================================================
# VALIDATOR
# =============================================================================

class DecisionValidator:
    """
    Runs the verification agent over concerns.

    Usage:
        validator = DecisionValidator(runner)
        valid, log = await validator.validate_batch(decisions, plan.steps)
    """

    def __init__(
        self,
        runner: AgentRunner,
        timeout_s: Optional[float] = None,
        model: Optional[str] = None,
        allowed_tools: Optional[List[str]] = None,
        cwd: Optional[str] = None,
    ):
        profile = get_verification_profile()
        self.runner = runner
        self.timeout_s = timeout_s if timeout_s is not None else profile["timeout_s"]
        self.model = model if model is not None else profile["model"]
        self.allowed_tools = allowed_tools if allowed_tools is not None else profile["allowed_tools"]
        self.cwd = cwd

    async def validate(
        self,
        decision: Decision,
        steps: List[PlanStep],
        preferences: Optional[UserPreferences] = None,
    ) -> ValidationResult:
        prompt = build_decision_validation_prompt(decision, steps, preferences)
        request = AgentRequest(
            prompt=prompt,
            allowed_tools=list(self.allowed_tools),
            cwd=self.cwd,
            model=self.model,
            timeout_s=self.timeout_s,
        )
        started = time.monotonic()
        output: List[str] = []

        def interpret(result: AgentResult) -> _Verdict:
            output.append(result.output)
            return parse_validation_response(result.output, decision)

        def fallback(kind: AgentFailure, detail: str) -> _Verdict:
            reason = conservative_reason(kind, detail)
            logger.warning(f"Verification of '{decision.question_text[:60]}' degraded: {reason}")
            return _Verdict(action=ValidationAction.PASS.value, reason=reason)

        verdict = await invoke_with_fallback(self.runner, request, interpret, fallback)
        return ValidationResult(
            decision=decision,
            action=verdict.action,
            reason=verdict.reason,
            repurposed_questions=verdict.questions,
            duration_ms=int((time.monotonic() - started) * 1000),
            prompt=prompt,
            output=output[0] if output else "",
        )

    async def validate_batch(
        self,
        decisions: List[Decision],
        steps: List[PlanStep],
        preferences: Optional[UserPreferences] = None,
    ) -> Tuple[List[Decision], ValidationLog]:
        """
        Verify concerns concurrently.

        Returns:
            (surviving concerns: passed ones followed by replacements, audit log
            with results in input order)
        """
        if not decisions:
            return [], ValidationLog()

        results = await gather_in_order(
            [self.validate(d, steps, preferences) for d in decisions]
        )
        return summarize_results(results)


def summarize_results(results: List[ValidationResult]) -> Tuple[List[Decision], ValidationLog]:
    """Fold per-concern results into the surviving concerns and the counts."""
    passed: List[Decision] = []
    replacements: List[Decision] = []
    filtered_count = 0
    repurposed_count = 0

    for result in results:
        if result.action == ValidationAction.PASS.value:
            passed.append(result.decision)
        elif result.action == ValidationAction.REPURPOSE.value and result.repurposed_questions:
            repurposed_count += 1
            replacements.extend(result.repurposed_questions)
        else:
            # Repurpose without replacements counts as filter
            filtered_count += 1

    log = ValidationLog(
        total_decisions=len(results),
        passed_count=len(passed),
        filtered_count=filtered_count,
        repurposed_count=repurposed_count,
        results=list(results),
    )
    logger.info(
        f"Verified {log.total_decisions} concerns: {log.passed_count} passed, "
        f"{log.filtered_count} filtered, {log.repurposed_count} repurposed "
        f"({len(replacements)} new questions)"
    )
    return passed + replacements, log


# =============================================================================
# AUDIT LOG
# =============================================================================

async def append_validation_log(storage, session_dir: str, log: ValidationLog) -> None:
    """Append one batch log to <session_dir>/validation-logs.json under its lock."""
    path = f"{session_dir}/{VALIDATION_LOG_FILE}"
    async with storage.with_lock(path):
        existing = await storage.read_struct(path, ValidationLogFile)
        logs = list(existing.entries) if existing is not None else []
        logs.append(log)
        await storage.write_json(path, msgspec.to_builtins(ValidationLogFile(entries=logs)))


async def read_validation_logs(storage, session_dir: str) -> List[ValidationLog]:
    existing = await storage.read_struct(f"{session_dir}/{VALIDATION_LOG_FILE}", ValidationLogFile)
    return list(existing.entries) if existing is not None else []
