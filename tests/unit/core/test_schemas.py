"""
Unit tests for record schemas and serialization helpers.
"""
import msgspec
import pytest

from core.ontology import STAGE_STATUS, VALID_TRANSITIONS, Stage, SessionStatus
from core.schemas import (
    Question,
    Session,
    UserPreferences,
    compute_step_hash,
    from_builtins,
    normalize_whitespace,
    to_builtins,
)


class TestStepHash:

    def test_cosmetic_whitespace_hashes_equal(self):
        a = compute_step_hash("Add  login", "Line one\r\n\r\nLine two ")
        b = compute_step_hash("Add login", "Line one\nLine two")
        assert a == b
        assert len(a) == 16

    def test_content_change_hashes_differently(self):
        assert compute_step_hash("Add login", "x") != compute_step_hash("Add logout", "x")

    def test_normalize(self):
        assert normalize_whitespace("  a\t\tb\r\n\n c ") == "a b\n c"


class TestSerialization:

    def test_session_round_trip_uses_camel_case(self):
        session = Session(project_id="p", feature_id="f", title="T", project_path="/repo")
        data = to_builtins(session)
        assert data["projectId"] == "p"
        assert data["currentStage"] == 1
        assert data["acceptanceCriteria"] == []
        assert from_builtins(data, Session) == session

    def test_unknown_status_string_survives(self):
        data = to_builtins(Session(project_id="p", feature_id="f", title="T", project_path="/r"))
        data["status"] = "archived"
        assert from_builtins(data, Session).status == "archived"

    def test_shape_mismatch_raises(self):
        with pytest.raises(msgspec.ValidationError):
            from_builtins({"projectId": "p"}, Session)

    def test_question_ids_are_unique(self):
        kwargs = dict(stage="planning", question_type="text", category="scope", priority=1, question_text="?")
        assert Question(**kwargs).id != Question(**kwargs).id

    def test_preferences_default(self):
        prefs = UserPreferences()
        assert to_builtins(prefs)["riskComfort"] == "medium"


class TestStageTables:

    def test_every_stage_has_status_and_transitions(self):
        for stage in Stage:
            assert stage in STAGE_STATUS
            assert stage in VALID_TRANSITIONS
        assert STAGE_STATUS[Stage.PLAN_REVIEW] == SessionStatus.PLANNING

    def test_review_can_only_return_to_planning(self):
        assert VALID_TRANSITIONS[Stage.PR_REVIEW] == (Stage.PLAN_REVIEW,)
