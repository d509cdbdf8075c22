"""
Unit tests for plan mutation validation and cascade deletion.
"""
import pytest

from core.markers import StepModifications
from core.plan_integrity import (
    StepModificationResult,
    apply_step_modifications,
    detect_modified_steps,
    detect_modified_steps_from_plan_steps,
    find_cascade_deleted_steps,
    is_step_content_unchanged,
    process_step_modifications,
    validate_step_modifications,
)
from core.schemas import PlanStep


def step(step_id, parent=None, order=0, title=None, status="pending"):
    return PlanStep(
        id=step_id,
        parent_id=parent,
        order_index=order,
        title=title or f"Step {step_id}",
        status=status,
    )


@pytest.fixture
def chain():
    """A -> B -> C plus an unrelated D."""
    return [
        step("A", order=0),
        step("B", parent="A", order=1),
        step("C", parent="B", order=2),
        step("D", order=3),
    ]


# =============================================================================
# CASCADE
# =============================================================================

class TestCascade:

    def test_removing_root_cascades_to_descendants(self, chain):
        assert find_cascade_deleted_steps(["A"], chain) == ["B", "C"]

    def test_directly_removed_steps_are_not_cascade(self, chain):
        assert find_cascade_deleted_steps(["A", "B"], chain) == ["C"]

    def test_leaf_has_no_cascade(self, chain):
        assert find_cascade_deleted_steps(["C"], chain) == []

    def test_parent_cycle_terminates(self):
        steps = [step("X", parent="Y"), step("Y", parent="X")]
        assert find_cascade_deleted_steps(["X"], steps) == ["Y"]

    def test_depth_limit_cuts_branch(self):
        steps = [step("s0")] + [step(f"s{i}", parent=f"s{i - 1}", order=i) for i in range(1, 10)]
        cascade = find_cascade_deleted_steps(["s0"], steps, max_depth=3)
        assert cascade == ["s1", "s2", "s3", "s4"]


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:

    def test_unknown_ids_are_errors(self, chain):
        mods = StepModifications(modified_step_ids=["Z"], removed_step_ids=["Q"])
        errors = validate_step_modifications(mods, chain)
        assert 'Cannot remove step "Q": step does not exist in current plan' in errors
        assert 'Cannot modify step "Z": step does not exist in current plan' in errors

    def test_adding_existing_id_is_error_unless_proposed_this_turn(self, chain):
        mods = StepModifications(added_step_ids=["A"])
        assert validate_step_modifications(mods, chain)
        assert validate_step_modifications(mods, chain, new_step_ids=["A"]) == []

    def test_duplicate_added_id(self, chain):
        mods = StepModifications(added_step_ids=["E", "E"])
        errors = validate_step_modifications(mods, chain, new_step_ids=["E"])
        assert errors == ['Cannot add step "E": step ID listed more than once']

    def test_conflicting_lists(self, chain):
        mods = StepModifications(modified_step_ids=["A"], removed_step_ids=["A"], added_step_ids=["D"])
        errors = validate_step_modifications(mods, chain, new_step_ids=["D"])
        assert 'Step "A" cannot be both modified and removed' in errors

        mods = StepModifications(added_step_ids=["E"], removed_step_ids=["E"])
        errors = validate_step_modifications(mods, chain, new_step_ids=["E"])
        assert 'Step "E" cannot be both added and removed' in errors


# =============================================================================
# PROCESSING
# =============================================================================

class TestProcess:

    def test_no_markers_is_empty_and_valid(self, chain):
        result = process_step_modifications("Nothing to change.", chain)
        assert result.is_valid
        assert not result.has_changes
        assert result.all_removed_step_ids == []

    def test_remove_root_reports_cascade(self, chain):
        text = "[STEP_MODIFICATIONS]\nremoved: [\"A\"]\n[/STEP_MODIFICATIONS]"
        result = process_step_modifications(text, chain)
        assert result.is_valid
        assert result.cascade_deleted_step_ids == ["B", "C"]
        assert result.all_removed_step_ids == ["A", "B", "C"]

    def test_remove_steps_block_merges_with_modifications(self, chain):
        text = (
            '[STEP_MODIFICATIONS]\nremoved: ["D"]\n[/STEP_MODIFICATIONS]\n'
            '[REMOVE_STEPS]["D", "C"][/REMOVE_STEPS]'
        )
        result = process_step_modifications(text, chain)
        assert result.modifications.removed_step_ids == ["D", "C"]
        assert result.is_valid

    def test_remove_steps_alone(self, chain):
        result = process_step_modifications("[REMOVE_STEPS]\n- B\n[/REMOVE_STEPS]", chain)
        assert result.modifications.removed_step_ids == ["B"]
        assert result.cascade_deleted_step_ids == ["C"]

    def test_invalid_modifications_carry_errors(self, chain):
        text = '[REMOVE_STEPS]["missing"][/REMOVE_STEPS]'
        result = process_step_modifications(text, chain)
        assert not result.is_valid
        assert result.errors

    def test_plan_step_ids_split_into_modified_and_new(self):
        text = '[PLAN_STEP id="A"]\nA\n[/PLAN_STEP]\n[PLAN_STEP id="E"]\nE\n[/PLAN_STEP]'
        assert detect_modified_steps_from_plan_steps(text, {"A", "B"}) == (["A"], ["E"])
        assert detect_modified_steps_from_plan_steps("none", {"A"}) == ([], [])


# =============================================================================
# APPLY
# =============================================================================

class TestApply:

    def test_apply_removes_cascade_and_renumbers(self, chain):
        result = StepModificationResult(
            modifications=StepModifications(removed_step_ids=["A"]),
            all_removed_step_ids=["A", "B", "C"],
            cascade_deleted_step_ids=["B", "C"],
        )
        new_steps = apply_step_modifications(chain, result)
        assert [s.id for s in new_steps] == ["D"]
        assert new_steps[0].order_index == 0

    def test_apply_modified_and_added(self, chain):
        completed = [step("A", order=0, status="completed"), step("B", order=1)]
        result = StepModificationResult(
            modifications=StepModifications(modified_step_ids=["A"], added_step_ids=["E"]),
        )
        proposed = [step("A", title="Rewritten A"), step("E", title="New E")]
        new_steps = apply_step_modifications(completed, result, proposed)

        assert [s.id for s in new_steps] == ["A", "B", "E"]
        assert new_steps[0].title == "Rewritten A"
        assert new_steps[0].status == "pending"
        assert [s.order_index for s in new_steps] == [0, 1, 2]

    def test_apply_invalid_raises(self, chain):
        result = StepModificationResult(modifications=StepModifications(), errors=["bad"], is_valid=False)
        with pytest.raises(ValueError):
            apply_step_modifications(chain, result)


# =============================================================================
# FINGERPRINTS
# =============================================================================

class TestFingerprints:

    def test_content_hash_tracks_title_and_description(self):
        original = step("A", title="Build it")
        hashed = PlanStep(id="A", title="Build it", content_hash=original.compute_hash())
        assert is_step_content_unchanged(hashed)
        assert not is_step_content_unchanged(step("A"))

        changed = step("A", title="Build it differently")
        assert detect_modified_steps([original], [changed]) == ["A"]
        assert detect_modified_steps([original], [original]) == []
