"""
WAYPOINT PLAN INTEGRITY - The Mutation Gate

Every structural edit the agent proposes to the plan passes through here:

    text --(markers)--> StepModifications + REMOVE_STEPS ids
         --(validate)--> errors / is_valid
         --(cascade)---> descendants of removed steps
         --(apply)-----> new step list (only when valid)

Cascade deletion walks a children-by-parent index with a bounded depth and an
explicit ancestry path, so a malformed parentId cycle or an absurdly deep
chain ends one branch with a warning instead of recursing forever.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

import msgspec

from core.markers import (
    StepModifications,
    extract_plan_steps,
    extract_removed_steps,
    extract_step_modifications,
    is_found,
)
from core.ontology import StepStatus
from core.schemas import PlanStep

logger = logging.getLogger(__name__)

MAX_CASCADE_DEPTH = 100


# =============================================================================
# RESULT SCHEMA
# =============================================================================

class StepModificationResult(msgspec.Struct, kw_only=True):
    """Outcome of reading and checking one turn's step modifications."""
    modifications: StepModifications
    all_removed_step_ids: List[str] = msgspec.field(default_factory=list)
    cascade_deleted_step_ids: List[str] = msgspec.field(default_factory=list)
    errors: List[str] = msgspec.field(default_factory=list)
    is_valid: bool = True

    @property
    def has_changes(self) -> bool:
        mods = self.modifications
        return bool(mods.modified_step_ids or mods.added_step_ids or mods.removed_step_ids)


# =============================================================================
# CASCADE DELETION
# =============================================================================

def build_children_index(steps: Iterable[PlanStep]) -> Dict[str, List[PlanStep]]:
    children: Dict[str, List[PlanStep]] = {}
    for step in steps:
        if step.parent_id:
            children.setdefault(step.parent_id, []).append(step)
    return children


def find_cascade_deleted_steps(
    steps_to_remove: List[str],
    all_steps: List[PlanStep],
    max_depth: int = MAX_CASCADE_DEPTH,
) -> List[str]:
    """
    Find every descendant of the removed steps that is not itself directly removed.

    Args:
        steps_to_remove: Ids named for removal
        all_steps: Current plan steps
        max_depth: Traversal bound; deeper branches are cut with a warning

    Returns:
        Cascade-only ids, in discovery order
    """
    children_by_parent = build_children_index(all_steps)
    direct = set(steps_to_remove)
    cascade: Dict[str, None] = {}
    processed: Set[str] = set()
    ancestry: Set[str] = set()

    def visit(step_id: str, depth: int) -> None:
        if depth > max_depth:
            logger.warning(
                f"Cascade deletion depth limit ({max_depth}) exceeded at step '{step_id}'; "
                f"stopping this branch"
            )
            return
        if step_id in ancestry:
            logger.warning(f"Circular parentId reference at step '{step_id}'; stopping this branch")
            return
        if step_id in processed:
            return

        processed.add(step_id)
        ancestry.add(step_id)
        for child in children_by_parent.get(step_id, []):
            if child.id not in direct:
                cascade[child.id] = None
            visit(child.id, depth + 1)
        ancestry.discard(step_id)

    for step_id in steps_to_remove:
        visit(step_id, 0)

    return list(cascade)


# =============================================================================
# VALIDATION
# =============================================================================

def validate_step_modifications(
    modifications: StepModifications,
    existing_steps: List[PlanStep],
    new_step_ids: Optional[List[str]] = None,
) -> List[str]:
    """
    Check a modification set against the current plan.

    Args:
        modifications: Parsed id lists
        existing_steps: Steps currently in the plan
        new_step_ids: Ids introduced by PLAN_STEP blocks in the same turn;
            these may legitimately appear in the added list

    Returns:
        Human-readable errors (empty when valid)
    """
    new_ids = set(new_step_ids or [])
    errors: List[str] = []
    existing_ids = {s.id for s in existing_steps}
    removed = set(modifications.removed_step_ids)

    for step_id in modifications.removed_step_ids:
        if step_id not in existing_ids:
            errors.append(f'Cannot remove step "{step_id}": step does not exist in current plan')

    for step_id in modifications.modified_step_ids:
        if step_id not in existing_ids:
            errors.append(f'Cannot modify step "{step_id}": step does not exist in current plan')

    taken = existing_ids | set(modifications.modified_step_ids)
    seen_added: Set[str] = set()
    for step_id in modifications.added_step_ids:
        if step_id in seen_added:
            errors.append(f'Cannot add step "{step_id}": step ID listed more than once')
        elif step_id in taken and step_id not in new_ids:
            errors.append(f'Cannot add step "{step_id}": step ID already exists')
        seen_added.add(step_id)

    for step_id in modifications.added_step_ids:
        if step_id in removed:
            errors.append(f'Step "{step_id}" cannot be both added and removed')

    for step_id in modifications.modified_step_ids:
        if step_id in removed:
            errors.append(f'Step "{step_id}" cannot be both modified and removed')

    return errors


# =============================================================================
# PROCESSING
# =============================================================================

def process_step_modifications(
    text: str,
    existing_steps: List[PlanStep],
    new_step_ids: Optional[List[str]] = None,
) -> StepModificationResult:
    """
    Read STEP_MODIFICATIONS and REMOVE_STEPS blocks from agent output,
    merge the removal lists, validate, and compute the cascade.

    A turn with neither block yields an empty, valid result.
    """
    parsed = extract_step_modifications(text)
    extra_removals = extract_removed_steps(text)
    extra_removals = extra_removals if is_found(extra_removals) else []

    if not is_found(parsed):
        if not extra_removals:
            return StepModificationResult(modifications=StepModifications())
        parsed = StepModifications()

    modifications = StepModifications(
        modified_step_ids=list(parsed.modified_step_ids),
        added_step_ids=list(parsed.added_step_ids),
        removed_step_ids=list(dict.fromkeys(parsed.removed_step_ids + extra_removals)),
    )

    errors = validate_step_modifications(modifications, existing_steps, new_step_ids)
    cascade = find_cascade_deleted_steps(modifications.removed_step_ids, existing_steps)
    all_removed = list(dict.fromkeys(modifications.removed_step_ids + cascade))

    if errors:
        logger.warning(f"Rejected step modifications: {errors}")

    return StepModificationResult(
        modifications=modifications,
        all_removed_step_ids=all_removed,
        cascade_deleted_step_ids=cascade,
        errors=errors,
        is_valid=not errors,
    )


def detect_modified_steps_from_plan_steps(text: str, existing_ids: Set[str]) -> Tuple[List[str], List[str]]:
    """Split PLAN_STEP ids in text into (ids already in the plan, new ids)."""
    steps = extract_plan_steps(text)
    if not is_found(steps):
        return [], []
    modified = [s.id for s in steps if s.id in existing_ids]
    new = [s.id for s in steps if s.id not in existing_ids]
    return list(dict.fromkeys(modified)), list(dict.fromkeys(new))


def apply_step_modifications(
    steps: List[PlanStep],
    result: StepModificationResult,
    proposed: Optional[List[PlanStep]] = None,
) -> List[PlanStep]:
    """
    Produce the new step list for a validated modification set.

    Removed and cascade-removed steps are dropped. Steps named as modified take
    their new title/description/complexity from the proposed PLAN_STEP blocks and
    go back to pending (their content hash is cleared). Added steps are appended
    in proposal order. Order indexes are renumbered densely.

    Raises:
        ValueError: If the result is not valid
    """
    if not result.is_valid:
        raise ValueError(f"Refusing to apply invalid step modifications: {result.errors}")

    proposed_by_id = {s.id: s for s in (proposed or [])}
    removed = set(result.all_removed_step_ids)
    modified = set(result.modifications.modified_step_ids)

    kept: List[PlanStep] = []
    for step in sorted(steps, key=lambda s: s.order_index):
        if step.id in removed:
            continue
        update = proposed_by_id.get(step.id)
        if step.id in modified and update is not None:
            step = msgspec.structs.replace(
                step,
                title=update.title,
                description=update.description,
                complexity=update.complexity or step.complexity,
                parent_id=update.parent_id,
                status=StepStatus.PENDING.value,
                content_hash=None,
            )
        kept.append(step)

    existing_ids = {s.id for s in kept}
    for step_id in result.modifications.added_step_ids:
        new_step = proposed_by_id.get(step_id)
        if new_step is not None and step_id not in existing_ids:
            kept.append(new_step)
            existing_ids.add(step_id)

    return [msgspec.structs.replace(step, order_index=i) for i, step in enumerate(kept)]


# =============================================================================
# CONTENT FINGERPRINTS
# =============================================================================

def is_step_content_unchanged(step: PlanStep) -> bool:
    """True when a completed step still matches the hash recorded at completion."""
    if not step.content_hash:
        return False
    return step.content_hash == step.compute_hash()


def detect_modified_steps(old_steps: List[PlanStep], new_steps: List[PlanStep]) -> List[str]:
    """Ids present in both lists whose title/description fingerprint changed."""
    old_by_id = {s.id: s for s in old_steps}
    changed = []
    for step in new_steps:
        before = old_by_id.get(step.id)
        if before is not None and before.compute_hash() != step.compute_hash():
            changed.append(step.id)
    return changed
