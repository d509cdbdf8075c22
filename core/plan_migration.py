"""
WAYPOINT PLAN MIGRATION - Legacy Plan Upgrade

Sessions created before composable plans stored a flat plan.json:

    {"planVersion": 3, "sessionId": ..., "isApproved": true, "steps": [...]}

On read such a document is upgraded to a ComposablePlan. The upgrade keeps
every step exactly as stored (id, order, status, hash, metadata) and adds
empty dependency / test-coverage / acceptance sections with every validation
flag False, so the plan must pass validation again before it counts as
complete.
"""
from typing import Any, Dict, List, Optional

import msgspec

from core.schemas import (
    ComposablePlan,
    Plan,
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanTestCoverage,
    PlanValidationStatus,
    now_utc,
)

COMPOSABLE_KEYS = ("meta", "steps", "dependencies", "testCoverage", "acceptanceMapping")


def is_legacy_plan(data: Any) -> bool:
    """Legacy plans carry a numeric planVersion and no meta section."""
    if not isinstance(data, dict):
        return False
    version = data.get("planVersion")
    return isinstance(version, int) and not isinstance(version, bool) and "meta" not in data


def is_composable_plan(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return all(key in data for key in COMPOSABLE_KEYS)


def migrate_to_composable_plan(legacy: Plan, session_id: Optional[str] = None) -> ComposablePlan:
    """
    Upgrade a flat plan.

    Args:
        legacy: The decoded legacy plan
        session_id: Fallback when the legacy document has no session id

    Returns:
        ComposablePlan with the same steps and all validation flags False
    """
    now = now_utc()
    meta = PlanMeta(
        version=legacy.version or "1.0",
        session_id=legacy.session_id or (session_id or ""),
        created_at=legacy.created_at or now,
        updated_at=now,
        is_approved=legacy.is_approved,
        review_count=legacy.review_count,
    )
    return ComposablePlan(
        meta=meta,
        steps=list(legacy.steps),
        dependencies=PlanDependencies(),
        test_coverage=PlanTestCoverage(),
        acceptance_mapping=PlanAcceptanceMapping(updated_at=now),
        validation_status=PlanValidationStatus(),
    )


def ensure_composable_plan(data: Dict[str, Any], session_id: Optional[str] = None) -> ComposablePlan:
    """
    Decode a plan document of either shape into a ComposablePlan.

    Raises:
        msgspec.ValidationError: If the document matches neither shape
    """
    if is_composable_plan(data):
        return msgspec.convert(data, type=ComposablePlan)
    return migrate_to_composable_plan(msgspec.convert(data, type=Plan), session_id)


def to_legacy_plan(plan: ComposablePlan, plan_version: int = 1) -> Plan:
    """Flatten a composable plan for consumers that only understand plan.json v1."""
    return Plan(
        version=plan.meta.version,
        plan_version=plan_version,
        session_id=plan.meta.session_id,
        is_approved=plan.meta.is_approved,
        review_count=plan.meta.review_count,
        created_at=plan.meta.created_at,
        steps=list(plan.steps),
    )


def steps_in_order(plan: ComposablePlan) -> List[PlanStep]:
    return sorted(plan.steps, key=lambda s: s.order_index)
