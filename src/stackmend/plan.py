"""Reviewable remediation plan files.

A plan records, per drifted resource, the action to take and a snapshot of the
resource as drift detection saw it. ``--export-plan`` writes one after the
decision step; ``--apply-plan`` replays it without detection or prompts.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stackmend.errors import DanglingReferenceError, InvalidPlanError
from stackmend.models import (
    Action,
    DriftedResource,
    InteractiveDecisions,
    PlanDecision,
    PlanMetadata,
    ReimportDecision,
    RemediationPlan,
    ResourceStatus,
)

PLAN_VERSION = 1

VALID_ACTIONS = [action.value for action in Action]


@dataclass(frozen=True)
class PlanExpansion:
    """A plan re-expanded into the drifted set and its decision buckets."""

    resources: list[DriftedResource] = field(default_factory=list)
    decisions: InteractiveDecisions = field(default_factory=InteractiveDecisions)


def _decision_for(
    resource: DriftedResource, action: Action, reimport_physical_id: str | None = None
) -> PlanDecision:
    return PlanDecision(
        logical_id=resource.logical_id,
        resource_type=resource.resource_type,
        drift_status=resource.status,
        physical_id=resource.physical_id,
        action=action,
        reimport_physical_id=reimport_physical_id,
    )


def build_plan(metadata: PlanMetadata, decisions: InteractiveDecisions) -> RemediationPlan:
    """Flatten decision buckets into a plan, autofix first and skip last."""
    plan_decisions: list[PlanDecision] = []
    resources: dict[str, DriftedResource] = {}

    for resource in decisions.autofix:
        plan_decisions.append(_decision_for(resource, Action.AUTOFIX))
        resources[resource.logical_id] = resource

    for reimport in decisions.reimport:
        plan_decisions.append(
            _decision_for(reimport.resource, Action.REIMPORT, reimport.physical_id)
        )
        resources[reimport.resource.logical_id] = reimport.resource

    for resource in decisions.remove:
        plan_decisions.append(_decision_for(resource, Action.REMOVE))
        resources[resource.logical_id] = resource

    for resource in decisions.skip:
        plan_decisions.append(_decision_for(resource, Action.SKIP))
        resources[resource.logical_id] = resource

    return RemediationPlan(
        version=PLAN_VERSION,
        metadata=metadata,
        decisions=plan_decisions,
        resources=resources,
    )


def serialize_plan(plan: RemediationPlan) -> str:
    """Render a plan as indented JSON."""
    metadata = {
        "stack_name": plan.metadata.stack_name,
        "stack_id": plan.metadata.stack_id,
        "region": plan.metadata.region,
        "created_at": plan.metadata.created_at,
        "tool_version": plan.metadata.tool_version,
        "drift_detection_id": plan.metadata.drift_detection_id,
    }
    decisions = []
    for decision in plan.decisions:
        entry: dict[str, Any] = {
            "logical_id": decision.logical_id,
            "resource_type": decision.resource_type,
            "drift_status": decision.drift_status.value,
            "physical_id": decision.physical_id,
            "action": decision.action.value,
        }
        if decision.reimport_physical_id is not None:
            entry["reimport_physical_id"] = decision.reimport_physical_id
        decisions.append(entry)

    return json.dumps(
        {
            "version": plan.version,
            "metadata": metadata,
            "decisions": decisions,
            "_resources": {
                logical_id: resource.to_dict() for logical_id, resource in plan.resources.items()
            },
        },
        indent=2,
    )


def _parse_decision(raw: Any) -> PlanDecision:
    if not isinstance(raw, dict) or not raw.get("logical_id") or not raw.get("action"):
        raise InvalidPlanError(
            f"Invalid plan decision: missing logical_id or action in {json.dumps(raw)}"
        )

    logical_id = raw["logical_id"]
    action = raw["action"]
    if action not in VALID_ACTIONS:
        raise InvalidPlanError(
            f'Invalid action "{action}" for resource {logical_id}. '
            f"Valid actions: {', '.join(VALID_ACTIONS)}"
        )
    if action == Action.REIMPORT and not raw.get("reimport_physical_id"):
        raise InvalidPlanError(
            f'Resource {logical_id} has action "reimport" but no reimport_physical_id'
        )

    try:
        drift_status = ResourceStatus(raw.get("drift_status") or ResourceStatus.UNKNOWN)
    except ValueError:
        raise InvalidPlanError(
            f'Invalid drift_status "{raw.get("drift_status")}" for resource {logical_id}'
        ) from None

    return PlanDecision(
        logical_id=logical_id,
        resource_type=raw.get("resource_type") or "",
        drift_status=drift_status,
        physical_id=raw.get("physical_id") or "",
        action=Action(action),
        reimport_physical_id=raw.get("reimport_physical_id"),
    )


def _parse_resources(raw: dict[str, Any]) -> dict[str, DriftedResource]:
    resources = {}
    for logical_id, data in raw.items():
        try:
            resources[logical_id] = DriftedResource.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidPlanError(
                f"Invalid plan file: malformed _resources entry {logical_id!r}: {exc}"
            ) from exc
    return resources


def load_plan(text: str, expected_stack_name: str) -> RemediationPlan:
    """Parse and validate plan text for the given stack.

    Raises InvalidPlanError with a message naming the offending field.
    """
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidPlanError("Invalid plan file: not valid JSON") from exc

    if not isinstance(parsed, dict):
        raise InvalidPlanError("Invalid plan file: top level must be an object")

    version = parsed.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version != PLAN_VERSION:
        raise InvalidPlanError(
            f"Unsupported plan version: {version}. This tool supports version {PLAN_VERSION}."
        )

    metadata = parsed.get("metadata")
    if not isinstance(metadata, dict):
        raise InvalidPlanError("Invalid plan file: missing metadata")

    stack_name = metadata.get("stack_name")
    if stack_name != expected_stack_name:
        raise InvalidPlanError(
            f'Plan stack name "{stack_name}" does not match target stack "{expected_stack_name}"'
        )

    raw_decisions = parsed.get("decisions")
    if not isinstance(raw_decisions, list):
        raise InvalidPlanError("Invalid plan file: decisions must be an array")
    decisions = [_parse_decision(raw) for raw in raw_decisions]

    raw_resources = parsed.get("_resources")
    if not isinstance(raw_resources, dict):
        raise InvalidPlanError("Invalid plan file: missing _resources")

    return RemediationPlan(
        version=version,
        metadata=PlanMetadata(
            stack_name=stack_name,
            region=metadata.get("region"),
            created_at=metadata.get("created_at"),
            tool_version=metadata.get("tool_version"),
            drift_detection_id=metadata.get("drift_detection_id"),
            stack_id=metadata.get("stack_id"),
        ),
        decisions=decisions,
        resources=_parse_resources(raw_resources),
    )


def plan_to_decisions(plan: RemediationPlan) -> PlanExpansion:
    """Re-expand a plan into decision buckets.

    Snapshot entries without a decision are treated as skip.
    """
    decisions = InteractiveDecisions()
    seen: set[str] = set()

    for decision in plan.decisions:
        resource = plan.resources.get(decision.logical_id)
        if resource is None:
            raise DanglingReferenceError(decision.logical_id)
        seen.add(decision.logical_id)

        if decision.action == Action.AUTOFIX:
            decisions.autofix.append(resource)
        elif decision.action == Action.REIMPORT:
            decisions.reimport.append(ReimportDecision(resource, decision.reimport_physical_id))
        elif decision.action == Action.REMOVE:
            decisions.remove.append(resource)
        else:
            decisions.skip.append(resource)

    for logical_id, resource in plan.resources.items():
        if logical_id not in seen:
            decisions.skip.append(resource)

    return PlanExpansion(resources=list(plan.resources.values()), decisions=decisions)


def write_plan(plan: RemediationPlan, path: str | Path) -> Path:
    """Write a plan file and return its path."""
    target = Path(path)
    target.write_text(serialize_plan(plan) + "\n", encoding="utf-8")
    return target


def read_plan(path: str | Path, expected_stack_name: str) -> RemediationPlan:
    """Read and validate a plan file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidPlanError(f"Cannot read plan file {path}: {exc}") from exc
    return load_plan(text, expected_stack_name)
