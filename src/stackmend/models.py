"""Core data models for CloudFormation drift remediation."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class DetectionStatus(StrEnum):
    """Status of a drift detection operation."""

    IN_PROGRESS = "DETECTION_IN_PROGRESS"
    COMPLETE = "DETECTION_COMPLETE"
    FAILED = "DETECTION_FAILED"


class StackStatus(StrEnum):
    """Overall stack drift status."""

    DRIFTED = "DRIFTED"
    IN_SYNC = "IN_SYNC"
    NOT_CHECKED = "NOT_CHECKED"
    UNKNOWN = "UNKNOWN"


class ResourceStatus(StrEnum):
    """Individual resource drift status."""

    IN_SYNC = "IN_SYNC"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    NOT_CHECKED = "NOT_CHECKED"
    UNKNOWN = "UNKNOWN"
    UNSUPPORTED = "UNSUPPORTED"


class DiffType(StrEnum):
    """Property difference type."""

    ADD = "ADD"
    REMOVE = "REMOVE"
    NOT_EQUAL = "NOT_EQUAL"


class Action(StrEnum):
    """What to do with a single drifted resource."""

    AUTOFIX = "autofix"
    REIMPORT = "reimport"
    REMOVE = "remove"
    SKIP = "skip"


@dataclass(frozen=True)
class PropertyDiff:
    """A single property difference between expected and actual configuration."""

    property_path: str
    expected_value: str
    actual_value: str
    diff_type: DiffType


@dataclass(frozen=True)
class DriftedResource:
    """A stack resource whose live state no longer matches the template.

    ``physical_id_context`` holds the ordered key/value pairs CloudFormation
    reports for resources whose identity a single string cannot express.
    """

    logical_id: str
    resource_type: str
    physical_id: str
    status: ResourceStatus
    property_diffs: tuple[PropertyDiff, ...] = ()
    actual_properties: dict[str, Any] | None = None
    expected_properties: dict[str, Any] | None = None
    physical_id_context: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Render as plain JSON-compatible data."""
        return {
            "logical_id": self.logical_id,
            "resource_type": self.resource_type,
            "physical_id": self.physical_id,
            "status": self.status.value,
            "property_diffs": [
                {
                    "property_path": pd.property_path,
                    "expected_value": pd.expected_value,
                    "actual_value": pd.actual_value,
                    "diff_type": pd.diff_type.value,
                }
                for pd in self.property_diffs
            ],
            "actual_properties": self.actual_properties,
            "expected_properties": self.expected_properties,
            "physical_id_context": [{"key": k, "value": v} for k, v in self.physical_id_context],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DriftedResource":
        """Rebuild from the output of ``to_dict``.

        Raises KeyError or ValueError on malformed input.
        """
        return cls(
            logical_id=data["logical_id"],
            resource_type=data["resource_type"],
            physical_id=data.get("physical_id") or "",
            status=ResourceStatus(data["status"]),
            property_diffs=tuple(
                PropertyDiff(
                    property_path=pd["property_path"],
                    expected_value=pd.get("expected_value", ""),
                    actual_value=pd.get("actual_value", ""),
                    diff_type=DiffType(pd["diff_type"]),
                )
                for pd in data.get("property_diffs") or []
            ),
            actual_properties=data.get("actual_properties"),
            expected_properties=data.get("expected_properties"),
            physical_id_context=tuple(
                (ctx["key"], ctx["value"]) for ctx in data.get("physical_id_context") or []
            ),
        )


@dataclass(frozen=True)
class DetectionRun:
    """Tracks an in-progress drift detection operation for polling."""

    detection_id: str
    stack_id: str
    stack_name: str
    status: DetectionStatus
    started_at: datetime
    stack_status: StackStatus | None = None
    drifted_resource_count: int | None = None
    status_reason: str | None = None


@dataclass(frozen=True)
class StackInfo:
    """Identity, parameters and outputs of a deployed stack."""

    stack_id: str
    stack_name: str
    parameters: list[dict[str, str]] = field(default_factory=list)
    outputs: list[dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class StackResource:
    """A resource as currently recorded by the stack."""

    logical_id: str
    resource_type: str
    physical_id: str


@dataclass(frozen=True)
class ResourceToImport:
    """A resource to bind back into the stack through an IMPORT change set."""

    resource_type: str
    logical_id: str
    identifier: dict[str, str]

    def to_api(self) -> dict[str, Any]:
        return {
            "ResourceType": self.resource_type,
            "LogicalResourceId": self.logical_id,
            "ResourceIdentifier": dict(self.identifier),
        }


@dataclass(frozen=True)
class ReferenceToken:
    """A Ref (no attribute) or Fn::GetAtt (with attribute) to a logical id."""

    logical_id: str
    attribute: str | None = None

    @property
    def key(self) -> str:
        if self.attribute is None:
            return f"Ref:{self.logical_id}"
        return f"GetAtt:{self.logical_id}:{self.attribute}"

    def to_intrinsic(self) -> dict[str, Any]:
        """The intrinsic function node CloudFormation evaluates to this value."""
        if self.attribute is None:
            return {"Ref": self.logical_id}
        return {"Fn::GetAtt": [self.logical_id, self.attribute]}


@dataclass(frozen=True)
class CascadeRemoval:
    """A resource that must leave the stack because it references a removed one."""

    logical_id: str
    resource_type: str
    depends_on: str


@dataclass(frozen=True)
class ReimportDecision:
    """A DELETED resource to re-import under a user-supplied identity."""

    resource: DriftedResource
    physical_id: str


@dataclass(frozen=True)
class InteractiveDecisions:
    """Per-resource decisions, partitioned into four disjoint buckets."""

    autofix: list[DriftedResource] = field(default_factory=list)
    reimport: list[ReimportDecision] = field(default_factory=list)
    remove: list[DriftedResource] = field(default_factory=list)
    skip: list[DriftedResource] = field(default_factory=list)

    @property
    def actionable_count(self) -> int:
        return len(self.autofix) + len(self.reimport) + len(self.remove)

    def all_resources(self) -> list[DriftedResource]:
        return [
            *self.autofix,
            *(r.resource for r in self.reimport),
            *self.remove,
            *self.skip,
        ]


@dataclass(frozen=True)
class PlanMetadata:
    """Identifies the stack and detection run a plan was built from."""

    stack_name: str
    region: str | None = None
    created_at: str | None = None
    tool_version: str | None = None
    drift_detection_id: str | None = None
    stack_id: str | None = None


@dataclass(frozen=True)
class PlanDecision:
    """One editable line of a remediation plan."""

    logical_id: str
    resource_type: str
    drift_status: ResourceStatus
    physical_id: str
    action: Action
    reimport_physical_id: str | None = None


@dataclass(frozen=True)
class RemediationPlan:
    """A versioned, reviewable record of remediation decisions."""

    version: int
    metadata: PlanMetadata
    decisions: list[PlanDecision]
    resources: dict[str, DriftedResource]


@dataclass(frozen=True)
class RecoveryCheckpoint:
    """Snapshot of a stack taken before the first mutating call."""

    stack_name: str
    stack_id: str
    original_template_body: str
    parameters: list[dict[str, str]]
    drifted_resource_ids: list[str]
    timestamp: str


@dataclass
class RemediationResult:
    """Outcome of a remediation run."""

    stack_name: str
    success: bool = False
    remediated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stage: str | None = None
    failed_stage: str | None = None
    dry_run: bool = False
    planned_imports: list[ResourceToImport] = field(default_factory=list)
    plan_path: str | None = None
    checkpoint_path: str | None = None
