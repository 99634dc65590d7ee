"""Drift remediation state machine.

A run never deletes a live resource. Every resource is first set to Retain,
drifted resources are taken out of the stack, re-imported under their current
state, and the original template is finally put back. Each stage has one
handler that performs the work leaving that stage and returns the next one.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from stackmend.aws.client import CloudFormationClient
from stackmend.checkpoint import build_checkpoint, write_checkpoint
from stackmend.config import Settings
from stackmend.detector import DriftDetector, DriftReport
from stackmend.errors import NoActionableResourcesError, StackmendError, UnresolvableError
from stackmend.identifiers import build_reimport_descriptor, build_resources_to_import
from stackmend.interactive import collect_decisions, display_cascade_warning
from stackmend.models import (
    CascadeRemoval,
    DriftedResource,
    InteractiveDecisions,
    PlanMetadata,
    ReimportDecision,
    RemediationPlan,
    RemediationResult,
    ResourceStatus,
    ResourceToImport,
    StackInfo,
    StackResource,
)
from stackmend.plan import build_plan, plan_to_decisions, write_plan
from stackmend.registry import get_required_capabilities, is_importable
from stackmend.template import (
    ImportOverlay,
    ReferenceTable,
    add_resolution_outputs,
    analyze_cascade_removals,
    collect_references,
    parse_resolved_outputs,
    parse_template,
    prepare_for_import,
    restore_deletion_policies,
    set_retention_on_all,
    stringify_template,
    transform_for_removal,
)

logger = logging.getLogger(__name__)

DecisionCollector = Callable[
    [list[DriftedResource], list[DriftedResource], bool], InteractiveDecisions
]
CascadeNotifier = Callable[[list[CascadeRemoval], list[CascadeRemoval]], None]


class Stage(StrEnum):
    """Steps of a remediation run, in order."""

    INIT = "INIT"
    DRIFT_DETECTING = "DRIFT_DETECTING"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    DECIDING = "DECIDING"
    CHECKPOINT_SAVED = "CHECKPOINT_SAVED"
    RETAINED = "RETAINED"
    REFERENCES_RESOLVED = "REFERENCES_RESOLVED"
    REMOVED = "REMOVED"
    IMPORTED = "IMPORTED"
    RESTORED = "RESTORED"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class RunState:
    """Working state threaded through the stage handlers."""

    stack: StackInfo | None = None
    template_body: str = ""
    template: dict[str, Any] = field(default_factory=dict)
    report: DriftReport | None = None
    drifted: list[DriftedResource] = field(default_factory=list)
    decisions: InteractiveDecisions = field(default_factory=InteractiveDecisions)
    imports: list[ResourceToImport] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    first_removal: list[str] = field(default_factory=list)
    permanent_ids: list[str] = field(default_factory=list)
    temporary_imports: list[ResourceToImport] = field(default_factory=list)
    retained_template: dict[str, Any] = field(default_factory=dict)
    references: ReferenceTable = field(default_factory=dict)
    table: ReferenceTable = field(default_factory=dict)


def _ids(resources: list[DriftedResource]) -> list[str]:
    return [resource.logical_id for resource in resources]


class Remediator:
    """Drives one stack through drift remediation."""

    def __init__(
        self,
        client: CloudFormationClient,
        stack_name: str,
        settings: Settings | None = None,
        *,
        dry_run: bool = False,
        auto_accept: bool = False,
        plan: RemediationPlan | None = None,
        export_plan_path: str | Path | None = None,
        tool_version: str | None = None,
        detector: DriftDetector | None = None,
        decide: DecisionCollector = collect_decisions,
        notify_cascades: CascadeNotifier = display_cascade_warning,
    ):
        self._client = client
        self._stack_name = stack_name
        self._settings = settings or Settings()
        self._dry_run = dry_run
        self._auto_accept = auto_accept
        self._plan = plan
        self._export_plan_path = export_plan_path
        self._tool_version = tool_version
        self._detector = detector or DriftDetector(
            client,
            poll_interval=self._settings.detection_poll_interval,
            max_poll_attempts=self._settings.detection_max_attempts,
        )
        self._decide = decide
        self._notify_cascades = notify_cascades
        self._state = RunState()
        self._result = RemediationResult(stack_name=stack_name, dry_run=dry_run)
        self._handlers: dict[Stage, Callable[[], Stage]] = {
            Stage.INIT: self._start,
            Stage.DRIFT_DETECTING: self._detect,
            Stage.DRIFT_DETECTED: self._review_drift,
            Stage.DECIDING: self._decide_actions,
            Stage.CHECKPOINT_SAVED: self._retain,
            Stage.RETAINED: self._resolve_references,
            Stage.REFERENCES_RESOLVED: self._remove,
            Stage.REMOVED: self._import,
            Stage.IMPORTED: self._restore,
            Stage.RESTORED: self._finish,
        }

    def run(self) -> RemediationResult:
        """Run every stage until DONE, or move to FAILED at the first error."""
        stage = Stage.INIT
        while stage not in (Stage.DONE, Stage.FAILED):
            handler = self._handlers[stage]
            try:
                next_stage = handler()
            except (StackmendError, ClientError, BotoCoreError, OSError) as exc:
                logger.error("Remediation of %s failed during %s: %s", self._stack_name, stage, exc)
                self._result.errors.append(str(exc))
                self._result.failed_stage = stage.value
                next_stage = Stage.FAILED
            logger.info("%s: %s -> %s", self._stack_name, stage, next_stage)
            stage = next_stage

        self._result.success = stage == Stage.DONE
        self._result.stage = stage.value
        return self._result

    # Stage handlers

    def _start(self) -> Stage:
        state = self._state
        state.stack = self._client.get_stack_info(self._stack_name)
        state.template_body = self._client.get_template(state.stack.stack_id)
        state.template = parse_template(state.template_body)
        logger.info("Found stack %s (%s)", state.stack.stack_name, state.stack.stack_id)

        if self._plan is None:
            return Stage.DRIFT_DETECTING

        plan_stack_id = self._plan.metadata.stack_id
        if plan_stack_id and plan_stack_id != state.stack.stack_id:
            logger.warning(
                "Plan was built for stack id %s, target stack id is %s",
                plan_stack_id,
                state.stack.stack_id,
            )
        expansion = plan_to_decisions(self._plan)
        state.drifted = expansion.resources
        state.decisions = expansion.decisions
        return Stage.DECIDING

    def _detect(self) -> Stage:
        self._state.report = self._detector.detect(self._stack_name)
        return Stage.DRIFT_DETECTED

    def _review_drift(self) -> Stage:
        report = self._state.report
        if report is None or report.in_sync:
            logger.info("Stack %s is in sync, nothing to remediate", self._stack_name)
            return Stage.DONE
        self._state.drifted = list(report.resources)
        return Stage.DECIDING

    def _decide_actions(self) -> Stage:
        state = self._state
        importable = [r for r in state.drifted if is_importable(r.resource_type)]
        not_importable = [r for r in state.drifted if not is_importable(r.resource_type)]
        for resource in not_importable:
            logger.warning(
                "Skipping %s: %s cannot be imported", resource.logical_id, resource.resource_type
            )

        if self._plan is not None:
            decisions = self._sanitize_plan_decisions(state.decisions)
        else:
            modified = [r for r in importable if r.status == ResourceStatus.MODIFIED]
            deleted = [r for r in importable if r.status == ResourceStatus.DELETED]
            collected = self._decide(modified, deleted, self._auto_accept)
            decisions = InteractiveDecisions(
                autofix=collected.autofix,
                reimport=collected.reimport,
                remove=collected.remove,
                skip=[*collected.skip, *not_importable],
            )

        if self._export_plan_path is not None:
            self._export(decisions)
            return Stage.DONE

        if not importable:
            raise NoActionableResourcesError(
                "All drifted resources are not eligible for import: "
                + ", ".join(_ids(not_importable))
            )

        if decisions.actionable_count == 0:
            logger.info("Every drifted resource was skipped, nothing to do")
            self._result.skipped = _ids(decisions.skip)
            return Stage.DONE

        state.decisions = self._resolve_identifiers(decisions)
        if state.decisions.actionable_count == 0:
            raise NoActionableResourcesError(
                "Could not determine import identifiers for any drifted resource: "
                + ", ".join(state.unresolved)
            )

        resource_types = [
            resource.get("Type", "")
            for resource in (state.template.get("Resources") or {}).values()
        ]
        state.capabilities = list(self._settings.capabilities)
        for capability in get_required_capabilities(resource_types):
            if capability not in state.capabilities:
                state.capabilities.append(capability)

        self._plan_cascades()

        if self._dry_run:
            self._result.planned_imports = [*state.imports, *state.temporary_imports]
            self._result.removed = list(state.permanent_ids)
            self._result.skipped = _ids(state.decisions.skip)
            return Stage.DONE

        touched = [
            *_ids(state.decisions.autofix),
            *(r.resource.logical_id for r in state.decisions.reimport),
            *_ids(state.decisions.remove),
            *state.first_removal,
            *state.permanent_ids,
        ]
        checkpoint = build_checkpoint(
            state.stack, state.template_body, list(dict.fromkeys(touched))
        )
        self._result.checkpoint_path = str(
            write_checkpoint(checkpoint, self._settings.checkpoint_dir)
        )
        return Stage.CHECKPOINT_SAVED

    def _retain(self) -> Stage:
        state = self._state
        result = transform_for_removal(
            set_retention_on_all(state.template), state.first_removal, {}
        )
        state.retained_template = result.template
        logger.info(
            "Setting DeletionPolicy Retain on all resources of %s, removing %s",
            self._stack_name,
            result.removed or "nothing",
        )
        self._update(state.retained_template)
        return Stage.RETAINED

    def _resolve_references(self) -> Stage:
        state = self._state
        second_removal = self._second_removal_ids()
        state.references = collect_references(state.retained_template, second_removal)
        if not state.references:
            return Stage.REFERENCES_RESOLVED

        logger.info("Resolving %d references to drifted resources", len(state.references))
        self._update(add_resolution_outputs(state.retained_template, state.references))
        outputs = self._client.get_stack_info(state.stack.stack_id).outputs
        state.table = parse_resolved_outputs(outputs, state.references)
        missing = [token.key for token in state.references if token not in state.table]
        if missing:
            logger.warning("Could not resolve references: %s", ", ".join(missing))
        return Stage.REFERENCES_RESOLVED

    def _remove(self) -> Stage:
        state = self._state
        second_removal = self._second_removal_ids()
        if not second_removal:
            return Stage.REMOVED

        result = transform_for_removal(state.retained_template, second_removal, state.table)
        logger.info("Removing %s from %s (resources retained)", result.removed, self._stack_name)
        self._update(result.template)
        return Stage.REMOVED

    def _import(self) -> Stage:
        state = self._state
        to_import = [*state.imports, *state.temporary_imports]
        if not to_import:
            logger.info("No resources to import")
            return Stage.IMPORTED

        if state.permanent_ids:
            base = transform_for_removal(state.template, state.permanent_ids, state.table).template
        else:
            base = set_retention_on_all(state.template)

        overlays = [
            ImportOverlay(resource.logical_id, resource.actual_properties)
            for resource in state.decisions.autofix
        ]
        overlays.extend(ImportOverlay(r.resource.logical_id) for r in state.decisions.reimport)
        overlays.extend(ImportOverlay(r.logical_id) for r in state.temporary_imports)
        import_template = prepare_for_import(base, overlays)

        change_set = self._client.create_import_change_set(
            state.stack.stack_id,
            stringify_template(import_template),
            to_import,
            parameters=self._parameters_for(import_template),
            capabilities=state.capabilities,
        )
        logger.info("Executing import change set %s", change_set)
        self._client.execute_change_set(state.stack.stack_id, change_set)
        return Stage.IMPORTED

    def _restore(self) -> Stage:
        state = self._state
        if not state.permanent_ids:
            logger.info("Restoring original template of %s", self._stack_name)
            self._update(state.template_body, state.template)
            return Stage.RESTORED

        final = transform_for_removal(state.template, state.permanent_ids, state.table).template
        logger.info(
            "Restoring template of %s without %s", self._stack_name, state.permanent_ids
        )
        self._update(restore_deletion_policies(final, state.template))
        return Stage.RESTORED

    def _finish(self) -> Stage:
        state = self._state
        permanent = set(state.permanent_ids)
        self._result.remediated = [r.logical_id for r in state.imports]
        self._result.removed = list(state.permanent_ids)
        self._result.skipped = [
            logical_id for logical_id in _ids(state.decisions.skip) if logical_id not in permanent
        ]
        logger.info(
            "Remediation of %s complete. Recovery checkpoint can be removed: %s",
            self._stack_name,
            self._result.checkpoint_path,
        )
        return Stage.DONE

    # Helpers

    def _second_removal_ids(self) -> list[str]:
        decisions = self._state.decisions
        return [
            *_ids(decisions.autofix),
            *(r.logical_id for r in decisions.remove if r.status == ResourceStatus.MODIFIED),
        ]

    def _parameters_for(self, template: dict[str, Any]) -> list[dict[str, str]] | None:
        if template.get("Parameters"):
            return self._state.stack.parameters
        return None

    def _update(self, template: dict[str, Any] | str, parsed: dict[str, Any] | None = None) -> None:
        if isinstance(template, str):
            body = template
            parsed = parsed if parsed is not None else parse_template(template)
        else:
            body = stringify_template(template)
            parsed = template
        self._client.update_stack(
            self._state.stack.stack_id,
            body,
            parameters=self._parameters_for(parsed),
            capabilities=self._state.capabilities,
        )

    def _sanitize_plan_decisions(self, decisions: InteractiveDecisions) -> InteractiveDecisions:
        """Demote plan decisions that cannot apply to a resource to skip."""
        sanitized = InteractiveDecisions(skip=list(decisions.skip))

        def demote(resource: DriftedResource, reason: str) -> None:
            logger.warning("Skipping %s: %s", resource.logical_id, reason)
            sanitized.skip.append(resource)

        for resource in decisions.autofix:
            if not is_importable(resource.resource_type):
                demote(resource, f"{resource.resource_type} cannot be imported")
            elif resource.status != ResourceStatus.MODIFIED:
                demote(resource, "autofix applies to MODIFIED resources only")
            else:
                sanitized.autofix.append(resource)

        for reimport in decisions.reimport:
            if not is_importable(reimport.resource.resource_type):
                demote(reimport.resource, f"{reimport.resource.resource_type} cannot be imported")
            elif reimport.resource.status != ResourceStatus.DELETED:
                demote(reimport.resource, "reimport applies to DELETED resources only")
            else:
                sanitized.reimport.append(reimport)

        for resource in decisions.remove:
            if not is_importable(resource.resource_type):
                demote(resource, f"{resource.resource_type} cannot be imported")
            else:
                sanitized.remove.append(resource)

        return sanitized

    def _resolve_identifiers(self, decisions: InteractiveDecisions) -> InteractiveDecisions:
        """Build import descriptors; resources without a usable identifier become skips."""
        state = self._state
        dynamic = self._client.get_resource_identifiers(state.template_body)

        selection = build_resources_to_import(decisions.autofix, dynamic)
        state.unresolved = _ids(selection.skipped)
        imported_ids = {r.logical_id for r in selection.importable}
        state.imports = list(selection.importable)

        reimports: list[ReimportDecision] = []
        unresolved_reimports: list[DriftedResource] = []
        for reimport in decisions.reimport:
            try:
                descriptor = build_reimport_descriptor(
                    reimport.resource, reimport.physical_id, dynamic
                )
            except UnresolvableError as exc:
                logger.warning("Skipping %s: %s", reimport.resource.logical_id, exc)
                unresolved_reimports.append(reimport.resource)
                state.unresolved.append(reimport.resource.logical_id)
                continue
            reimports.append(reimport)
            state.imports.append(descriptor)

        return InteractiveDecisions(
            autofix=[r for r in decisions.autofix if r.logical_id in imported_ids],
            reimport=reimports,
            remove=list(decisions.remove),
            skip=[*decisions.skip, *selection.skipped, *unresolved_reimports],
        )

    def _plan_cascades(self) -> None:
        """Decide which other resources leave the stack with the drifted ones.

        Resources whose properties reference a permanently removed DELETED
        resource leave for good, including ones with their own autofix or
        reimport decision; those decisions are dropped. Resources referencing
        a re-imported resource leave temporarily and are imported again from
        their recorded physical id, or are removed for good when that id
        cannot be turned into an identifier.
        """
        state = self._state
        decisions = state.decisions
        removal_ids = set(_ids(decisions.remove))
        kept_ids = {
            *_ids(decisions.autofix),
            *(r.resource.logical_id for r in decisions.reimport),
        }
        deleted_removals = [
            r.logical_id for r in decisions.remove if r.status == ResourceStatus.DELETED
        ]
        recorded = {
            r.logical_id: r for r in self._client.get_stack_resources(state.stack.stack_id)
        }

        permanent_roots = set(deleted_removals)
        promoted: list[CascadeRemoval] = []
        while True:
            permanent = [
                c
                for c in analyze_cascade_removals(state.template, permanent_roots)
                if c.logical_id not in removal_ids
            ]
            permanent_ids = permanent_roots | {c.logical_id for c in permanent}
            reimport_roots = [
                r.resource.logical_id
                for r in decisions.reimport
                if r.resource.logical_id not in permanent_ids
            ]
            first_cascades = analyze_cascade_removals(
                state.template, [*reimport_roots, *deleted_removals]
            )
            temporary = [
                c
                for c in first_cascades
                if c.logical_id not in kept_ids | removal_ids | permanent_ids
            ]

            state.temporary_imports = []
            unresolved = []
            for cascade in temporary:
                descriptor = self._temporary_import(cascade, recorded)
                if descriptor is None:
                    unresolved.append(cascade)
                else:
                    state.temporary_imports.append(descriptor)
            if not unresolved:
                break
            promoted.extend(unresolved)
            permanent_roots |= {c.logical_id for c in unresolved}

        demoted = {c.logical_id for c in permanent} & kept_ids
        if demoted:
            logger.warning(
                "%s reference permanently removed resources and will be removed as well",
                ", ".join(sorted(demoted)),
            )
            state.decisions = InteractiveDecisions(
                autofix=[r for r in decisions.autofix if r.logical_id not in demoted],
                reimport=[r for r in decisions.reimport if r.resource.logical_id not in demoted],
                remove=list(decisions.remove),
                skip=list(decisions.skip),
            )
            state.imports = [r for r in state.imports if r.logical_id not in demoted]

        if promoted or permanent or temporary:
            self._notify_cascades([*promoted, *permanent], temporary)

        state.permanent_ids = list(
            dict.fromkeys(
                [
                    *_ids(decisions.remove),
                    *(c.logical_id for c in promoted),
                    *(c.logical_id for c in permanent),
                ]
            )
        )
        state.first_removal = [
            *reimport_roots,
            *deleted_removals,
            *(c.logical_id for c in first_cascades),
        ]

    def _temporary_import(
        self, cascade: CascadeRemoval, recorded: dict[str, StackResource]
    ) -> ResourceToImport | None:
        stack_resource = recorded.get(cascade.logical_id)
        if stack_resource is None or not stack_resource.physical_id:
            logger.warning(
                "No physical id recorded for %s, it will be permanently removed",
                cascade.logical_id,
            )
            return None
        resource = DriftedResource(
            logical_id=cascade.logical_id,
            resource_type=cascade.resource_type,
            physical_id=stack_resource.physical_id,
            status=ResourceStatus.IN_SYNC,
        )
        try:
            return build_reimport_descriptor(resource, stack_resource.physical_id)
        except UnresolvableError as exc:
            logger.warning("%s will be permanently removed: %s", cascade.logical_id, exc)
            return None

    def _export(self, decisions: InteractiveDecisions) -> None:
        state = self._state
        metadata = PlanMetadata(
            stack_name=state.stack.stack_name,
            region=self._client.region,
            created_at=datetime.now(UTC).isoformat(),
            tool_version=self._tool_version,
            drift_detection_id=state.report.run.detection_id if state.report else None,
            stack_id=state.stack.stack_id,
        )
        path = write_plan(build_plan(metadata, decisions), self._export_plan_path)
        logger.info("Plan written to %s", path)
        self._result.plan_path = str(path)
        self._result.skipped = _ids(decisions.skip)
        self._result.removed = _ids(decisions.remove)
        self._result.remediated = [
            *_ids(decisions.autofix),
            *(r.resource.logical_id for r in decisions.reimport),
        ]
