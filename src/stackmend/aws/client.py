"""Thin boto3 wrapper for the CloudFormation calls a remediation run makes."""

import json
import logging
import time
from datetime import UTC, datetime

import boto3
from botocore.exceptions import ClientError

from stackmend.errors import (
    ChangeSetFailedError,
    ChangeSetTimeoutError,
    NotFoundError,
    UpdateFailedError,
    UpdateRolledBackError,
    UpdateTimeoutError,
)
from stackmend.models import (
    DetectionRun,
    DetectionStatus,
    DiffType,
    DriftedResource,
    PropertyDiff,
    ResourceStatus,
    ResourceToImport,
    StackInfo,
    StackResource,
    StackStatus,
)
from stackmend.registry import DEFAULT_CAPABILITIES

logger = logging.getLogger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed"

UPDATE_SUCCESS_STATUSES = {"UPDATE_COMPLETE", "IMPORT_COMPLETE"}
UPDATE_ROLLBACK_STATUSES = {"UPDATE_ROLLBACK_COMPLETE", "IMPORT_ROLLBACK_COMPLETE"}


def _is_missing_stack(error: ClientError) -> bool:
    message = error.response.get("Error", {}).get("Message", "")
    return "does not exist" in message


class CloudFormationClient:
    """Wraps boto3 CloudFormation calls and returns stackmend dataclasses."""

    def __init__(
        self,
        region: str | None = None,
        profile: str | None = None,
        poll_interval: float = 10.0,
        update_timeout: float = 3600.0,
        change_set_timeout: float = 300.0,
    ):
        session = boto3.Session(**({"profile_name": profile} if profile else {}))
        self._client = session.client(
            "cloudformation", **({"region_name": region} if region else {})
        )
        self._poll_interval = poll_interval
        self._update_timeout = update_timeout
        self._change_set_timeout = change_set_timeout

    @property
    def region(self) -> str | None:
        return self._client.meta.region_name

    def _max_attempts(self, timeout: float) -> int:
        if self._poll_interval <= 0:
            return max(1, int(timeout))
        return max(1, int(timeout // self._poll_interval))

    def _sleep(self) -> None:
        if self._poll_interval > 0:
            time.sleep(self._poll_interval)

    def _describe_stack(self, stack_name: str) -> dict:
        try:
            response = self._client.describe_stacks(StackName=stack_name)
        except ClientError as exc:
            if _is_missing_stack(exc):
                raise NotFoundError(f"Stack not found: {stack_name}") from exc
            raise
        stacks = response.get("Stacks") or []
        if not stacks:
            raise NotFoundError(f"Stack not found: {stack_name}")
        return stacks[0]

    def get_stack_info(self, stack_name: str) -> StackInfo:
        """Fetch a stack's id, parameters and outputs."""
        stack = self._describe_stack(stack_name)
        return StackInfo(
            stack_id=stack["StackId"],
            stack_name=stack["StackName"],
            parameters=[
                {"ParameterKey": p["ParameterKey"], "ParameterValue": p.get("ParameterValue", "")}
                for p in stack.get("Parameters", [])
            ],
            outputs=[
                {"OutputKey": o["OutputKey"], "OutputValue": o.get("OutputValue", "")}
                for o in stack.get("Outputs", [])
            ],
        )

    def get_template(self, stack_name: str, processed: bool = True) -> str:
        """Fetch the deployed template text, after transforms unless ``processed`` is False."""
        try:
            response = self._client.get_template(
                StackName=stack_name,
                TemplateStage="Processed" if processed else "Original",
            )
        except ClientError as exc:
            if _is_missing_stack(exc):
                raise NotFoundError(f"Stack not found: {stack_name}") from exc
            raise

        body = response.get("TemplateBody")
        if not body:
            raise NotFoundError(f"Could not retrieve template for stack: {stack_name}")
        # JSON templates come back already decoded
        if isinstance(body, dict):
            return json.dumps(body)
        return body

    def get_stack_resources(self, stack_name: str) -> list[StackResource]:
        """List the resources the stack currently records."""
        paginator = self._client.get_paginator("list_stack_resources")
        resources = []
        for page in paginator.paginate(StackName=stack_name):
            for summary in page["StackResourceSummaries"]:
                resources.append(
                    StackResource(
                        logical_id=summary["LogicalResourceId"],
                        resource_type=summary["ResourceType"],
                        physical_id=summary.get("PhysicalResourceId", ""),
                    )
                )
        return resources

    def detect_drift(self, stack_name: str) -> DetectionRun:
        """Trigger drift detection for a stack. Returns a DetectionRun for polling."""
        response = self._client.detect_stack_drift(StackName=stack_name)
        detection_id = response["StackDriftDetectionId"]

        stack = self._describe_stack(stack_name)

        return DetectionRun(
            detection_id=detection_id,
            stack_id=stack["StackId"],
            stack_name=stack_name,
            status=DetectionStatus.IN_PROGRESS,
            started_at=datetime.now(UTC),
        )

    def poll_detection(self, detection_id: str, stack_name: str) -> DetectionRun:
        """Check status of a drift detection operation."""
        resp = self._client.describe_stack_drift_detection_status(
            StackDriftDetectionId=detection_id
        )

        status = DetectionStatus(resp["DetectionStatus"])
        stack_status = None
        drifted_count = None
        status_reason = None

        if status == DetectionStatus.COMPLETE:
            stack_status = StackStatus(resp["StackDriftStatus"])
            drifted_count = resp.get("DriftedStackResourceCount", 0)
        elif status == DetectionStatus.FAILED:
            status_reason = resp.get("DetectionStatusReason")

        return DetectionRun(
            detection_id=detection_id,
            stack_id=resp["StackId"],
            stack_name=stack_name,
            status=status,
            started_at=resp["Timestamp"],
            stack_status=stack_status,
            drifted_resource_count=drifted_count,
            status_reason=status_reason,
        )

    def get_drifted_resources(self, stack_name: str) -> list[DriftedResource]:
        """Fetch MODIFIED and DELETED resources with their observed properties."""
        results = []
        next_token = None

        while True:
            kwargs: dict = {
                "StackName": stack_name,
                "StackResourceDriftStatusFilters": ["MODIFIED", "DELETED"],
                "MaxResults": 100,
            }
            if next_token:
                kwargs["NextToken"] = next_token

            resp = self._client.describe_stack_resource_drifts(**kwargs)

            for resource in resp["StackResourceDrifts"]:
                property_diffs = tuple(
                    PropertyDiff(
                        property_path=pd.get("PropertyPath", ""),
                        expected_value=pd.get("ExpectedValue", ""),
                        actual_value=pd.get("ActualValue", ""),
                        diff_type=DiffType(pd["DifferenceType"]),
                    )
                    for pd in resource.get("PropertyDifferences", [])
                )
                actual = resource.get("ActualProperties")
                expected = resource.get("ExpectedProperties")

                results.append(
                    DriftedResource(
                        logical_id=resource["LogicalResourceId"],
                        resource_type=resource["ResourceType"],
                        physical_id=resource.get("PhysicalResourceId", ""),
                        status=ResourceStatus(resource["StackResourceDriftStatus"]),
                        property_diffs=property_diffs,
                        actual_properties=json.loads(actual) if actual else None,
                        expected_properties=json.loads(expected) if expected else None,
                        physical_id_context=tuple(
                            (ctx["Key"], ctx["Value"])
                            for ctx in resource.get("PhysicalResourceIdContext", [])
                        ),
                    )
                )

            next_token = resp.get("NextToken")
            if not next_token:
                break

        return results

    def get_resource_identifiers(self, template_body: str) -> dict[str, list[str]]:
        """Identifier keys per resource type, as declared by the provider schemas."""
        resp = self._client.get_template_summary(TemplateBody=template_body)
        return {
            summary["ResourceType"]: list(summary["ResourceIdentifiers"])
            for summary in resp.get("ResourceIdentifierSummaries", [])
            if summary.get("ResourceType") and summary.get("ResourceIdentifiers")
        }

    def update_stack(
        self,
        stack_name: str,
        template_body: str,
        parameters: list[dict[str, str]] | None = None,
        capabilities: list[str] | None = None,
    ) -> bool:
        """Submit a template update and wait for it to settle.

        Returns False when CloudFormation reports there is nothing to update.
        """
        kwargs: dict = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Capabilities": list(capabilities or DEFAULT_CAPABILITIES),
        }
        if parameters:
            kwargs["Parameters"] = parameters

        try:
            self._client.update_stack(**kwargs)
        except ClientError as exc:
            if NO_UPDATES_MESSAGE in str(exc):
                logger.info("No updates to perform on %s", stack_name)
                return False
            raise

        self.wait_for_stack_update(stack_name)
        return True

    def wait_for_stack_update(self, stack_name: str) -> None:
        """Poll until the stack reaches a terminal update or import status."""
        for _ in range(self._max_attempts(self._update_timeout)):
            stack = self._describe_stack(stack_name)
            status = stack.get("StackStatus", "")
            reason = stack.get("StackStatusReason") or "Unknown reason"
            logger.debug("Stack %s status: %s", stack_name, status)

            if status in UPDATE_SUCCESS_STATUSES:
                return
            if status in UPDATE_ROLLBACK_STATUSES:
                raise UpdateRolledBackError(f"Stack update rolled back: {reason}")
            if status.endswith("_FAILED"):
                raise UpdateFailedError(f"Stack operation failed: {status} - {reason}")

            self._sleep()

        raise UpdateTimeoutError(
            f"Timeout waiting for stack update after {self._update_timeout:g} seconds"
        )

    def create_import_change_set(
        self,
        stack_name: str,
        template_body: str,
        resources: list[ResourceToImport],
        parameters: list[dict[str, str]] | None = None,
        capabilities: list[str] | None = None,
    ) -> str:
        """Create an IMPORT change set, wait for it to be ready and return its name."""
        change_set_name = f"drift-remediate-{int(time.time() * 1000)}"

        kwargs: dict = {
            "StackName": stack_name,
            "ChangeSetName": change_set_name,
            "ChangeSetType": "IMPORT",
            "TemplateBody": template_body,
            "ResourcesToImport": [resource.to_api() for resource in resources],
            "Capabilities": list(capabilities or DEFAULT_CAPABILITIES),
        }
        if parameters:
            kwargs["Parameters"] = parameters

        self._client.create_change_set(**kwargs)
        logger.info("Created import change set %s", change_set_name)

        self.wait_for_change_set(stack_name, change_set_name)
        return change_set_name

    def wait_for_change_set(self, stack_name: str, change_set_name: str) -> None:
        """Poll until change set creation completes."""
        for _ in range(self._max_attempts(self._change_set_timeout)):
            resp = self._client.describe_change_set(
                StackName=stack_name, ChangeSetName=change_set_name
            )
            status = resp.get("Status", "")

            if status == "CREATE_COMPLETE":
                return
            if status == "FAILED":
                raise ChangeSetFailedError(
                    f"Change set creation failed: {resp.get('StatusReason') or 'Unknown reason'}"
                )

            self._sleep()

        raise ChangeSetTimeoutError(
            f"Timeout waiting for change set creation after {self._change_set_timeout:g} seconds"
        )

    def execute_change_set(self, stack_name: str, change_set_name: str) -> None:
        """Execute a change set and wait for the resulting operation."""
        self._client.execute_change_set(StackName=stack_name, ChangeSetName=change_set_name)
        self.wait_for_stack_update(stack_name)
