"""Tests for CloudFormationClient."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from stackmend.aws.client import CloudFormationClient
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
    ResourceStatus,
    ResourceToImport,
    StackStatus,
)
from tests.conftest import SIMPLE_TEMPLATE


def _client(mock_boto, **kwargs):
    client = CloudFormationClient(region="us-east-1", poll_interval=0, **kwargs)
    client._client = mock_boto
    return client


def _validation_error(message):
    return ClientError(
        {"Error": {"Code": "ValidationError", "Message": message}}, "UpdateStack"
    )


@mock_aws
def test_get_stack_info(aws_credentials):
    boto_cfn = boto3.client("cloudformation", region_name="us-east-1")
    boto_cfn.create_stack(StackName="my-stack", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    info = client.get_stack_info("my-stack")

    assert info.stack_name == "my-stack"
    assert info.stack_id.startswith("arn:aws:cloudformation:us-east-1:")
    assert info.parameters == []


@mock_aws
def test_get_stack_info_missing_stack(aws_credentials):
    client = CloudFormationClient(region="us-east-1")

    with pytest.raises(NotFoundError, match="missing-stack"):
        client.get_stack_info("missing-stack")


@mock_aws
def test_get_template_returns_text(aws_credentials):
    boto_cfn = boto3.client("cloudformation", region_name="us-east-1")
    boto_cfn.create_stack(StackName="my-stack", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    body = client.get_template("my-stack")

    assert isinstance(body, str)
    assert "MyQueue" in body


@mock_aws
def test_get_stack_resources(aws_credentials):
    boto_cfn = boto3.client("cloudformation", region_name="us-east-1")
    boto_cfn.create_stack(StackName="my-stack", TemplateBody=SIMPLE_TEMPLATE)

    client = CloudFormationClient(region="us-east-1")
    resources = client.get_stack_resources("my-stack")

    assert [r.logical_id for r in resources] == ["MyQueue"]
    assert resources[0].resource_type == "AWS::SQS::Queue"
    assert resources[0].physical_id


def test_get_template_decodes_dict_body(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.get_template.return_value = {"TemplateBody": {"Resources": {}}}

    body = _client(mock_boto).get_template("my-stack")

    assert json.loads(body) == {"Resources": {}}
    mock_boto.get_template.assert_called_once_with(StackName="my-stack", TemplateStage="Processed")


def test_detect_drift_returns_detection_run(aws_credentials):
    """detect_drift calls DetectStackDrift and returns a DetectionRun."""
    mock_boto = MagicMock()
    mock_boto.detect_stack_drift.return_value = {"StackDriftDetectionId": "detection-123"}
    mock_boto.describe_stacks.return_value = {
        "Stacks": [{"StackId": "arn:aws:cloudformation:us-east-1:123:stack/my-stack/uuid"}]
    }

    run = _client(mock_boto).detect_drift("my-stack")

    assert isinstance(run, DetectionRun)
    assert run.detection_id == "detection-123"
    assert run.status == DetectionStatus.IN_PROGRESS


def test_poll_detection_complete(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stack_drift_detection_status.return_value = {
        "StackDriftDetectionId": "det-123",
        "StackId": "arn:aws:cloudformation:us-east-1:123:stack/s/uuid",
        "DetectionStatus": "DETECTION_COMPLETE",
        "StackDriftStatus": "DRIFTED",
        "DriftedStackResourceCount": 2,
        "Timestamp": datetime(2026, 2, 25, 13, 0, 0),
    }

    run = _client(mock_boto).poll_detection("det-123", "s")

    assert run.status == DetectionStatus.COMPLETE
    assert run.stack_status == StackStatus.DRIFTED
    assert run.drifted_resource_count == 2


def test_get_drifted_resources_parses_properties_and_context(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stack_resource_drifts.side_effect = [
        {
            "StackResourceDrifts": [
                {
                    "LogicalResourceId": "Service",
                    "PhysicalResourceId": "arn:aws:ecs:us-east-1:123:service/c/s",
                    "ResourceType": "AWS::ECS::Service",
                    "StackResourceDriftStatus": "MODIFIED",
                    "ActualProperties": json.dumps({"DesiredCount": 2}),
                    "ExpectedProperties": json.dumps({"DesiredCount": 1}),
                    "PhysicalResourceIdContext": [{"Key": "Cluster", "Value": "c"}],
                    "PropertyDifferences": [
                        {
                            "PropertyPath": "/DesiredCount",
                            "ExpectedValue": "1",
                            "ActualValue": "2",
                            "DifferenceType": "NOT_EQUAL",
                        }
                    ],
                }
            ],
            "NextToken": "page-2",
        },
        {
            "StackResourceDrifts": [
                {
                    "LogicalResourceId": "Queue",
                    "PhysicalResourceId": "https://sqs/queue",
                    "ResourceType": "AWS::SQS::Queue",
                    "StackResourceDriftStatus": "DELETED",
                }
            ]
        },
    ]

    resources = _client(mock_boto).get_drifted_resources("my-stack")

    assert [r.logical_id for r in resources] == ["Service", "Queue"]
    service = resources[0]
    assert service.actual_properties == {"DesiredCount": 2}
    assert service.expected_properties == {"DesiredCount": 1}
    assert service.physical_id_context == (("Cluster", "c"),)
    assert service.property_diffs[0].diff_type == DiffType.NOT_EQUAL
    assert resources[1].status == ResourceStatus.DELETED
    assert resources[1].actual_properties is None
    second_call = mock_boto.describe_stack_resource_drifts.call_args_list[1]
    assert second_call.kwargs["NextToken"] == "page-2"
    assert second_call.kwargs["StackResourceDriftStatusFilters"] == ["MODIFIED", "DELETED"]


def test_get_resource_identifiers(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.get_template_summary.return_value = {
        "ResourceIdentifierSummaries": [
            {"ResourceType": "AWS::S3::Bucket", "ResourceIdentifiers": ["BucketName"]},
            {"ResourceType": "AWS::ECS::Service", "ResourceIdentifiers": ["Cluster", "ServiceArn"]},
        ]
    }

    identifiers = _client(mock_boto).get_resource_identifiers("{}")

    assert identifiers == {
        "AWS::S3::Bucket": ["BucketName"],
        "AWS::ECS::Service": ["Cluster", "ServiceArn"],
    }


def test_update_stack_waits_for_completion(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stacks.side_effect = [
        {"Stacks": [{"StackStatus": "UPDATE_IN_PROGRESS"}]},
        {"Stacks": [{"StackStatus": "UPDATE_COMPLETE"}]},
    ]

    updated = _client(mock_boto).update_stack(
        "my-stack", "{}", parameters=[{"ParameterKey": "Env", "ParameterValue": "prod"}]
    )

    assert updated is True
    kwargs = mock_boto.update_stack.call_args.kwargs
    assert kwargs["Parameters"] == [{"ParameterKey": "Env", "ParameterValue": "prod"}]
    assert kwargs["Capabilities"] == [
        "CAPABILITY_IAM",
        "CAPABILITY_NAMED_IAM",
        "CAPABILITY_AUTO_EXPAND",
    ]
    assert mock_boto.describe_stacks.call_count == 2


def test_update_stack_without_parameters_omits_them(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stacks.return_value = {"Stacks": [{"StackStatus": "UPDATE_COMPLETE"}]}

    _client(mock_boto).update_stack("my-stack", "{}", capabilities=["CAPABILITY_IAM"])

    kwargs = mock_boto.update_stack.call_args.kwargs
    assert "Parameters" not in kwargs
    assert kwargs["Capabilities"] == ["CAPABILITY_IAM"]


def test_update_stack_no_updates_is_success(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.update_stack.side_effect = _validation_error("No updates are to be performed.")

    assert _client(mock_boto).update_stack("my-stack", "{}") is False
    mock_boto.describe_stacks.assert_not_called()


def test_update_stack_other_errors_propagate(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.update_stack.side_effect = _validation_error("Template format error")

    with pytest.raises(ClientError, match="Template format error"):
        _client(mock_boto).update_stack("my-stack", "{}")


@pytest.mark.parametrize(
    ("status", "error"),
    [
        ("UPDATE_ROLLBACK_COMPLETE", UpdateRolledBackError),
        ("UPDATE_FAILED", UpdateFailedError),
        ("UPDATE_ROLLBACK_FAILED", UpdateFailedError),
    ],
)
def test_wait_for_stack_update_failures(aws_credentials, status, error):
    mock_boto = MagicMock()
    mock_boto.describe_stacks.return_value = {
        "Stacks": [{"StackStatus": status, "StackStatusReason": "boom"}]
    }

    with pytest.raises(error, match="boom"):
        _client(mock_boto).wait_for_stack_update("my-stack")


def test_wait_for_stack_update_timeout(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stacks.return_value = {"Stacks": [{"StackStatus": "UPDATE_IN_PROGRESS"}]}

    with pytest.raises(UpdateTimeoutError):
        _client(mock_boto, update_timeout=3).wait_for_stack_update("my-stack")

    assert mock_boto.describe_stacks.call_count == 3


def test_create_import_change_set(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_change_set.side_effect = [
        {"Status": "CREATE_IN_PROGRESS"},
        {"Status": "CREATE_COMPLETE"},
    ]
    resources = [ResourceToImport("AWS::S3::Bucket", "Bucket", {"BucketName": "b"})]

    name = _client(mock_boto).create_import_change_set("my-stack", "{}", resources)

    assert name.startswith("drift-remediate-")
    kwargs = mock_boto.create_change_set.call_args.kwargs
    assert kwargs["ChangeSetType"] == "IMPORT"
    assert kwargs["ResourcesToImport"] == [
        {
            "ResourceType": "AWS::S3::Bucket",
            "LogicalResourceId": "Bucket",
            "ResourceIdentifier": {"BucketName": "b"},
        }
    ]


def test_change_set_failure(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_change_set.return_value = {"Status": "FAILED", "StatusReason": "bad id"}

    with pytest.raises(ChangeSetFailedError, match="bad id"):
        _client(mock_boto).wait_for_change_set("my-stack", "cs")


def test_change_set_timeout(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_change_set.return_value = {"Status": "CREATE_PENDING"}

    with pytest.raises(ChangeSetTimeoutError):
        _client(mock_boto, change_set_timeout=2).wait_for_change_set("my-stack", "cs")


def test_execute_change_set_waits(aws_credentials):
    mock_boto = MagicMock()
    mock_boto.describe_stacks.return_value = {"Stacks": [{"StackStatus": "IMPORT_COMPLETE"}]}

    _client(mock_boto).execute_change_set("my-stack", "cs")

    mock_boto.execute_change_set.assert_called_once_with(StackName="my-stack", ChangeSetName="cs")
