"""Shared test fixtures."""

import boto3
import pytest
from moto import mock_aws

from stackmend.models import DiffType, DriftedResource, PropertyDiff, ResourceStatus


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def cfn_client(aws_credentials):
    """Create a moto-mocked CloudFormation boto3 client."""
    with mock_aws():
        yield boto3.client("cloudformation", region_name="us-east-1")


SIMPLE_TEMPLATE = """{
    "AWSTemplateFormatVersion": "2010-09-09",
    "Resources": {
        "MyQueue": {
            "Type": "AWS::SQS::Queue",
            "Properties": {
                "QueueName": "my-test-queue"
            }
        }
    }
}"""

STACK_ID = "arn:aws:cloudformation:us-east-1:123456789012:stack/my-stack/uuid"


def make_modified(logical_id="MyBucket", resource_type="AWS::S3::Bucket", **kwargs):
    defaults = {
        "physical_id": f"{logical_id.lower()}-physical",
        "property_diffs": (
            PropertyDiff("/Tags/0/Value", "prod", "dev", DiffType.NOT_EQUAL),
        ),
        "actual_properties": {"BucketName": f"{logical_id.lower()}-physical"},
        "expected_properties": {"BucketName": f"{logical_id.lower()}-physical"},
    }
    defaults.update(kwargs)
    return DriftedResource(
        logical_id=logical_id,
        resource_type=resource_type,
        status=ResourceStatus.MODIFIED,
        **defaults,
    )


def make_deleted(logical_id="OldQueue", resource_type="AWS::SQS::Queue", **kwargs):
    defaults = {"physical_id": f"https://sqs.us-east-1.amazonaws.com/123/{logical_id}"}
    defaults.update(kwargs)
    return DriftedResource(
        logical_id=logical_id,
        resource_type=resource_type,
        status=ResourceStatus.DELETED,
        **defaults,
    )
