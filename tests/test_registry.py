"""Tests for the importable resource registry."""

from stackmend.registry import (
    get_import_properties,
    get_required_capabilities,
    is_importable,
)


def test_is_importable():
    assert is_importable("AWS::S3::Bucket")
    assert is_importable("AWS::ECS::Service")
    assert not is_importable("Custom::Thing")
    assert not is_importable("AWS::CloudFormation::WaitConditionHandle")


def test_get_import_properties():
    assert get_import_properties("AWS::S3::Bucket") == ["BucketName"]
    assert get_import_properties("AWS::ECS::Service") == ["ServiceArn", "Cluster"]
    assert get_import_properties("Custom::Thing") == []


def test_get_required_capabilities_is_ordered_union():
    capabilities = get_required_capabilities(
        ["AWS::S3::Bucket", "AWS::IAM::Role", "AWS::IAM::User", "AWS::Serverless::Function"]
    )
    assert capabilities == ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]


def test_get_required_capabilities_empty():
    assert get_required_capabilities(["AWS::SQS::Queue"]) == []
