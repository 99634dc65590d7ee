"""Tests for remediation plan files."""

import json

import pytest

from stackmend.errors import DanglingReferenceError, InvalidPlanError
from stackmend.models import Action, InteractiveDecisions, PlanMetadata, ReimportDecision
from stackmend.plan import (
    build_plan,
    load_plan,
    plan_to_decisions,
    read_plan,
    serialize_plan,
    write_plan,
)
from tests.conftest import make_deleted, make_modified


@pytest.fixture
def decisions():
    return InteractiveDecisions(
        autofix=[make_modified("Bucket")],
        reimport=[ReimportDecision(make_deleted("Queue"), "arn:aws:sqs:us-east-1:123:queue-2")],
        remove=[make_deleted("Topic", "AWS::SNS::Topic", physical_id="arn:aws:sns:us-east-1:123:t")],
        skip=[make_modified("Table", "AWS::DynamoDB::Table")],
    )


@pytest.fixture
def metadata():
    return PlanMetadata(
        stack_name="my-stack",
        region="us-east-1",
        created_at="2026-02-25T13:00:00+00:00",
        tool_version="0.1.0",
        drift_detection_id="det-123",
        stack_id="arn:aws:cloudformation:us-east-1:123:stack/my-stack/uuid",
    )


def _plan_json(metadata, decisions):
    return json.loads(serialize_plan(build_plan(metadata, decisions)))


def test_build_plan_orders_decisions(metadata, decisions):
    plan = build_plan(metadata, decisions)

    assert plan.version == 1
    assert [(d.logical_id, d.action) for d in plan.decisions] == [
        ("Bucket", Action.AUTOFIX),
        ("Queue", Action.REIMPORT),
        ("Topic", Action.REMOVE),
        ("Table", Action.SKIP),
    ]
    assert plan.decisions[1].reimport_physical_id == "arn:aws:sqs:us-east-1:123:queue-2"
    assert set(plan.resources) == {"Bucket", "Queue", "Topic", "Table"}


def test_serialize_plan_shape(metadata, decisions):
    data = _plan_json(metadata, decisions)

    assert set(data) == {"version", "metadata", "decisions", "_resources"}
    assert data["metadata"]["stack_name"] == "my-stack"
    assert data["decisions"][1] == {
        "logical_id": "Queue",
        "resource_type": "AWS::SQS::Queue",
        "drift_status": "DELETED",
        "physical_id": "https://sqs.us-east-1.amazonaws.com/123/Queue",
        "action": "reimport",
        "reimport_physical_id": "arn:aws:sqs:us-east-1:123:queue-2",
    }
    assert "reimport_physical_id" not in data["decisions"][0]


def test_round_trip_reproduces_buckets(metadata, decisions):
    text = serialize_plan(build_plan(metadata, decisions))

    expansion = plan_to_decisions(load_plan(text, "my-stack"))

    assert expansion.decisions == decisions
    assert {r.logical_id for r in expansion.resources} == {"Bucket", "Queue", "Topic", "Table"}


def test_load_plan_rejects_invalid_json():
    with pytest.raises(InvalidPlanError, match="not valid JSON"):
        load_plan("{not json", "my-stack")


def test_load_plan_rejects_unsupported_version(metadata, decisions):
    data = _plan_json(metadata, decisions)
    data["version"] = 99

    with pytest.raises(InvalidPlanError, match="99"):
        load_plan(json.dumps(data), "my-stack")


@pytest.mark.parametrize("version", [True, 1.0, "1"])
def test_load_plan_rejects_non_integer_version(metadata, decisions, version):
    data = _plan_json(metadata, decisions)
    data["version"] = version

    with pytest.raises(InvalidPlanError, match="Unsupported plan version"):
        load_plan(json.dumps(data), "my-stack")


def test_load_plan_rejects_missing_metadata(metadata, decisions):
    data = _plan_json(metadata, decisions)
    del data["metadata"]

    with pytest.raises(InvalidPlanError, match="missing metadata"):
        load_plan(json.dumps(data), "my-stack")


def test_load_plan_rejects_stack_mismatch(metadata, decisions):
    text = serialize_plan(build_plan(metadata, decisions))

    with pytest.raises(InvalidPlanError) as excinfo:
        load_plan(text, "other-stack")

    assert "my-stack" in str(excinfo.value)
    assert "other-stack" in str(excinfo.value)


def test_load_plan_rejects_non_list_decisions(metadata, decisions):
    data = _plan_json(metadata, decisions)
    data["decisions"] = {"Bucket": "autofix"}

    with pytest.raises(InvalidPlanError, match="decisions must be an array"):
        load_plan(json.dumps(data), "my-stack")


def test_load_plan_rejects_decision_without_action(metadata, decisions):
    data = _plan_json(metadata, decisions)
    del data["decisions"][0]["action"]

    with pytest.raises(InvalidPlanError, match="missing logical_id or action"):
        load_plan(json.dumps(data), "my-stack")


def test_load_plan_rejects_unknown_action(metadata, decisions):
    data = _plan_json(metadata, decisions)
    data["decisions"][0]["action"] = "delete"

    with pytest.raises(InvalidPlanError) as excinfo:
        load_plan(json.dumps(data), "my-stack")

    assert '"delete"' in str(excinfo.value)
    assert "Bucket" in str(excinfo.value)


def test_load_plan_rejects_reimport_without_identity(metadata, decisions):
    data = _plan_json(metadata, decisions)
    del data["decisions"][1]["reimport_physical_id"]

    with pytest.raises(InvalidPlanError, match="Queue"):
        load_plan(json.dumps(data), "my-stack")


def test_load_plan_rejects_missing_resources(metadata, decisions):
    data = _plan_json(metadata, decisions)
    del data["_resources"]

    with pytest.raises(InvalidPlanError, match="missing _resources"):
        load_plan(json.dumps(data), "my-stack")


def test_plan_to_decisions_dangling_reference(metadata, decisions):
    data = _plan_json(metadata, decisions)
    del data["_resources"]["Topic"]
    plan = load_plan(json.dumps(data), "my-stack")

    with pytest.raises(DanglingReferenceError, match="Topic"):
        plan_to_decisions(plan)


def test_plan_to_decisions_implicit_skip(metadata, decisions):
    data = _plan_json(metadata, decisions)
    data["decisions"] = [d for d in data["decisions"] if d["logical_id"] != "Bucket"]
    plan = load_plan(json.dumps(data), "my-stack")

    expansion = plan_to_decisions(plan)

    assert expansion.decisions.autofix == []
    assert [r.logical_id for r in expansion.decisions.skip] == ["Table", "Bucket"]


def test_write_and_read_plan(tmp_path, metadata, decisions):
    path = write_plan(build_plan(metadata, decisions), tmp_path / "plan.json")

    plan = read_plan(path, "my-stack")

    assert plan.metadata == metadata
    assert len(plan.decisions) == 4


def test_read_plan_missing_file(tmp_path):
    with pytest.raises(InvalidPlanError, match="Cannot read plan file"):
        read_plan(tmp_path / "missing.json", "my-stack")
