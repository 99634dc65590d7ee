"""Derive CloudFormation import identifiers from physical resource identities.

Two entry points cover the two situations a remediation run meets:

* ``build_identifier_from_physical_id`` handles a user-supplied identity (an
  ARN, a name or a raw id), typically for a DELETED resource being re-imported
  under a new physical resource.
* ``build_resource_identifier`` handles a resource CloudFormation can still
  describe, merging the drift-detection context, the observed properties and
  the recorded physical id.

Per-type knowledge lives in ``EXTRACTION_RULES``, a table keyed by resource
type. Add an entry to support a new service convention.
"""

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stackmend.errors import UnresolvableError
from stackmend.models import DriftedResource, ResourceToImport
from stackmend.registry import get_import_properties, is_importable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedArn:
    """Components of an ARN. ``resource_part`` is everything after the account id."""

    partition: str
    service: str
    region: str
    account_id: str
    resource_part: str


def parse_arn(value: str) -> ParsedArn | None:
    """Parse ``arn:partition:service:region:account:resource``; None if not an ARN."""
    if not value.startswith("arn:"):
        return None
    parts = value.split(":")
    if len(parts) < 6:
        return None
    return ParsedArn(
        partition=parts[1],
        service=parts[2],
        region=parts[3],
        account_id=parts[4],
        resource_part=":".join(parts[5:]),
    )


ExtractionRule = Callable[[str, ParsedArn | None], dict[str, str] | None]


def _passthrough(key: str) -> ExtractionRule:
    """The identifier is the full ARN (or whatever string was given)."""

    def rule(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
        return {key: physical_id}

    return rule


def _pattern(key: str, pattern: str) -> ExtractionRule:
    """Take group 1 of ``pattern`` matched against the ARN resource part.

    Falls back to the whole resource part when the pattern does not match and
    to the raw string when the value is not an ARN at all.
    """
    compiled = re.compile(pattern)

    def rule(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
        if parsed is None:
            return {key: physical_id}
        match = compiled.search(parsed.resource_part)
        return {key: match.group(1) if match else parsed.resource_part}

    return rule


def _last_path_segment(key: str) -> ExtractionRule:
    """IAM style ``kind/[path/]name``: keep the final segment."""

    def rule(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
        if parsed is None:
            return {key: physical_id}
        return {key: parsed.resource_part.split("/")[-1]}

    return rule


def _s3_bucket(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
    # arn:aws:s3:::bucket-name carries no region or account
    return {"BucketName": parsed.resource_part if parsed else physical_id}


def _sqs_queue(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
    if parsed is None:
        return {"QueueUrl": physical_id}
    url = f"https://sqs.{parsed.region}.amazonaws.com/{parsed.account_id}/{parsed.resource_part}"
    return {"QueueUrl": url}


def _lambda_function(physical_id: str, parsed: ParsedArn | None) -> dict[str, str]:
    if parsed is None:
        return {"FunctionName": physical_id}
    # function:name or function:name:qualifier
    parts = parsed.resource_part.split(":")
    return {"FunctionName": parts[1] if len(parts) >= 2 else parts[0]}


def _ecs_service(physical_id: str, parsed: ParsedArn | None) -> dict[str, str] | None:
    if parsed is None:
        return None
    match = re.match(r"^service/([^/]+)/(.+)$", parsed.resource_part)
    if match is None:
        return None
    return {"ServiceArn": physical_id, "Cluster": match.group(1)}


EXTRACTION_RULES: dict[str, ExtractionRule] = {
    "AWS::S3::Bucket": _s3_bucket,
    "AWS::SQS::Queue": _sqs_queue,
    "AWS::SNS::Topic": _passthrough("TopicArn"),
    "AWS::SNS::Subscription": _passthrough("SubscriptionArn"),
    "AWS::Lambda::Function": _lambda_function,
    "AWS::DynamoDB::Table": _pattern("TableName", r"^table/(.+)$"),
    "AWS::IAM::Role": _last_path_segment("RoleName"),
    "AWS::IAM::User": _last_path_segment("UserName"),
    "AWS::IAM::Group": _last_path_segment("GroupName"),
    "AWS::IAM::ManagedPolicy": _passthrough("PolicyArn"),
    "AWS::Logs::LogGroup": _pattern("LogGroupName", r"^log-group:(.+?)(?::\*)?$"),
    "AWS::EC2::SecurityGroup": _pattern("GroupId", r"security-group/(sg-[a-f0-9]+)"),
    "AWS::EC2::Instance": _pattern("InstanceId", r"instance/(i-[a-f0-9]+)"),
    "AWS::EC2::VPC": _pattern("VpcId", r"vpc/(vpc-[a-f0-9]+)"),
    "AWS::EC2::Subnet": _pattern("SubnetId", r"subnet/(subnet-[a-f0-9]+)"),
    "AWS::RDS::DBInstance": _pattern("DBInstanceIdentifier", r"^db:(.+)$"),
    "AWS::RDS::DBCluster": _pattern("DBClusterIdentifier", r"^cluster:(.+)$"),
    "AWS::ECS::Cluster": _pattern("ClusterName", r"^cluster/(.+)$"),
    "AWS::ECS::Service": _ecs_service,
    "AWS::CloudWatch::Alarm": _pattern("AlarmName", r"^alarm:(.+)$"),
    "AWS::Route53::HostedZone": _pattern("Id", r"hostedzone/(.+)$"),
    "AWS::ElasticLoadBalancingV2::LoadBalancer": _passthrough("LoadBalancerArn"),
    "AWS::ElasticLoadBalancingV2::TargetGroup": _passthrough("TargetGroupArn"),
    "AWS::ElasticLoadBalancingV2::Listener": _passthrough("ListenerArn"),
    "AWS::StepFunctions::StateMachine": _passthrough("StateMachineArn"),
    "AWS::Events::Rule": _pattern("Name", r"^rule/(?:[^/]+/)?(.+)$"),
    "AWS::KMS::Key": _pattern("KeyId", r"^key/(.+)$"),
}


def _required_keys(
    resource_type: str, dynamic_identifiers: Mapping[str, list[str]] | None
) -> list[str]:
    if dynamic_identifiers and dynamic_identifiers.get(resource_type):
        return list(dynamic_identifiers[resource_type])
    return get_import_properties(resource_type)


def build_identifier_from_physical_id(resource_type: str, physical_id: str) -> dict[str, str]:
    """Map a user-supplied identity (ARN, name or id) to an import identifier.

    Raises UnresolvableError when the type needs several keys and no rule can
    derive them from ``physical_id``.
    """
    parsed = parse_arn(physical_id)
    rule = EXTRACTION_RULES.get(resource_type)

    if rule is not None:
        identifier = rule(physical_id, parsed)
        if identifier is None:
            raise UnresolvableError(resource_type, physical_id, "no rule matched the identity")
        return identifier

    keys = get_import_properties(resource_type)
    if len(keys) == 1:
        return {keys[0]: physical_id}

    if not keys:
        raise UnresolvableError(resource_type, physical_id, "resource type is not importable")
    raise UnresolvableError(
        resource_type, physical_id, f"multi-key identifier {keys} needs a full ARN"
    )


def validate_resource_identifier(
    resource_type: str,
    identifier: Mapping[str, str],
    required: list[str] | None = None,
) -> bool:
    """True when every required identifier key is present and non-empty."""
    keys = required if required is not None else get_import_properties(resource_type)
    return all(identifier.get(key) for key in keys)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _fill_special_cases(
    resource: DriftedResource, identifier: dict[str, str], remaining: list[str]
) -> None:
    """Derive leftover keys from the physical id using the per-type rules."""
    rule = EXTRACTION_RULES.get(resource.resource_type)
    if rule is not None and resource.physical_id:
        derived = rule(resource.physical_id, parse_arn(resource.physical_id)) or {}
        for key in list(remaining):
            if key in derived:
                identifier[key] = derived[key]
                remaining.remove(key)

    if resource.resource_type == "AWS::ECS::Service" and "Cluster" in remaining:
        cluster = (resource.actual_properties or {}).get("Cluster")
        if cluster:
            identifier["Cluster"] = _stringify(cluster)
            remaining.remove("Cluster")


def build_resource_identifier(
    resource: DriftedResource, identifier_keys: list[str]
) -> dict[str, str]:
    """Build the identifier for a resource CloudFormation can still describe.

    Sources, highest priority first: the physical id context reported by
    drift detection, the observed properties, the physical id itself (only
    when exactly one key is still missing), then the per-type rules. The
    result may be partial; callers validate it.
    """
    identifier: dict[str, str] = {}
    remaining = list(identifier_keys)
    context = dict(resource.physical_id_context)

    for key in identifier_keys:
        if key in context:
            identifier[key] = context[key]
            remaining.remove(key)

    if resource.actual_properties:
        for key in list(remaining):
            value = resource.actual_properties.get(key)
            if value is not None:
                identifier[key] = _stringify(value)
                remaining.remove(key)

    if len(remaining) == 1 and resource.physical_id:
        identifier[remaining.pop()] = resource.physical_id

    if remaining:
        _fill_special_cases(resource, identifier, remaining)

    return identifier


@dataclass(frozen=True)
class ImportSelection:
    """Resources that can be imported, and those that cannot."""

    importable: list[ResourceToImport] = field(default_factory=list)
    skipped: list[DriftedResource] = field(default_factory=list)


def build_resources_to_import(
    resources: list[DriftedResource],
    dynamic_identifiers: Mapping[str, list[str]] | None = None,
) -> ImportSelection:
    """Build import descriptors for describable drifted resources.

    Identifier keys from ``dynamic_identifiers`` (as reported by the control
    plane for the stack template) win over the static registry.
    """
    selection = ImportSelection()

    for resource in resources:
        if not is_importable(resource.resource_type):
            logger.debug("%s (%s) is not importable", resource.logical_id, resource.resource_type)
            selection.skipped.append(resource)
            continue

        keys = _required_keys(resource.resource_type, dynamic_identifiers)
        if not keys:
            selection.skipped.append(resource)
            continue

        identifier = build_resource_identifier(resource, keys)
        if not validate_resource_identifier(resource.resource_type, identifier, keys):
            logger.warning(
                "Could not determine identifier %s for %s; got %s",
                keys,
                resource.logical_id,
                sorted(identifier),
            )
            selection.skipped.append(resource)
            continue

        selection.importable.append(
            ResourceToImport(
                resource_type=resource.resource_type,
                logical_id=resource.logical_id,
                identifier=identifier,
            )
        )

    return selection


def build_reimport_descriptor(
    resource: DriftedResource,
    physical_id: str,
    dynamic_identifiers: Mapping[str, list[str]] | None = None,
) -> ResourceToImport:
    """Import descriptor for a resource re-imported under a user-supplied identity.

    Raises UnresolvableError if the identity does not yield every required key.
    """
    identifier = build_identifier_from_physical_id(resource.resource_type, physical_id)
    keys = _required_keys(resource.resource_type, dynamic_identifiers)
    missing = [key for key in keys if not identifier.get(key)]
    if missing:
        raise UnresolvableError(
            resource.resource_type, physical_id, f"missing identifier keys {missing}"
        )
    return ResourceToImport(
        resource_type=resource.resource_type,
        logical_id=resource.logical_id,
        identifier=identifier,
    )
