"""Pure transformations over parsed CloudFormation templates.

Templates are plain ``dict``/``list`` trees with intrinsic functions in long
form (``{"Ref": ...}``, ``{"Fn::GetAtt": [...]}``, ``{"Fn::Sub": ...}``).
No function here mutates its input.

References to resources that are about to leave the stack are handled in two
passes over the same walk: COLLECT records which ``ReferenceToken`` values are
needed, RESOLVE substitutes literals from a table the caller filled in.
"""

import copy
import json
import logging
import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from stackmend.errors import InvalidTemplateError
from stackmend.models import CascadeRemoval, ReferenceToken

logger = logging.getLogger(__name__)

PSEUDO_PARAMETERS = frozenset(
    {
        "AWS::AccountId",
        "AWS::NotificationARNs",
        "AWS::NoValue",
        "AWS::Partition",
        "AWS::Region",
        "AWS::StackId",
        "AWS::StackName",
        "AWS::URLSuffix",
    }
)

SUB_VARIABLE_PATTERN = re.compile(r"\$\{([^}]+)\}")

RESOLUTION_OUTPUT_PREFIX = "DriftResolve"

# A stack must always keep at least one resource.
PLACEHOLDER_TEMPLATE: dict[str, Any] = {
    "Conditions": {
        "FalseCondition": {"Fn::Equals": [1, 2]},
    },
    "Resources": {
        "PlaceholderResource": {
            "Type": "AWS::CloudFormation::WaitConditionHandle",
            "Condition": "FalseCondition",
        },
    },
}

ReferenceTable = dict[ReferenceToken, Any]


class ResolveMode(Enum):
    """Whether a walk records references or substitutes resolved values."""

    COLLECT = "collect"
    RESOLVE = "resolve"


@dataclass(frozen=True)
class TransformResult:
    """A template with resources removed, plus what was removed."""

    template: dict[str, Any]
    removed: list[str] = field(default_factory=list)
    resolved: ReferenceTable = field(default_factory=dict)


@dataclass(frozen=True)
class ImportOverlay:
    """Observed properties to write over a resource before import.

    ``actual_properties`` of None keeps the template properties silently; an
    empty dict means the resource could not be described.
    """

    logical_id: str
    actual_properties: dict[str, Any] | None = None


def _get_att_target(node: Any) -> tuple[str, str] | None:
    """Split Fn::GetAtt (list or dotted string form) into (logical id, attribute)."""
    if isinstance(node, list) and len(node) == 2 and all(isinstance(p, str) for p in node):
        return node[0], node[1]
    if isinstance(node, str) and "." in node:
        logical_id, _, attribute = node.partition(".")
        return logical_id, attribute
    return None


def _lookup(token: ReferenceToken, node: Any, table: ReferenceTable, mode: ResolveMode) -> Any:
    if mode is ResolveMode.COLLECT:
        table[token] = token.to_intrinsic()
        return node
    return table.get(token, node)


def resolve_value(
    value: Any,
    drifted_ids: Collection[str],
    table: ReferenceTable,
    mode: ResolveMode = ResolveMode.RESOLVE,
) -> Any:
    """Walk ``value`` handling Ref, Fn::GetAtt and Fn::Sub nodes that target ``drifted_ids``.

    In COLLECT mode every such reference is recorded in ``table`` and the
    value comes back unchanged. In RESOLVE mode references found in ``table``
    are replaced by their literal values; the rest are left in place.
    """
    if isinstance(value, list):
        return [resolve_value(item, drifted_ids, table, mode) for item in value]

    if not isinstance(value, dict):
        return value

    if "Ref" in value and isinstance(value["Ref"], str):
        if value["Ref"] in drifted_ids:
            return _lookup(ReferenceToken(value["Ref"]), value, table, mode)
        return value

    if "Fn::GetAtt" in value:
        target = _get_att_target(value["Fn::GetAtt"])
        if target is not None and target[0] in drifted_ids:
            return _lookup(ReferenceToken(*target), value, table, mode)
        return value

    if "Fn::Sub" in value:
        sub = value["Fn::Sub"]
        if isinstance(sub, str):
            return _resolve_sub_string(sub, drifted_ids, table, mode)
        if isinstance(sub, list) and len(sub) == 2:
            return _resolve_sub_list(sub[0], sub[1], drifted_ids, table, mode)
        return value

    return {key: resolve_value(item, drifted_ids, table, mode) for key, item in value.items()}


def _resolve_sub_string(
    fmt: str,
    drifted_ids: Collection[str],
    table: ReferenceTable,
    mode: ResolveMode,
    shadowed: Collection[str] = (),
) -> Any:
    """Resolve ``${Name}`` / ``${Name.Attr}`` placeholders of a Fn::Sub format string.

    ``shadowed`` names come from an explicit variable map and are never
    treated as logical ids.
    """
    all_resolved = True
    has_drifted = False

    def substitute(match: re.Match) -> str:
        nonlocal all_resolved, has_drifted
        name = match.group(1)
        logical_id, _, attribute = name.partition(".")

        if name in PSEUDO_PARAMETERS or name in shadowed or logical_id not in drifted_ids:
            all_resolved = False
            return match.group(0)

        has_drifted = True
        token = ReferenceToken(logical_id, attribute or None)

        if mode is ResolveMode.COLLECT:
            table[token] = token.to_intrinsic()
            all_resolved = False
            return match.group(0)

        if token in table:
            return str(table[token])

        all_resolved = False
        return match.group(0)

    result = SUB_VARIABLE_PATTERN.sub(substitute, fmt)

    if mode is ResolveMode.COLLECT or not has_drifted:
        return {"Fn::Sub": fmt}
    if all_resolved:
        return result
    return {"Fn::Sub": result}


def _resolve_sub_list(
    fmt: Any,
    variables: Any,
    drifted_ids: Collection[str],
    table: ReferenceTable,
    mode: ResolveMode,
) -> Any:
    """Resolve the ``[format, {Var: value}]`` form of Fn::Sub."""
    if not isinstance(fmt, str) or not isinstance(variables, dict):
        return {"Fn::Sub": [fmt, variables]}

    resolved_map = {
        name: resolve_value(item, drifted_ids, table, mode) for name, item in variables.items()
    }
    processed = _resolve_sub_string(fmt, drifted_ids, table, mode, shadowed=variables.keys())

    if mode is ResolveMode.COLLECT:
        return {"Fn::Sub": [fmt, variables]}

    new_fmt = processed if isinstance(processed, str) else processed["Fn::Sub"]
    if resolved_map == variables and new_fmt == fmt:
        return {"Fn::Sub": [fmt, variables]}

    remaining = {
        name: item for name, item in resolved_map.items() if "${" + name + "}" in new_fmt
    }
    if not remaining:
        return processed if isinstance(processed, str) else {"Fn::Sub": new_fmt}
    return {"Fn::Sub": [new_fmt, remaining]}


def collect_references(template: dict[str, Any], drifted_ids: Collection[str]) -> ReferenceTable:
    """Every reference to ``drifted_ids`` from Resources and Outputs, in walk order."""
    table: ReferenceTable = {}
    resolve_value(template.get("Resources") or {}, drifted_ids, table, ResolveMode.COLLECT)
    resolve_value(template.get("Outputs") or {}, drifted_ids, table, ResolveMode.COLLECT)
    return table


def set_retention_on_all(template: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``template`` with DeletionPolicy: Retain on every resource."""
    result = copy.deepcopy(template)
    for resource in (result.get("Resources") or {}).values():
        resource["DeletionPolicy"] = "Retain"
    return result


def find_reference(value: Any, logical_ids: Collection[str]) -> str | None:
    """First logical id in ``logical_ids`` that ``value`` structurally references."""
    if isinstance(value, list):
        for item in value:
            found = find_reference(item, logical_ids)
            if found is not None:
                return found
        return None

    if not isinstance(value, dict):
        return None

    if "Ref" in value and isinstance(value["Ref"], str):
        return value["Ref"] if value["Ref"] in logical_ids else None

    if "Fn::GetAtt" in value:
        node = value["Fn::GetAtt"]
        if isinstance(node, list) and node and isinstance(node[0], str):
            return node[0] if node[0] in logical_ids else None
        if isinstance(node, str):
            logical_id = node.split(".")[0]
            return logical_id if logical_id in logical_ids else None

    if "Fn::Sub" in value:
        sub = value["Fn::Sub"]
        fmt = sub if isinstance(sub, str) else sub[0] if isinstance(sub, list) and sub else ""
        shadowed = sub[1] if isinstance(sub, list) and len(sub) == 2 else {}
        if isinstance(fmt, str):
            for match in SUB_VARIABLE_PATTERN.finditer(fmt):
                name = match.group(1)
                if name in PSEUDO_PARAMETERS or name in shadowed:
                    continue
                logical_id = name.split(".")[0]
                if logical_id in logical_ids:
                    return logical_id
        if isinstance(sub, list) and len(sub) == 2:
            return find_reference(sub[1], logical_ids)
        return None

    for item in value.values():
        found = find_reference(item, logical_ids)
        if found is not None:
            return found
    return None


def _strip_depends_on(resource: dict[str, Any], removed: Collection[str]) -> None:
    depends_on = resource.get("DependsOn")
    if isinstance(depends_on, str):
        if depends_on in removed:
            del resource["DependsOn"]
    elif isinstance(depends_on, list):
        kept = [dep for dep in depends_on if dep not in removed]
        if kept:
            resource["DependsOn"] = kept
        else:
            del resource["DependsOn"]


def transform_for_removal(
    template: dict[str, Any],
    removal_ids: Iterable[str],
    table: ReferenceTable,
) -> TransformResult:
    """Remove ``removal_ids`` from a copy of ``template`` without orphaning references.

    Every resource is set to Retain so CloudFormation deletes nothing. Ref,
    GetAtt and Sub references to removed resources are replaced with values
    from ``table``; DependsOn entries are dropped; Outputs still referencing a
    removed resource are deleted. A template left without resources becomes
    ``PLACEHOLDER_TEMPLATE``.
    """
    removal = set(removal_ids)
    result = set_retention_on_all(template)
    resources = result.get("Resources") or {}

    for logical_id, resource in resources.items():
        if logical_id not in removal and "Properties" in resource:
            resource["Properties"] = resolve_value(
                resource["Properties"], removal, table, ResolveMode.RESOLVE
            )

    if result.get("Outputs"):
        result["Outputs"] = resolve_value(result["Outputs"], removal, table, ResolveMode.RESOLVE)

    removed = [logical_id for logical_id in resources if logical_id in removal]
    for logical_id in removed:
        del resources[logical_id]

    for resource in resources.values():
        _strip_depends_on(resource, removal)

    if "Outputs" in result:
        outputs = result["Outputs"] or {}
        for name in [n for n, output in outputs.items() if find_reference(output, removal)]:
            logger.debug("Dropping output %s: references a removed resource", name)
            del outputs[name]
        if not outputs:
            del result["Outputs"]

    if not resources:
        result = copy.deepcopy(PLACEHOLDER_TEMPLATE)

    return TransformResult(template=result, removed=removed, resolved=table)


def analyze_cascade_removals(
    template: dict[str, Any], removal_ids: Iterable[str]
) -> list[CascadeRemoval]:
    """Resources that must also leave the stack because their properties reference one that does.

    Runs to a fixed point, so chains (C -> B -> A) are found. DependsOn alone
    never causes a cascade; Outputs are not inspected.
    """
    removal = set(removal_ids)
    resources = template.get("Resources") or {}
    cascades: list[CascadeRemoval] = []

    changed = True
    while changed:
        changed = False
        for logical_id, resource in resources.items():
            if logical_id in removal:
                continue
            target = find_reference(resource.get("Properties"), removal)
            if target is None:
                continue
            cascades.append(
                CascadeRemoval(
                    logical_id=logical_id,
                    resource_type=resource.get("Type", ""),
                    depends_on=target,
                )
            )
            removal.add(logical_id)
            changed = True

    return cascades


def prepare_for_import(
    template: dict[str, Any], overlays: Iterable[ImportOverlay]
) -> dict[str, Any]:
    """Copy of ``template`` ready for an IMPORT change set.

    Outputs are dropped because an import may not modify them. Each overlaid
    resource is set to Retain and, when observed properties are available,
    takes them in place of its template properties.
    """
    result = copy.deepcopy(template)
    result.pop("Outputs", None)
    resources = result.get("Resources") or {}

    for overlay in overlays:
        resource = resources.get(overlay.logical_id)
        if resource is None:
            continue
        resource["DeletionPolicy"] = "Retain"
        if overlay.actual_properties:
            resource["Properties"] = copy.deepcopy(overlay.actual_properties)
        elif overlay.actual_properties is not None:
            logger.warning(
                "Actual properties for %s are empty, keeping original template properties",
                overlay.logical_id,
            )

    return result


def add_resolution_outputs(
    template: dict[str, Any], references: ReferenceTable
) -> dict[str, Any]:
    """Copy of ``template`` with one temporary output per reference, in table order."""
    result = copy.deepcopy(template)
    outputs = result.setdefault("Outputs", {})
    for index, token in enumerate(references):
        outputs[f"{RESOLUTION_OUTPUT_PREFIX}{index}"] = {
            "Value": token.to_intrinsic(),
            "Description": f"Temporary output for resolving: {token.key}",
        }
    return result


def parse_resolved_outputs(
    outputs: Iterable[dict[str, str]], references: ReferenceTable
) -> ReferenceTable:
    """Match ``DriftResolve<N>`` stack outputs back to the N-th reference token."""
    tokens = list(references)
    by_index: dict[int, str] = {}
    for output in outputs:
        key = output.get("OutputKey") or ""
        suffix = key[len(RESOLUTION_OUTPUT_PREFIX) :]
        if key.startswith(RESOLUTION_OUTPUT_PREFIX) and suffix.isdigit():
            index = int(suffix)
            if index < len(tokens):
                by_index[index] = output.get("OutputValue")

    return {tokens[index]: by_index[index] for index in sorted(by_index)}


def restore_deletion_policies(
    template: dict[str, Any], original: dict[str, Any]
) -> dict[str, Any]:
    """Undo the pipeline's forced Retain, restoring each resource's authored policy."""
    result = copy.deepcopy(template)
    original_resources = original.get("Resources") or {}
    for logical_id, resource in (result.get("Resources") or {}).items():
        authored = original_resources.get(logical_id)
        if authored is None:
            continue
        if "DeletionPolicy" in authored:
            resource["DeletionPolicy"] = authored["DeletionPolicy"]
        else:
            resource.pop("DeletionPolicy", None)
    return result


class CfnYamlLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form tags and keeps dates as text."""


CfnYamlLoader.yaml_implicit_resolvers = {
    first: [r for r in resolvers if r[0] != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> dict:
    name = tag_suffix if tag_suffix in ("Ref", "Condition") else f"Fn::{tag_suffix}"

    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
        if tag_suffix == "GetAtt":
            value = value.split(".", 1)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    return {name: value}


CfnYamlLoader.add_multi_constructor("!", _construct_intrinsic)


def parse_template(body: str) -> dict[str, Any]:
    """Parse JSON or YAML template text into long-form intrinsic trees."""
    try:
        parsed = json.loads(body)
    except ValueError:
        try:
            parsed = yaml.load(body, Loader=CfnYamlLoader)
        except yaml.YAMLError as exc:
            raise InvalidTemplateError(f"Template is neither valid JSON nor YAML: {exc}") from exc

    if not isinstance(parsed, dict):
        raise InvalidTemplateError("Template must be a mapping at the top level")
    return parsed


def stringify_template(template: dict[str, Any]) -> str:
    """Render a template as indented JSON."""
    return json.dumps(template, indent=2)
