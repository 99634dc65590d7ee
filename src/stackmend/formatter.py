"""Output formatters for remediation results."""

import json

from rich.console import Console
from rich.text import Text
from rich.tree import Tree

from stackmend.models import RemediationResult


def _escape_md_cell(value: str) -> str:
    """Escape characters that break markdown table cells."""
    return value.replace("|", "\\|").replace("\n", " ")


def _headline(result: RemediationResult) -> str:
    if not result.success:
        return "FAILED"
    if result.dry_run:
        return "DRY RUN"
    return "SUCCESS"


def format_json(result: RemediationResult) -> str:
    """Format a result as JSON."""
    return json.dumps(
        {
            "stack_name": result.stack_name,
            "success": result.success,
            "dry_run": result.dry_run,
            "stage": result.stage,
            "failed_stage": result.failed_stage,
            "remediated": result.remediated,
            "removed": result.removed,
            "skipped": result.skipped,
            "errors": result.errors,
            "planned_imports": [r.to_api() for r in result.planned_imports],
            "plan_path": result.plan_path,
            "checkpoint_path": result.checkpoint_path,
        },
        indent=2,
    )


def format_markdown(result: RemediationResult) -> str:
    """Format a result as Markdown."""
    stack_name = _escape_md_cell(result.stack_name)
    lines = [f"## Drift Remediation: {stack_name} ({_headline(result)})", ""]

    if result.planned_imports:
        lines.append("| Resource | Type | Identifier |")
        lines.append("|----------|------|------------|")
        for planned in result.planned_imports:
            identifier = _escape_md_cell(json.dumps(planned.identifier, sort_keys=True))
            lines.append(
                f"| {_escape_md_cell(planned.logical_id)} "
                f"| {_escape_md_cell(planned.resource_type)} | `{identifier}` |"
            )
        lines.append("")

    sections = [
        ("Remediated", result.remediated),
        ("Removed from stack", result.removed),
        ("Skipped", result.skipped),
    ]
    for title, logical_ids in sections:
        if logical_ids:
            lines.append(f"**{title}:** " + ", ".join(f"`{i}`" for i in logical_ids))

    if result.plan_path:
        lines.append(f"**Plan:** `{result.plan_path}`")
    if result.checkpoint_path:
        lines.append(f"**Recovery checkpoint:** `{result.checkpoint_path}`")

    if result.errors:
        lines.append("")
        lines.append(f"**Failed during `{result.failed_stage}`:**")
        for error in result.errors:
            lines.append(f"- {_escape_md_cell(error)}")

    if not any((result.planned_imports, result.remediated, result.removed, result.skipped)):
        if result.success:
            lines.append("No drift remediated.")

    return "\n".join(lines)


def format_table(result: RemediationResult) -> str:
    """Format a result as a Rich tree view, returned as a string."""
    console = Console(record=True, width=120)
    style = "red" if not result.success else "yellow" if result.dry_run else "green"
    tree = Tree(
        Text.from_markup(
            f"[bold]Drift Remediation[/bold] [{style}]{result.stack_name}[/{style}]"
            f" - {_headline(result)}"
        )
    )

    if result.planned_imports:
        branch = tree.add("[cyan]Would import[/cyan]")
        for planned in result.planned_imports:
            branch.add(
                Text(
                    f"{planned.logical_id} ({planned.resource_type}) "
                    f"{json.dumps(planned.identifier, sort_keys=True)}"
                )
            )

    for title, color, logical_ids in (
        ("Remediated", "green", result.remediated),
        ("Would remove" if result.dry_run else "Removed from stack", "yellow", result.removed),
        ("Skipped", "dim", result.skipped),
    ):
        if logical_ids:
            branch = tree.add(f"[{color}]{title}[/{color}]")
            for logical_id in logical_ids:
                branch.add(Text(logical_id))

    if result.plan_path:
        tree.add(Text(f"Plan written to {result.plan_path}"))
    if result.checkpoint_path:
        tree.add(Text(f"Recovery checkpoint: {result.checkpoint_path}"))

    if result.errors:
        branch = tree.add(f"[red]Failed during {result.failed_stage}[/red]")
        for error in result.errors:
            branch.add(Text(error))

    console.print(tree)
    return console.export_text()
