"""Prompt the operator for a remediation action per drifted resource."""

import click
from rich.console import Console
from rich.text import Text

from stackmend.models import (
    Action,
    CascadeRemoval,
    DiffType,
    DriftedResource,
    InteractiveDecisions,
    PropertyDiff,
    ReimportDecision,
)

REMOVE_WARNING = (
    "Note: Also remove this resource from your source template (CDK/CFN) "
    "to prevent it being recreated on next deploy."
)

MODIFIED_CHOICES = [Action.AUTOFIX.value, Action.SKIP.value, Action.REMOVE.value]
DELETED_CHOICES = [Action.REMOVE.value, Action.REIMPORT.value, Action.SKIP.value]


class NotATerminalError(click.UsageError):
    """Raised when prompting is required but stdin is not interactive."""

    def __init__(self):
        super().__init__(
            "Interactive mode requires a terminal. Use --yes (-y) for non-interactive mode."
        )


def _stdin_is_tty() -> bool:
    return click.get_text_stream("stdin").isatty()


def format_drift_diff(diffs: tuple[PropertyDiff, ...] | list[PropertyDiff]) -> Text:
    """Render property differences as a colored diff."""
    text = Text()
    for diff in diffs:
        if text:
            text.append("\n")
        text.append("    ")
        if diff.diff_type == DiffType.ADD:
            text.append("+ ", style="green")
            text.append(diff.property_path, style="dim")
            text.append(": ")
            text.append(diff.actual_value, style="green")
        elif diff.diff_type == DiffType.REMOVE:
            text.append("- ", style="red")
            text.append(diff.property_path, style="dim")
            text.append(": ")
            text.append(diff.expected_value, style="red")
        else:
            text.append(diff.property_path, style="dim")
            text.append(": ")
            text.append(diff.expected_value, style="red")
            text.append(" -> ")
            text.append(diff.actual_value, style="green")
    return text


def _print_header(console: Console, resource: DriftedResource, index: int, total: int) -> None:
    console.print(f"\n[bold][{index + 1}/{total}] {resource.logical_id}[/bold]", highlight=False)
    console.print(f"  Type: {resource.resource_type}", highlight=False)


def prompt_modified_resource(
    console: Console, resource: DriftedResource, index: int, total: int
) -> Action:
    _print_header(console, resource, index, total)
    console.print("  Status: [yellow]MODIFIED[/yellow]")
    console.print(f"  Physical ID: {resource.physical_id}", highlight=False)
    if resource.property_diffs:
        console.print("  [dim]Changes:[/dim]")
        console.print(format_drift_diff(resource.property_diffs))

    action = Action(
        click.prompt(
            "Action (autofix: reimport with actual state, skip: leave drift, "
            "remove: stop managing)",
            type=click.Choice(MODIFIED_CHOICES),
            default=Action.AUTOFIX.value,
        )
    )
    if action == Action.REMOVE:
        console.print(f"  [yellow]{REMOVE_WARNING}[/yellow]")
    return action


def prompt_deleted_resource(
    console: Console, resource: DriftedResource, index: int, total: int
) -> Action | ReimportDecision:
    _print_header(console, resource, index, total)
    console.print("  Status: [red]DELETED[/red]")
    console.print(f"  Former Physical ID: {resource.physical_id}", highlight=False)

    action = Action(
        click.prompt(
            "Action (remove: accept deletion, reimport: provide name/ID/ARN, skip: leave as-is)",
            type=click.Choice(DELETED_CHOICES),
            default=Action.REMOVE.value,
        )
    )
    if action == Action.REIMPORT:
        physical_id = ""
        while not physical_id:
            physical_id = click.prompt(
                f"Enter resource name, ID, or ARN for {resource.logical_id} "
                f"({resource.resource_type})"
            ).strip()
        return ReimportDecision(resource=resource, physical_id=physical_id)
    if action == Action.REMOVE:
        console.print(f"  [yellow]{REMOVE_WARNING}[/yellow]")
    return action


def confirm_actions(console: Console, decisions: InteractiveDecisions) -> bool:
    """Print the planned actions and ask for final confirmation."""
    console.print("\n[bold]Planned actions:[/bold]")
    if decisions.autofix:
        console.print(f"  [green]Autofix: {len(decisions.autofix)} resource(s)[/green]")
        for resource in decisions.autofix:
            console.print(
                f"    [dim]- {resource.logical_id} ({resource.resource_type})[/dim]",
                highlight=False,
            )
    if decisions.reimport:
        console.print(f"  [cyan]Re-import: {len(decisions.reimport)} resource(s)[/cyan]")
        for reimport in decisions.reimport:
            console.print(
                f"    [dim]- {reimport.resource.logical_id} -> {reimport.physical_id}[/dim]",
                highlight=False,
            )
    if decisions.remove:
        console.print(f"  [red]Remove: {len(decisions.remove)} resource(s)[/red]")
        for resource in decisions.remove:
            console.print(
                f"    [dim]- {resource.logical_id} ({resource.resource_type})[/dim]",
                highlight=False,
            )
    if decisions.skip:
        console.print(f"  [dim]Skip: {len(decisions.skip)} resource(s)[/dim]")

    if decisions.actionable_count == 0:
        return False
    return click.confirm(f"Proceed with {decisions.actionable_count} action(s)?", default=True)


def display_cascade_warning(
    permanent: list[CascadeRemoval],
    temporary: list[CascadeRemoval],
    console: Console | None = None,
) -> None:
    """Warn about resources pulled out of the stack by broken references."""
    console = console or Console(stderr=True)

    if permanent:
        console.print(
            f"\n[bold yellow]Warning: {len(permanent)} additional resource(s) will be "
            "permanently removed from the stack due to broken references:[/bold yellow]"
        )
        for removal in permanent:
            console.print(
                f"  [yellow]- {removal.logical_id} ({removal.resource_type})[/yellow]"
                f"[dim] references removed resource {removal.depends_on}[/dim]",
                highlight=False,
            )
        console.print(
            "[dim]These resources reference resources being removed and cannot remain "
            "in the stack. They are retained in AWS.[/dim]"
        )

    if temporary:
        console.print(
            f"\n[bold cyan]{len(temporary)} resource(s) will be temporarily removed from the "
            "stack and re-imported afterwards:[/bold cyan]"
        )
        for removal in temporary:
            console.print(
                f"  [cyan]- {removal.logical_id} ({removal.resource_type})[/cyan]"
                f"[dim] references re-imported resource {removal.depends_on}[/dim]",
                highlight=False,
            )


def collect_decisions(
    modified: list[DriftedResource],
    deleted: list[DriftedResource],
    auto_accept: bool,
    console: Console | None = None,
) -> InteractiveDecisions:
    """Decide an action for every drifted resource.

    With ``auto_accept``, modified resources are autofixed and deleted ones
    removed. Otherwise each resource is prompted for; declining the final
    confirmation skips everything.
    """
    if auto_accept:
        return InteractiveDecisions(autofix=list(modified), remove=list(deleted))

    if not _stdin_is_tty():
        raise NotATerminalError()

    console = console or Console(stderr=True)
    decisions = InteractiveDecisions()
    total = len(modified) + len(deleted)
    if total:
        console.print(
            f"\n[bold]Found {total} drifted resource(s). Choose an action for each:[/bold]"
        )

    for index, resource in enumerate(modified):
        action = prompt_modified_resource(console, resource, index, total)
        if action == Action.AUTOFIX:
            decisions.autofix.append(resource)
        elif action == Action.REMOVE:
            decisions.remove.append(resource)
        else:
            decisions.skip.append(resource)

    for offset, resource in enumerate(deleted):
        choice = prompt_deleted_resource(console, resource, len(modified) + offset, total)
        if isinstance(choice, ReimportDecision):
            decisions.reimport.append(choice)
        elif choice == Action.REMOVE:
            decisions.remove.append(resource)
        else:
            decisions.skip.append(resource)

    if not confirm_actions(console, decisions):
        return InteractiveDecisions(skip=[*modified, *deleted])
    return decisions
