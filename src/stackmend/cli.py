"""CLI entrypoint for stackmend."""

import logging
import os
import sys
from dataclasses import replace
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from stackmend.aws.client import CloudFormationClient
from stackmend.config import SLACK_WEBHOOK_ENV, Settings
from stackmend.errors import ConfigurationError, InvalidPlanError
from stackmend.formatter import format_json, format_markdown, format_table
from stackmend.integrations.slack import post_to_slack, validate_webhook_url
from stackmend.plan import read_plan
from stackmend.remediator import Remediator

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_ABORTED = 130


def setup_logging(verbose: bool) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _tool_version() -> str | None:
    try:
        return version("stackmend")
    except PackageNotFoundError:
        return None


@click.command()
@click.argument("stack_name")
@click.option("--region", default=None, help="AWS region.")
@click.option("--profile", default=None, help="AWS credentials profile.")
@click.option(
    "--dry-run", is_flag=True, help="Show what would be done without changing the stack."
)
@click.option(
    "--yes", "-y", "auto_accept", is_flag=True, help="Accept default actions without prompting."
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--export-plan",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write decisions to a plan file and exit.",
)
@click.option(
    "--apply-plan",
    type=click.Path(exists=True, dir_okay=False, readable=True),
    default=None,
    help="Apply decisions from a plan file without detection or prompts.",
)
@click.option(
    "--checkpoint-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory for the recovery checkpoint file.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json", "markdown"]),
    default="table",
    help="Output format.",
)
@click.option("--post-slack", is_flag=True, help="Post the summary to the Slack webhook.")
def main(
    stack_name,
    region,
    profile,
    dry_run,
    auto_accept,
    verbose,
    export_plan,
    apply_plan,
    checkpoint_dir,
    output_format,
    post_slack,
):
    """Remediate CloudFormation drift on STACK_NAME without deleting resources."""
    setup_logging(verbose)

    if export_plan and apply_plan:
        click.echo("Error: --export-plan and --apply-plan are mutually exclusive.", err=True)
        sys.exit(EXIT_USAGE)

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_USAGE)
    if checkpoint_dir:
        settings = replace(settings, checkpoint_dir=Path(checkpoint_dir))

    webhook_url = None
    if post_slack:
        webhook_url = os.environ.get(SLACK_WEBHOOK_ENV)
        if not webhook_url:
            click.echo(f"Error: {SLACK_WEBHOOK_ENV} env var not set.", err=True)
            sys.exit(EXIT_USAGE)
        try:
            validate_webhook_url(webhook_url)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(EXIT_USAGE)

    plan = None
    if apply_plan:
        try:
            plan = read_plan(apply_plan, stack_name)
        except InvalidPlanError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(EXIT_USAGE)

    client = CloudFormationClient(
        region=region,
        profile=profile,
        poll_interval=settings.poll_interval,
        update_timeout=settings.update_timeout,
        change_set_timeout=settings.change_set_timeout,
    )
    remediator = Remediator(
        client,
        stack_name,
        settings,
        dry_run=dry_run,
        auto_accept=auto_accept,
        plan=plan,
        export_plan_path=export_plan,
        tool_version=_tool_version(),
    )

    try:
        result = remediator.run()
    except click.Abort:
        click.echo("Aborted.", err=True)
        sys.exit(EXIT_ABORTED)
    except click.UsageError as exc:
        click.echo(f"Error: {exc.format_message()}", err=True)
        sys.exit(EXIT_USAGE)

    formatters = {
        "table": format_table,
        "json": format_json,
        "markdown": format_markdown,
    }
    click.echo(formatters[output_format](result))

    if webhook_url:
        post_to_slack(report=format_markdown(result), webhook_url=webhook_url)

    sys.exit(0 if result.success else EXIT_FAILURE)
