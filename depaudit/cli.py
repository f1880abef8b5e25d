"""
Command-line interface for depaudit.

Provides a rich, user-friendly CLI using Click with:
- Clear help messages
- Progress indicators
- Colored output
- CI-friendly exit codes
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from depaudit import __version__
from depaudit.alerting.sinks import AlertSink, GitHubIssueSink, MemoryAlertSink
from depaudit.config import PipelineConfig, load_config
from depaudit.constants import STAGE_TITLES, STAGE_VULNERABILITY
from depaudit.core.models import (
    AuditLevel,
    Finding,
    FindingSet,
    PipelineRun,
    RunOutcome,
    StageOutcome,
    Trigger,
    TriggerKind,
)
from depaudit.engine.artifacts import FileArtifactStore
from depaudit.engine.invoker import ToolOutput
from depaudit.engine.pipeline import Pipeline, PipelineResult
from depaudit.exceptions import ConfigurationError, DepAuditError, RunCancelled
from depaudit.logging_config import get_logger, setup_logging
from depaudit.policy import PolicyStore, load_policy
from depaudit.reporters import JSONReporter, MarkdownReporter, SarifReporter
from depaudit.stages import VulnerabilityStage, default_stages

logger = get_logger("cli")
console = Console()

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

_OUTCOME_STYLES = {
    StageOutcome.SUCCESS: "[green]✓ success[/green]",
    StageOutcome.FAILURE: "[yellow]✗ failure[/yellow]",
    StageOutcome.ERROR: "[red]⚠ error[/red]",
}


def print_banner() -> None:
    """Print the application banner."""
    console.print(
        Panel(
            f"[bold]depaudit v{__version__}[/bold]\n"
            "Dependency security-audit pipeline",
            border_style="blue",
            expand=False,
        )
    )


@click.group()
@click.version_option(version=__version__, prog_name="depaudit")
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output"
)
@click.option(
    "--quiet", "-q",
    is_flag=True,
    help="Suppress non-essential output"
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output"
)
@click.option(
    "--json-logs",
    is_flag=True,
    help="Emit log records as single-line JSON"
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool, no_color: bool, json_logs: bool) -> None:
    """
    depaudit - Security-audit pipeline for a Rust dependency graph.

    Runs the vulnerability, dependency-hygiene and supply-chain scans,
    applies the exception policy, writes a SARIF document and raises
    deduplicated alerts when the pipeline degrades.

    Examples:

        # Nightly run with GitHub issue alerts
        depaudit run . --trigger scheduled --alert-sink github

        # Local check without alerting
        depaudit run . --audit-level comprehensive

        # Show the exception policy
        depaudit policy show --policy deny.toml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["no_color"] = no_color

    log_level = "DEBUG" if verbose else ("WARNING" if quiet else "INFO")
    setup_logging(level=log_level, json_output=json_logs, no_color=no_color)


@main.command()
@click.argument(
    "project",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    default=".",
)
@click.option(
    "--trigger", "-t",
    default="manual",
    envvar="DEPAUDIT_TRIGGER",
    show_default=True,
    help="What started the run: scheduled, push or manual (CI event names accepted)"
)
@click.option(
    "--audit-level", "-l",
    type=click.Choice([level.value for level in AuditLevel]),
    default=AuditLevel.STANDARD.value,
    show_default=True,
    help="Which stages run and how strict they are"
)
@click.option(
    "--config", "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file"
)
@click.option(
    "--policy", "-p",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Exception policy (YAML or deny.toml)"
)
@click.option(
    "--output", "-o",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for reports and raw artifacts"
)
@click.option(
    "--alert-sink",
    type=click.Choice(["github", "memory", "none"]),
    default="none",
    show_default=True,
    help="Where alerts are raised"
)
@click.option(
    "--run-id",
    help="Run identity (defaults to a generated id)"
)
@click.pass_context
def run(
    ctx: click.Context,
    project: Path,
    trigger: str,
    audit_level: str,
    config: Optional[Path],
    policy: Optional[Path],
    output: Optional[Path],
    alert_sink: str,
    run_id: Optional[str],
) -> None:
    """
    Run the security-audit pipeline.

    PROJECT is the project root (defaults to current directory).

    Exit codes: 0 all stages clean, 1 degraded, 2 configuration error,
    130 cancelled.

    Examples:

        # Scheduled run, alerting on GitHub
        depaudit run . --trigger schedule --alert-sink github

        # Only the vulnerability scan
        depaudit run . --audit-level minimal
    """
    quiet = ctx.obj.get("quiet", False)

    if not quiet:
        print_banner()

    try:
        trigger_kind = TriggerKind.from_string(trigger)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--trigger") from None

    try:
        pipeline_config = _load_config(config, project, policy, output)
        policy_store = _load_policy_store(pipeline_config)
        sink = _build_sink(alert_sink, pipeline_config)
    except ConfigurationError as e:
        console.print(f"\n[red]Configuration Error:[/red] {e}")
        sys.exit(EXIT_CONFIG)

    pipeline = Pipeline.from_config(pipeline_config, policy_store, alert_sink=sink)
    run_trigger = Trigger(trigger_kind, AuditLevel(audit_level))

    if not quiet:
        console.print(
            f"\n[bold]Auditing:[/bold] {project.resolve()} "
            f"({run_trigger.kind.value}, {run_trigger.audit_level.value})\n"
        )

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            disable=quiet,
        ) as progress:
            progress.add_task("Running scan stages...", total=None)
            result = pipeline.run(run_trigger, run_id=run_id)
    except (KeyboardInterrupt, RunCancelled):
        pipeline.cancel()
        console.print("\n[yellow]Run cancelled, no report or alert produced[/yellow]")
        sys.exit(EXIT_CANCELLED)
    finally:
        if isinstance(sink, GitHubIssueSink):
            sink.close_client()

    _write_reports(result, pipeline_config)

    if not quiet:
        _display_summary(result)

    if result.run.outcome is RunOutcome.SUCCESS:
        if not quiet:
            console.print("\n[green]✓ All stages clean[/green]")
        sys.exit(EXIT_OK)

    if not quiet:
        unhealthy = ", ".join(result.run.unhealthy_stages)
        console.print(f"\n[red]✗ Pipeline degraded: {unhealthy}[/red]")
    sys.exit(EXIT_DEGRADED)


@main.group()
def policy() -> None:
    """Inspect and validate the exception policy."""


@policy.command("show")
@click.option(
    "--policy", "-p", "policy_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Exception policy (YAML or deny.toml)"
)
def policy_show(policy_path: Path) -> None:
    """List every exception entry with its rationale."""
    try:
        store = load_policy(policy_path)
    except ConfigurationError as e:
        console.print(f"[red]Policy Error:[/red] {e}")
        sys.exit(EXIT_CONFIG)

    table = Table(title=f"Exception Policy ({policy_path.name})")
    table.add_column("Identifier", style="cyan")
    table.add_column("Scope", style="bold")
    table.add_column("Rationale")
    table.add_column("Reference", style="dim")

    for entry in store:
        rationale = entry.rationale
        if len(rationale) > 60:
            rationale = rationale[:60] + "..."
        table.add_row(entry.identifier, entry.scope.value, rationale, entry.reference)

    console.print(table)


@policy.command("check")
@click.option(
    "--policy", "-p", "policy_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Exception policy (YAML or deny.toml)"
)
@click.option(
    "--run-report",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="pipeline-run.json to look for entries that matched nothing"
)
def policy_check(policy_path: Path, run_report: Optional[Path]) -> None:
    """
    Validate the exception policy.

    With --run-report, also list entries that suppressed nothing in that
    run. Such entries are inert, not errors.
    """
    try:
        store = load_policy(policy_path)
    except ConfigurationError as e:
        console.print(f"[red]✗ Invalid policy:[/red] {e}")
        sys.exit(EXIT_CONFIG)

    counts: dict[str, int] = {}
    for entry in store:
        counts[entry.scope.value] = counts.get(entry.scope.value, 0) + 1
    summary = ", ".join(f"{scope}: {n}" for scope, n in sorted(counts.items())) or "empty"
    console.print(f"[green]✓ {len(store)} exception(s) valid[/green] ({summary})")

    if run_report is None:
        return

    findings = _findings_from_report(run_report)
    unused = store.unused_entries(findings)
    if unused:
        console.print(f"[yellow]{len(unused)} entry(ies) matched nothing in this run:[/yellow]")
        for entry in unused:
            console.print(f"  - {entry.identifier} ({entry.scope.value})")
    else:
        console.print("Every entry matched at least one finding.")


@main.command()
@click.argument(
    "artifact",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--policy", "-p", "policy_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Exception policy applied before rendering"
)
@click.option(
    "--output", "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the document here instead of stdout"
)
@click.option(
    "--config", "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (tool identification block)"
)
def sarif(
    artifact: Path,
    policy_path: Optional[Path],
    output: Optional[Path],
    config: Optional[Path],
) -> None:
    """
    Build the SARIF document from a stored vulnerability artifact.

    ARTIFACT is raw cargo-audit JSON output, e.g. a stored
    vulnerability.cargo-audit.out file.
    """
    try:
        pipeline_config = load_config(config) if config else PipelineConfig()
        store = load_policy(policy_path) if policy_path else PolicyStore()
    except (ConfigurationError, ValidationError, ValueError) as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(EXIT_CONFIG)

    stage = VulnerabilityStage()
    try:
        findings = stage.parse(ToolOutput(raw=artifact.read_text(encoding="utf-8"), exit_status=0))
    except DepAuditError as e:
        console.print(f"[red]Unreadable artifact:[/red] {e}")
        sys.exit(EXIT_DEGRADED)

    finding_set = FindingSet(
        stage=STAGE_VULNERABILITY,
        outcome=StageOutcome.SUCCESS,
        findings=store.apply(findings),
    )
    settings = pipeline_config.interchange
    reporter = SarifReporter(
        tool_name=settings.tool_name,
        tool_version=settings.tool_version,
        information_uri=settings.information_uri,
    )
    document = reporter.render(finding_set)

    if output is None:
        click.echo(document, nl=False)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(document, encoding="utf-8")
        console.print(f"📄 SARIF: {output}")


@main.group()
def artifacts() -> None:
    """Manage stored raw tool output."""


@artifacts.command("prune")
@click.option(
    "--dir", "-d", "artifact_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Artifact directory (defaults to the configured one)"
)
@click.option(
    "--config", "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (retention windows)"
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Only report what would be removed"
)
def artifacts_prune(artifact_dir: Optional[Path], config: Optional[Path], dry_run: bool) -> None:
    """Discard artifacts older than their stage's retention window."""
    try:
        pipeline_config = load_config(config) if config else PipelineConfig()
    except (ConfigurationError, ValidationError, ValueError) as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(EXIT_CONFIG)

    store = FileArtifactStore(
        artifact_dir or pipeline_config.artifact_dir,
        retention_days={s: cfg.retention_days for s, cfg in pipeline_config.stages.items()},
    )
    removed = store.discard_expired(dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb} {removed} expired artifact(s)")


@main.command()
def stages() -> None:
    """List the scan stages."""
    table = Table(title="Scan Stages")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Threshold")
    table.add_column("Tools")
    table.add_column("Description")

    for stage in default_stages():
        tools = ", ".join(
            tool.name if tool.required else f"{tool.name} [dim](optional)[/dim]"
            for tool in stage.tools
        )
        table.add_row(stage.id, stage.name, str(stage.default_threshold), tools, stage.description)

    console.print(table)


@main.command()
def version() -> None:
    """Display version information."""
    console.print(f"depaudit v{__version__}")


def _load_config(
    config_path: Optional[Path],
    project: Path,
    policy_path: Optional[Path],
    output: Optional[Path],
) -> PipelineConfig:
    """Load configuration and apply CLI overrides."""
    overrides: dict[str, object] = {"project_dir": project}
    if policy_path is not None:
        overrides["policy_path"] = policy_path
    if output is not None:
        overrides["artifact_dir"] = output

    try:
        return load_config(config_path, **overrides)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e.error_count()} error(s)",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e
    except (FileNotFoundError, ValueError) as e:
        raise ConfigurationError(str(e)) from e


def _load_policy_store(config: PipelineConfig) -> PolicyStore:
    """Load the configured policy, falling back to the project's deny.toml."""
    path = config.policy_path
    if path is None:
        candidate = config.project_dir / "deny.toml"
        if candidate.is_file():
            path = candidate
    if path is None:
        logger.warning("No exception policy found, nothing will be suppressed")
        return PolicyStore()
    return load_policy(path)


def _build_sink(kind: str, config: PipelineConfig) -> AlertSink | None:
    if kind == "none":
        return None
    if kind == "memory":
        return MemoryAlertSink()

    github = config.github
    if not github.repository:
        raise ConfigurationError("GitHub alerting needs github.repository (DEPAUDIT_GITHUB__REPOSITORY)")
    if not github.token:
        raise ConfigurationError("GitHub alerting needs a token (DEPAUDIT_GITHUB__TOKEN)")
    return GitHubIssueSink(
        github.repository,
        token=github.token,
        api_url=github.api_url,
        timeout=github.timeout_seconds,
    )


def _findings_from_report(path: Path) -> list[Finding]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return [
            Finding.from_dict(raw)
            for stage in data.get("stages", {}).values()
            for raw in stage.get("findings", [])
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        console.print(f"[red]Unreadable run report:[/red] {type(e).__name__}")
        sys.exit(EXIT_CONFIG)


def _write_reports(result: PipelineResult, config: PipelineConfig) -> None:
    """Write the SARIF document, the JSON run record and the Markdown summary."""
    settings = config.interchange
    output_dir = config.artifact_dir
    reporters = [
        SarifReporter(
            tool_name=settings.tool_name,
            tool_version=settings.tool_version,
            information_uri=settings.information_uri,
            filename=settings.filename,
        ),
        JSONReporter(),
        MarkdownReporter(
            retention_days={s: cfg.retention_days for s, cfg in config.stages.items()}
        ),
    ]

    for reporter in reporters:
        try:
            path = reporter.write(result.run, output_dir)
            console.print(f"  📄 {reporter.format_name}: {path}")
        except DepAuditError as e:
            console.print(f"  [red]✗ Failed to write {reporter.format_name}: {e}[/red]")


def _display_summary(result: PipelineResult) -> None:
    """Display run summary in the terminal."""
    run: PipelineRun = result.run
    console.print("\n")

    table = Table(title=f"Run {run.run_id}", show_header=True)
    table.add_column("Stage", style="bold")
    table.add_column("Outcome")
    table.add_column("Blocking", justify="right")
    table.add_column("Suppressed", justify="right")
    table.add_column("Detail")

    for stage_id, finding_set in run.finding_sets.items():
        detail = finding_set.error or ("skipped: not configured" if finding_set.skipped else "")
        if finding_set.warnings:
            detail = "; ".join(filter(None, [detail, *finding_set.warnings]))
        table.add_row(
            STAGE_TITLES.get(stage_id, stage_id),
            _OUTCOME_STYLES[finding_set.outcome],
            str(len(finding_set.blocking_findings)),
            str(len(finding_set.suppressed_findings)),
            detail,
        )

    console.print(table)

    if result.alert is not None:
        outcome = result.alert
        if outcome.created and outcome.alert is not None:
            console.print(f"[red]🚨 Alert raised:[/red] {outcome.alert.title} (ref {outcome.alert.reference})")
        elif outcome.alert is not None:
            console.print(f"[yellow]Alert already open[/yellow] (ref {outcome.alert.reference}), not duplicated")
        else:
            console.print(f"[dim]No alert: {outcome.decision.reason}[/dim]")
    if result.alert_error:
        console.print(f"[red]✗ Alerting failed:[/red] {result.alert_error}")


if __name__ == "__main__":
    main()
