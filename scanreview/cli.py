from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from scanreview.core import storage
from scanreview.core.client import RestAnalysisClient
from scanreview.core.config import DEFAULT_MAX_DURATION_HOURS, ReviewConfig
from scanreview.core.orchestrator import PollingOrchestrator, review_build
from scanreview.core.submit import resubmit_dynamic_analysis
from scanreview.core.utils import ReviewError
from scanreview.reporting.summary import print_summary, trend_series

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

app = typer.Typer(help="scanreview CLI")


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Verbose logging and version details"),
):
    """Resubmit dynamic analyses and review their results per build."""
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)
    ctx.obj = {"debug": debug}


def _load_config(ctx: typer.Context) -> ReviewConfig:
    config = ReviewConfig.from_env()
    if ctx.obj and ctx.obj.get("debug"):
        config = config.model_copy(update={"debug": True})
    return config


def _latest_build() -> int:
    numbers = storage.list_build_numbers()
    if not numbers:
        typer.echo("No builds found. Run 'resubmit' first or pass --build.", err=True)
        raise typer.Exit(code=1)
    return numbers[-1]


def _emit(record, format: str, output: Optional[str]) -> None:
    if format == "json":
        text = json.dumps(record.model_dump(mode="json"), indent=2)
    elif format == "trend":
        text = json.dumps(trend_series(record), indent=2)
    else:
        if format != "table":
            typer.echo(f"Warning: Unknown format '{format}', using table format")
        print_summary(record)
        return
    if output:
        Path(output).write_text(text, encoding="utf-8")
        typer.echo(f"Report saved to: {output}")
    else:
        typer.echo(text)


@app.command()
def resubmit(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", help="Dynamic analysis name"),
    max_duration: int = typer.Option(DEFAULT_MAX_DURATION_HOURS, "--max-duration", help="Maximum scan duration in hours (1-600)"),
    fail_on_error: bool = typer.Option(False, "--fail-on-error/--no-fail-on-error", help="Fail when the analysis cannot be resubmitted"),
    build: Optional[int] = typer.Option(None, "--build", help="Build number (defaults to a new build)"),
):
    """Resubmit a dynamic analysis for a new build."""
    config = _load_config(ctx)
    build_number = build if build is not None else storage.create_build()
    ok = resubmit_dynamic_analysis(
        RestAnalysisClient(config),
        config,
        name,
        max_duration,
        fail_on_error,
        build_number,
    )
    typer.echo(f"Build: {build_number}")
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def review(
    ctx: typer.Context,
    build: Optional[int] = typer.Option(None, "--build", help="Build number (defaults to the latest build)"),
    wait_hours: int = typer.Option(1, "--wait-hours", help="Hours to wait for results (0-600)"),
    fail_on_policy: bool = typer.Option(True, "--fail-on-policy/--no-fail-on-policy", help="Fail when the policy is not passed"),
    format: str = typer.Option("table", "--format", help="Output format: table, json, or trend"),
    output: Optional[str] = typer.Option(None, "--output", help="Output file path (for json/trend formats)"),
):
    """Wait for the build's dynamic analysis results and record them."""
    config = _load_config(ctx)
    build_number = build if build is not None else _latest_build()
    orchestrator = PollingOrchestrator(RestAnalysisClient(config), storage.FileBuildHistory(), config=config)
    try:
        outcome = review_build(orchestrator, build_number, wait_hours, fail_on_policy)
    except ReviewError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)

    _emit(outcome.record, format, output)
    if outcome.failure is not None:
        reason = "timed out" if outcome.timed_out else "failed"
        typer.echo(f"Review {reason}: {outcome.failure}", err=True)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def show(
    build: Optional[int] = typer.Option(None, "--build", help="Build number (defaults to the latest build)"),
    format: str = typer.Option("table", "--format", help="Output format: table, json, or trend"),
    output: Optional[str] = typer.Option(None, "--output", help="Output file path (for json/trend formats)"),
):
    """Show the recorded review of a build."""
    build_number = build if build is not None else _latest_build()
    record = storage.load_record(build_number)
    if record is None:
        typer.echo(f"Build {build_number} has no review record", err=True)
        raise typer.Exit(code=1)
    _emit(record, format, output)


@app.command()
def builds():
    """List builds and their review status."""
    items = storage.list_builds()
    if not items:
        typer.echo("No builds found.")
        return
    for item in items:
        if not item["reviewed"]:
            status = "not reviewed"
        elif not item["available"]:
            status = "no data"
        else:
            status = f"{item['policy_compliance_status']} ({item['total_count']} flaws)"
        typer.echo(f"build-{item['build']}: {status}")


if __name__ == "__main__":
    app()
