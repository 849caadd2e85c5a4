"""Test run commands.

Start, resume and inspect a project's skill x case test runs.
"""

from pathlib import Path

import click
import orjson
from watchfiles import watch

from skillbench.core.errors import SkillbenchError
from skillbench.core.models import RUNNING
from skillbench.core.store import find_project_dir
from skillbench.services import Services


def _format_progress(progress: dict) -> str:
    done = progress["completed_tasks"] + progress["failed_tasks"]
    line = f"{progress.get('status', progress.get('project_status'))}: {done}/{progress['total_tasks']}"
    if progress["failed_tasks"]:
        line += f" ({progress['failed_tasks']} failed)"
    return line


def _echo_event(event: dict) -> None:
    last = event.get("last_result")
    if last:
        score = "-" if last["score"] is None else last["score"]
        click.echo(f"  {last['skill_id'][:8]} {last['case_id']}: {last['status']} score={score}")
    else:
        click.echo(_format_progress(event))
    if event.get("error"):
        click.echo(f"Error: {event['error']}", err=True)


def _wait_or_pause(services: Services, project_id: str) -> None:
    """Block until the run exits; Ctrl-C pauses it at the next task boundary."""
    scheduler = services.scheduler
    try:
        scheduler.wait(project_id)
    except KeyboardInterrupt:
        click.echo("Pausing after in-flight tasks finish...", err=True)
        scheduler.pause(project_id)
        scheduler.wait(project_id)


@click.group()
def test():
    """Run skills against their baseline cases."""
    pass


@test.command("start")
@click.argument("project_id")
@click.pass_obj
def test_start(services: Services, project_id: str) -> None:
    """Start a test run and follow it until it finishes."""
    try:
        info = services.scheduler.start(project_id, on_progress=_echo_event)
        click.echo(f"Started {info['total_tasks']} tasks for {project_id}")
        _wait_or_pause(services, project_id)
        click.echo(_format_progress(services.scheduler.get_progress(project_id)))
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)


@test.command("resume")
@click.argument("project_id")
@click.pass_obj
def test_resume(services: Services, project_id: str) -> None:
    """Resume a paused test run from its checkpoint."""
    try:
        info = services.scheduler.resume(project_id, on_progress=_echo_event)
        click.echo(f"Resumed {project_id}: {info['remaining_tasks']} tasks remaining")
        _wait_or_pause(services, project_id)
        click.echo(_format_progress(services.scheduler.get_progress(project_id)))
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)


@test.command("progress")
@click.argument("project_id")
@click.option("--follow", "-f", is_flag=True, help="Keep printing until the run stops.")
@click.pass_obj
def test_progress(services: Services, project_id: str, follow: bool) -> None:
    """Show a run's progress from its checkpoint."""
    try:
        progress = services.scheduler.get_progress(project_id)
        click.echo(_format_progress(progress))
        if not follow or progress["status"] != RUNNING:
            return

        config_path = find_project_dir(project_id) / "config.json"
        for _ in watch(config_path.parent):
            progress = services.scheduler.get_progress(project_id)
            click.echo(_format_progress(progress))
            if progress["status"] != RUNNING:
                return
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)


@test.command("results")
@click.argument("project_id")
@click.option("--skill", "skill_id", default=None, help="Only this skill's results.")
@click.option("--status", type=click.Choice(["completed", "failed"]), default=None)
@click.option("--page", default=1, show_default=True)
@click.option("--page-size", default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_obj
def test_results(
    services: Services,
    project_id: str,
    skill_id: str | None,
    status: str | None,
    page: int,
    page_size: int,
    as_json: bool,
) -> None:
    """List result records and the ranked summary."""
    try:
        results = services.scheduler.get_results(
            project_id, skill_id=skill_id, status=status, page=page, page_size=page_size
        )
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(orjson.dumps(results, option=orjson.OPT_INDENT_2).decode())
        return

    summary = results["summary"]
    if summary:
        click.echo(f"{'RANK':<5} {'SKILL':<24} {'AVG':>6} {'DONE':>5} {'FAILED':>7}")
        click.echo("-" * 51)
        for entry in summary["ranking"]:
            click.echo(
                f"{entry['rank']:<5} {entry['skill_name'][:24]:<24} "
                f"{entry['avg_score']:>6.1f} {entry['completed_cases']:>5} {entry['failed_cases']:>7}"
            )
        click.echo()

    click.echo(f"{results['total']} records (page {results['page']})")
    for r in results["items"]:
        total = (r.get("scores") or {}).get("total")
        score = "-" if total is None else total
        line = f"  {r['skill_id'][:8]} {r['case_id']:<12} {r['status']:<10} score={score}"
        if r.get("error"):
            line += click.style(f"  {r['error']}", fg="red")
        click.echo(line)


@test.command("retry")
@click.argument("project_id")
@click.argument("skill_id")
@click.argument("case_id")
@click.pass_obj
def test_retry(services: Services, project_id: str, skill_id: str, case_id: str) -> None:
    """Re-run one case for one skill, replacing its result."""
    try:
        info = services.scheduler.retry_case(project_id, skill_id, case_id, on_progress=_echo_event)
        services.scheduler.wait(info["task_id"])
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)


@test.command("export")
@click.argument("project_id")
@click.argument("dest", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json", show_default=True)
@click.pass_obj
def test_export(services: Services, project_id: str, dest: Path, fmt: str) -> None:
    """Export every result record as JSON or CSV."""
    try:
        path = services.scheduler.export_results(project_id, fmt, dest)
        click.echo(f"Exported results to {path}")
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)
