"""Iteration commands.

Run the recompose -> test -> analyse loop and inspect its reports.
"""

import click
import orjson

from skillbench.core.errors import SkillbenchError
from skillbench.core.models import IterationParams
from skillbench.services import Services


def _echo_round(event: dict) -> None:
    delta = event["score_delta"]
    delta_text = "" if delta is None else f" ({delta:+.1f})"
    click.echo(
        f"Round {event['round']}: {event['avg_score']:.1f}{delta_text} "
        f"skill={event['skill_id'][:8]} plateau={event['plateau_level']}"
    )


def _echo_report(report: dict) -> None:
    click.echo(
        f"Stopped after {report['total_rounds']} rounds: {report['stop_reason']}"
    )
    click.echo(
        f"Best: round {report['best_round']} "
        f"{click.style(str(report['best_avg_score']), fg='green')} "
        f"({report['best_skill_name']}, {report['best_skill_id']})"
    )


@click.group()
def iterate():
    """Iteratively recompose and re-test a skill."""
    pass


@iterate.command("run")
@click.argument("project_id")
@click.option("--skill", "skill_id", required=True, help="Skill to start iterating from.")
@click.option("--max-rounds", default=3, show_default=True)
@click.option("--stop-threshold", type=float, default=None, help="Stop once a round scores this.")
@click.option("--beam-width", default=1, show_default=True)
@click.option("--retention-rules", default="", help="Rules the recomposer must keep.")
@click.option("--segment", "segments", multiple=True, help="Advantage segment id to keep (repeatable).")
@click.option("--plateau-threshold", default=1.0, show_default=True)
@click.option("--plateau-rounds", default=2, show_default=True)
@click.pass_obj
def iterate_run(
    services: Services,
    project_id: str,
    skill_id: str,
    max_rounds: int,
    stop_threshold: float | None,
    beam_width: int,
    retention_rules: str,
    segments: tuple[str, ...],
    plateau_threshold: float,
    plateau_rounds: int,
) -> None:
    """Run an iteration loop and wait for its report.

    Ctrl-C stops the loop at the next round boundary.
    """
    params = IterationParams(
        recomposed_skill_id=skill_id,
        max_rounds=max_rounds,
        stop_threshold=stop_threshold,
        retention_rules=retention_rules,
        selected_segment_ids=list(segments),
        beam_width=beam_width,
        plateau_threshold=plateau_threshold,
        plateau_rounds_before_escape=plateau_rounds,
    )
    controller = services.controller
    try:
        info = controller.start_iteration(project_id, params, on_round_complete=_echo_round)
        click.echo(f"Iteration {info['iteration_id']} started")
        try:
            controller.wait(project_id)
        except KeyboardInterrupt:
            click.echo("Stopping after the current round...", err=True)
            controller.stop_iteration(project_id)
            controller.wait(project_id)
        _echo_report(controller.get_report(project_id))
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)


@iterate.command("progress")
@click.argument("project_id")
@click.pass_obj
def iterate_progress(services: Services, project_id: str) -> None:
    """Show round snapshots of the current or last iteration."""
    try:
        progress = services.controller.get_progress(project_id)
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)

    click.echo(
        f"{progress['status']}: round {progress['current_round']} "
        f"({progress['current_phase']})"
    )
    for r in progress["rounds"]:
        score = "-" if r["avg_score"] is None else r["avg_score"]
        click.echo(f"  round {r['round']:<3} {r['status']:<10} {score}")


@iterate.command("report")
@click.argument("project_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_obj
def iterate_report(services: Services, project_id: str, as_json: bool) -> None:
    """Show the final iteration report."""
    try:
        report = services.controller.get_report(project_id)
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode())
        return
    _echo_report(report)
    for r in report["rounds"]:
        delta = "" if r["score_delta"] is None else f" ({r['score_delta']:+.1f})"
        click.echo(f"  round {r['round']:<3} {r['strategy']:<16} {r['avg_score']}{delta}")


@iterate.command("log")
@click.argument("project_id")
@click.pass_obj
def iterate_log(services: Services, project_id: str) -> None:
    """Print the beam exploration log as JSON."""
    try:
        log = services.controller.get_exploration_log(project_id)
    except SkillbenchError as e:
        click.echo(f"Error: {e.describe()}", err=True)
        raise SystemExit(1)
    click.echo(orjson.dumps(log, option=orjson.OPT_INDENT_2).decode())
