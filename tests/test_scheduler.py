"""Tests for the run scheduler (skillbench.core.scheduler)."""

import csv
import threading

import pytest

from skillbench.core.errors import StateError
from skillbench.core.scheduler import RunScheduler, build_task_list
from skillbench.core.store import find_project_dir, load_project_config, read_json, result_path, write_json

from conftest import FakeOracle, make_project


def _run(scheduler, project_id, events=None):
    scheduler.start(project_id, on_progress=events.append if events is not None else None)
    assert scheduler.wait(project_id, timeout=10)


def _record_files(project_id):
    return sorted((find_project_dir(project_id) / "results").glob("*/*.json"))


# ---------------------------------------------------------------------------
# Task matrix
# ---------------------------------------------------------------------------


def test_task_list_is_skill_by_case(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha"), ("beta", "beta")], cases=3)
    project_dir = find_project_dir(project_id)
    tasks = build_task_list(project_dir, load_project_config(project_dir))

    assert len(tasks) == 6
    assert [t.key for t in tasks[:3]] == [(skill_ids[0], f"case-{i}") for i in (1, 2, 3)]
    assert tasks[0].skill_content == "alpha"
    assert tasks[0].result_path == result_path(project_dir, skill_ids[0], "case-1")
    assert tasks[0].working_dir.name == f"skill_{skill_ids[0][:8]}"


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


def test_all_tasks_succeed(workspace):
    project_id, _ = make_project([("alpha", "alpha"), ("beta", "beta")], cases=3)
    scheduler = RunScheduler(FakeOracle())
    events = []
    _run(scheduler, project_id, events)

    progress = scheduler.get_progress(project_id)
    assert progress == {
        "status": "completed",
        "total_tasks": 6,
        "completed_tasks": 6,
        "failed_tasks": 0,
    }
    assert len(_record_files(project_id)) == 6
    assert events[-1]["project_status"] == "completed"
    assert sum(1 for e in events if e.get("last_result")) == 6

    config = load_project_config(find_project_dir(project_id))
    assert config["status"] == "completed"
    assert config["progress"]["last_checkpoint"] == 6


def test_failures_are_isolated(workspace):
    project_id, _ = make_project([("alpha", "alpha"), ("beta", "beta")], cases=3)
    oracle = FakeOracle(fail_inputs=("input-1",))
    scheduler = RunScheduler(oracle)
    _run(scheduler, project_id)

    progress = scheduler.get_progress(project_id)
    assert progress["failed_tasks"] == 2
    assert progress["completed_tasks"] == 4
    assert progress["status"] == "completed"
    # The failing first case did not stop the rest of either stream
    assert len(oracle.executions) == 6


def test_cases_run_in_order_within_a_skill(workspace):
    project_id, _ = make_project([("alpha", "alpha"), ("beta", "beta")], cases=4)
    oracle = FakeOracle()
    _run(RunScheduler(oracle), project_id)

    alpha_inputs = [prompt for skill, prompt in oracle.executions if skill == "alpha"]
    assert alpha_inputs == ["input-1", "input-2", "input-3", "input-4"]


def test_existing_records_are_skipped(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha")], cases=3)
    project_dir = find_project_dir(project_id)
    marker = {"case_id": "case-2", "skill_id": skill_ids[0], "status": "completed", "marker": True}
    write_json(result_path(project_dir, skill_ids[0], "case-2"), marker)

    oracle = FakeOracle()
    scheduler = RunScheduler(oracle)
    _run(scheduler, project_id)

    assert [prompt for _, prompt in oracle.executions] == ["input-1", "input-3"]
    assert read_json(result_path(project_dir, skill_ids[0], "case-2")) == marker
    assert scheduler.get_progress(project_id)["completed_tasks"] == 3


def test_summary_written_on_completion(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha"), ("beta", "beta")], cases=2)
    _run(RunScheduler(FakeOracle(scores={"[alpha]": 85, "[beta]": 79})), project_id)

    summary = read_json(find_project_dir(project_id) / "results" / "summary.json")
    ranking = [(r["skill_id"], r["avg_score"], r["rank"]) for r in summary["ranking"]]
    assert ranking == [(skill_ids[0], 85, 1), (skill_ids[1], 79, 2)]


# ---------------------------------------------------------------------------
# Pause / resume / stop
# ---------------------------------------------------------------------------


def test_pause_then_resume(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=4)
    scheduler = RunScheduler(FakeOracle())

    def pause_after_two(event):
        if event["project_status"] == "running" and event["completed_tasks"] == 2:
            scheduler.pause(project_id)

    scheduler.start(project_id, on_progress=pause_after_two)
    assert scheduler.wait(project_id, timeout=10)

    progress = scheduler.get_progress(project_id)
    assert progress["status"] == "paused"
    assert progress["completed_tasks"] == 2
    config = load_project_config(find_project_dir(project_id))
    assert config["status"] == "paused"
    assert config["progress"]["last_checkpoint"] == 2

    result = scheduler.resume(project_id)
    assert result == {"resumed": True, "remaining_tasks": 2}
    assert scheduler.wait(project_id, timeout=10)

    progress = scheduler.get_progress(project_id)
    assert progress["status"] == "completed"
    assert progress["completed_tasks"] == 4
    assert len(_record_files(project_id)) == 4


def test_resume_after_restart(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=3)
    first = RunScheduler(FakeOracle())

    def pause_after_one(event):
        if event["project_status"] == "running" and event["completed_tasks"] == 1:
            first.pause(project_id)

    first.start(project_id, on_progress=pause_after_one)
    assert first.wait(project_id, timeout=10)

    oracle = FakeOracle()
    second = RunScheduler(oracle)
    assert second.resume(project_id)["remaining_tasks"] == 2
    assert second.wait(project_id, timeout=10)
    assert [prompt for _, prompt in oracle.executions] == ["input-2", "input-3"]
    assert second.get_progress(project_id)["status"] == "completed"


def test_start_while_running_is_rejected(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=2)
    gate = threading.Event()
    scheduler = RunScheduler(FakeOracle(gate=gate))
    scheduler.start(project_id)
    try:
        with pytest.raises(StateError) as exc_info:
            scheduler.start(project_id)
        assert exc_info.value.code == "ALREADY_RUNNING"
    finally:
        gate.set()
        scheduler.wait(project_id, timeout=10)


def test_stop_is_terminal(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=3)
    gate = threading.Event()
    gated = FakeOracle(gate=gate)
    scheduler = RunScheduler(gated)
    events = []
    scheduler.start(project_id, on_progress=events.append)
    assert gated.started.wait(5)

    assert scheduler.stop(project_id) == {"stopped": True}
    gate.set()
    assert scheduler.wait(project_id, timeout=10)

    progress = scheduler.get_progress(project_id)
    assert progress["status"] == "interrupted"
    # The in-flight task finished; nothing after it started
    assert progress["completed_tasks"] == 1
    assert events[-1]["project_status"] == "interrupted"

    with pytest.raises(StateError) as exc_info:
        scheduler.resume(project_id)
    assert exc_info.value.code == "NOT_PAUSED"


def test_new_run_after_stop_skips_written_records(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=3)
    gate = threading.Event()
    gated = FakeOracle(gate=gate)
    scheduler = RunScheduler(gated)
    scheduler.start(project_id)
    assert gated.started.wait(5)
    scheduler.stop(project_id)
    gate.set()
    scheduler.wait(project_id, timeout=10)

    oracle = FakeOracle()
    rerun = RunScheduler(oracle)
    _run(rerun, project_id)
    assert len(oracle.executions) == 2
    assert rerun.get_progress(project_id)["completed_tasks"] == 3


def test_state_errors(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=1)
    scheduler = RunScheduler(FakeOracle())

    with pytest.raises(StateError) as exc_info:
        scheduler.pause(project_id)
    assert exc_info.value.code == "NOT_RUNNING"

    with pytest.raises(StateError) as exc_info:
        scheduler.stop(project_id)
    assert exc_info.value.code == "NOT_RUNNING"

    with pytest.raises(StateError) as exc_info:
        scheduler.resume(project_id)
    assert exc_info.value.code == "NOT_PAUSED"

    with pytest.raises(StateError) as exc_info:
        scheduler.start("missing")
    assert exc_info.value.code == "NOT_FOUND"


def test_progress_falls_back_to_disk(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=2)
    _run(RunScheduler(FakeOracle()), project_id)

    fresh = RunScheduler(FakeOracle())
    assert fresh.get_progress(project_id)["completed_tasks"] == 2
    assert fresh.get_progress(project_id)["status"] == "completed"


def test_listener_errors_do_not_stop_the_run(workspace):
    project_id, _ = make_project([("alpha", "alpha")], cases=2)
    scheduler = RunScheduler(FakeOracle())

    def broken(event):
        raise RuntimeError("listener bug")

    scheduler.start(project_id, on_progress=broken)
    assert scheduler.wait(project_id, timeout=10)
    assert scheduler.get_progress(project_id)["completed_tasks"] == 2


# ---------------------------------------------------------------------------
# Results, retry, export
# ---------------------------------------------------------------------------


def test_get_results_filters_and_pages(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha"), ("beta", "beta")], cases=3)
    scheduler = RunScheduler(FakeOracle(fail_inputs=("input-2",)))
    _run(scheduler, project_id)

    failed = scheduler.get_results(project_id, status="failed")
    assert failed["total"] == 2
    assert {r["case_id"] for r in failed["items"]} == {"case-2"}

    page = scheduler.get_results(project_id, skill_id=skill_ids[1], page=2, page_size=2)
    assert page["total"] == 3
    assert [r["case_id"] for r in page["items"]] == ["case-3"]
    assert page["summary"]["total_cases"] == 3


def test_retry_case_overwrites_record(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha")], cases=2)
    scheduler = RunScheduler(FakeOracle(fail_inputs=("input-1",)))
    _run(scheduler, project_id)
    assert scheduler.get_results(project_id, status="failed")["total"] == 1

    scheduler.oracle = FakeOracle()
    events = []
    info = scheduler.retry_case(project_id, skill_ids[0], "case-1", on_progress=events.append)
    assert scheduler.wait(info["task_id"], timeout=10)

    record = read_json(result_path(find_project_dir(project_id), skill_ids[0], "case-1"))
    assert record["status"] == "completed"
    assert events[0]["last_result"]["status"] == "completed"

    entry = scheduler.get_results(project_id)["summary"]["ranking"][0]
    assert entry["completed_cases"] == 2
    assert entry["failed_cases"] == 0


def test_retry_holds_the_project(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha")], cases=2)
    scheduler = RunScheduler(FakeOracle())
    _run(scheduler, project_id)

    gate = threading.Event()
    scheduler.oracle = FakeOracle(gate=gate)
    info = scheduler.retry_case(project_id, skill_ids[0], "case-1")
    try:
        assert scheduler.oracle.started.wait(5)
        with pytest.raises(StateError) as exc_info:
            scheduler.start(project_id)
        assert exc_info.value.code == "ALREADY_RUNNING"
        with pytest.raises(StateError) as exc_info:
            scheduler.retry_case(project_id, skill_ids[0], "case-2")
        assert exc_info.value.code == "ALREADY_RUNNING"
    finally:
        gate.set()
        assert scheduler.wait(info["task_id"], timeout=10)

    scheduler.start(project_id)
    assert scheduler.wait(project_id, timeout=10)
    assert scheduler.get_progress(project_id)["status"] == "completed"


def test_retry_unknown_case(workspace):
    project_id, skill_ids = make_project([("alpha", "alpha")], cases=1)
    with pytest.raises(StateError) as exc_info:
        RunScheduler(FakeOracle()).retry_case(project_id, skill_ids[0], "case-9")
    assert exc_info.value.code == "NOT_FOUND"


def test_export_csv(workspace, tmp_path):
    project_id, _ = make_project([("alpha", "alpha")], cases=2)
    scheduler = RunScheduler(FakeOracle(scores={"[alpha]": 85}))
    _run(scheduler, project_id)

    dest = scheduler.export_results(project_id, "csv", tmp_path / "out" / "results.csv")
    with dest.open() as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 2
    assert rows[0]["scores.total"] == "85"
    assert rows[0]["status"] == "completed"


def test_export_json(workspace, tmp_path):
    project_id, _ = make_project([("alpha", "alpha")], cases=2)
    scheduler = RunScheduler(FakeOracle())
    _run(scheduler, project_id)

    dest = scheduler.export_results(project_id, "json", tmp_path / "results.json")
    assert [r["case_id"] for r in read_json(dest)] == ["case-1", "case-2"]
