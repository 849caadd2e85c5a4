"""Tests for difference analysis (skillbench.core.analysis)."""

import pytest

from skillbench.core.analysis import (
    OracleAnalyzer,
    analysis_report_path,
    build_analysis_prompt,
    top_diff_cases,
)
from skillbench.core.errors import CollaboratorError, NotFoundError
from skillbench.core.ports import run_analysis
from skillbench.core.scheduler import RunScheduler
from skillbench.core.store import find_project_dir, load_project_config, read_json, update_project_config

from conftest import FakeOracle, make_project


def _tested_project(scores=None):
    project_id, skill_ids = make_project([("alpha", "alpha"), ("beta", "beta")], cases=3)
    scheduler = RunScheduler(FakeOracle(scores=scores or {"[alpha]": 85, "[beta]": 60}))
    scheduler.start(project_id)
    assert scheduler.wait(project_id, timeout=10)
    return project_id, find_project_dir(project_id), skill_ids


def test_prompt_requires_summary(workspace):
    project_id, _ = make_project([("alpha", "alpha")])
    project_dir = find_project_dir(project_id)
    with pytest.raises(CollaboratorError) as exc_info:
        build_analysis_prompt(project_dir, load_project_config(project_dir))
    assert exc_info.value.code == "NO_RESULTS"


def test_prompt_contains_scores_and_skills(workspace):
    _, project_dir, skill_ids = _tested_project()
    prompt = build_analysis_prompt(project_dir, load_project_config(project_dir))

    assert f"alpha (ID: {skill_ids[0]}): avg 85" in prompt
    assert "functional_correctness(30)\t30.0\t30.0" in prompt
    assert "Name: base" in prompt
    assert "Iteration context" not in prompt


def test_prompt_marks_iteration_candidate(workspace):
    _, project_dir, skill_ids = _tested_project()
    update_project_config(project_dir, original_skill_ids=[skill_ids[0]])
    prompt = build_analysis_prompt(project_dir, load_project_config(project_dir))

    assert "## Iteration context" in prompt
    assert "alpha [original]" in prompt
    assert "beta [candidate]" in prompt


def test_top_diff_cases(workspace):
    _, project_dir, skill_ids = _tested_project()
    diffs = top_diff_cases(project_dir, load_project_config(project_dir))
    assert len(diffs) == 3
    assert diffs[0][1] == {skill_ids[0]: 85, skill_ids[1]: 60}


def test_run_analysis_writes_report(workspace):
    project_id, project_dir, _ = _tested_project()
    analyzer = OracleAnalyzer(FakeOracle())

    event = run_analysis(analyzer, project_id, timeout=10)
    assert event["status"] == "completed"

    report = read_json(analysis_report_path(project_dir))
    assert report["project_id"] == project_id
    assert report["advantage_segments"][0]["id"] == "seg_001"
    assert analyzer.get_report(project_id) == report


def test_run_analysis_failure_is_reported(workspace):
    project_id, _ = make_project([("alpha", "alpha")])
    analyzer = OracleAnalyzer(FakeOracle())
    with pytest.raises(CollaboratorError) as exc_info:
        run_analysis(analyzer, project_id, timeout=10)
    assert "NO_RESULTS" in exc_info.value.message


def test_get_report_missing(workspace):
    project_id, _ = make_project([("alpha", "alpha")])
    with pytest.raises(NotFoundError):
        OracleAnalyzer(FakeOracle()).get_report(project_id)
