"""Shared pytest fixtures for skillbench tests."""

import threading

import orjson
import pytest

from skillbench.core.errors import OracleExecutionError
from skillbench.core.models import DIMENSIONS
from skillbench.core.oracle import OracleResponse
from skillbench.core.store import copy_skill_into_project, get_projects_dir, save_skill, write_json


def make_scores(total: int) -> dict:
    """Split ``total`` over the six dimensions, filling each in order."""
    scores = {}
    remaining = total
    for dim, maximum in DIMENSIONS.items():
        scores[dim] = min(maximum, remaining)
        remaining -= scores[dim]
    scores["total"] = total
    return scores


ANALYSIS_REPORT = {
    "best_skill_id": "",
    "best_skill_name": "",
    "dimension_leaders": {},
    "advantage_segments": [
        {
            "id": "seg_001",
            "skill_id": "s1",
            "skill_name": "alpha",
            "type": "role",
            "content": "You are a careful engineer.",
            "reason": "clear role",
            "dimension": "robustness",
        }
    ],
    "issues": [],
}


class FakeOracle:
    """Scripted oracle.

    Execution calls (with system instructions) echo the skill and input.
    Scoring calls return ``scores[key]`` for the first key found in the
    prompt, else ``default_score``. Analysis and recompose prompts get a
    canned report and numbered ``recomposed-<n>`` texts.
    """

    def __init__(
        self,
        scores: dict | None = None,
        default_score: int = 70,
        fail_inputs: tuple = (),
        bad_score_inputs: tuple = (),
        gate: threading.Event | None = None,
        analysis_failures_after: int | None = None,
    ):
        self.scores = scores or {}
        self.default_score = default_score
        self.fail_inputs = fail_inputs
        self.bad_score_inputs = bad_score_inputs
        self.gate = gate
        self.analysis_failures_after = analysis_failures_after
        self.executions = []
        self.analysis_calls = 0
        self.recompose_calls = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def generate(self, prompt, *, system_instructions=None, working_dir=None, timeout=None, model=None):
        if system_instructions is not None:
            with self._lock:
                self.executions.append((system_instructions, prompt))
            self.started.set()
            if self.gate is not None:
                self.gate.wait(5)
            if prompt in self.fail_inputs:
                raise OracleExecutionError(f"exit code 1: cannot run {prompt}")
            return OracleResponse(f"output of [{system_instructions}] for [{prompt}]", 5)

        if "## Segments to keep" in prompt:
            with self._lock:
                self.recompose_calls += 1
                n = self.recompose_calls
            return OracleResponse(f"recomposed-{n}", 5)

        if "## Most divergent cases" in prompt:
            with self._lock:
                self.analysis_calls += 1
                calls = self.analysis_calls
            if self.analysis_failures_after is not None and calls > self.analysis_failures_after:
                return OracleResponse("no report today", 5)
            return OracleResponse(orjson.dumps(ANALYSIS_REPORT).decode(), 5)

        if any(f"[{bad}]" in prompt for bad in self.bad_score_inputs):
            return OracleResponse("I refuse to grade this.", 5)
        total = next((v for k, v in self.scores.items() if k in prompt), self.default_score)
        return OracleResponse(
            orjson.dumps({"scores": make_scores(total), "reasoning": "ok"}).decode(), 5
        )


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point SKILLBENCH_HOME at a fresh temporary workspace."""
    root = tmp_path / "workspace"
    monkeypatch.setenv("SKILLBENCH_HOME", str(root))
    monkeypatch.delenv("SKILLBENCH_MODEL", raising=False)
    return root


def make_skill(content: str, name: str = "") -> str:
    """Store a global skill asset and return its id."""
    saved = save_skill(content, {"name": name or content, "purpose": "general", "provider": "test"})
    return saved["skill_id"]


def make_project(
    skills: list[tuple[str, str]],
    cases: int = 2,
    project_id: str = "proj-1",
) -> tuple[str, list[str]]:
    """Create a project with (name, content) skills and ``cases`` cases.

    Case ids are ``case-<i>`` with input ``input-<i>``. Returns the
    project id and the skill ids in order.
    """
    project_dir = get_projects_dir() / project_id
    project_dir.mkdir(parents=True)

    skill_refs = []
    for index, (name, content) in enumerate(skills, start=1):
        skill_id = make_skill(content, name)
        local_path = copy_skill_into_project(skill_id, project_dir, f"skill_{index}")
        skill_refs.append(
            {"ref_id": skill_id, "name": name, "version": "v1", "local_path": local_path}
        )

    write_json(
        project_dir / "baselines" / "base_1" / "cases.json",
        {
            "cases": [
                {"case_id": f"case-{i}", "input": f"input-{i}", "expected_output": f"expected-{i}"}
                for i in range(1, cases + 1)
            ]
        },
    )
    write_json(
        project_dir / "config.json",
        {
            "id": project_id,
            "name": "Test project",
            "status": "pending",
            "skills": skill_refs,
            "baselines": [
                {"ref_id": "b1", "name": "base", "version": "v1", "local_path": "baselines/base_1"}
            ],
        },
    )
    return project_id, [s["ref_id"] for s in skill_refs]
