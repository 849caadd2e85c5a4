"""Difference analysis across a project's skills.

Builds a comparison prompt from the run summary, the skill texts and the
cases whose scores diverge the most, asks the oracle for a structured
report and writes it to ``analysis_report.json``.
"""

import logging
import threading
import uuid
from pathlib import Path

from skillbench.core.config import OracleConfig
from skillbench.core.errors import CollaboratorError, NotFoundError, SkillbenchError
from skillbench.core.models import COMPLETED, DIMENSIONS, FAILED
from skillbench.core.oracle import Oracle, parse_structured_output
from skillbench.core.ports import Callback
from skillbench.core.store import (
    find_project_dir,
    load_project_config,
    now_iso,
    read_json,
    read_text,
    summary_path,
    write_json,
)

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an experienced prompt engineer for code generation. Compare the test results of the skills below, identify each skill's strongest segments and weaknesses, and produce a structured report.

## Baseline
Name: {baseline_name}
Cases: {case_count}

{iteration_context}## Skill prompts
{skills_content}

## Score summary
{skills_score_summary}

## Per-dimension scores
{dimension_scores_table}

## Most divergent cases (top 3 by score spread)
{top_diff_cases}

## Tasks
1. Pick the best overall skill (best_skill_id).
2. Name the leading skill for every scoring dimension (dimension_leaders).
3. Extract at least three concrete advantage segments from the skill prompts.
   For each give the skill, the segment type, the verbatim text, the dimension it helps and why.
   Segment types: instruction | constraint | format | role | example
4. List concrete weaknesses of each skill per dimension (issues).

## Output
Output ONLY JSON, no prose and no Markdown fences:
{{
  "best_skill_id": "<skill id>",
  "best_skill_name": "<skill name>",
  "dimension_leaders": {{"<dimension>": "<skill id>"}},
  "advantage_segments": [
    {{
      "id": "seg_001",
      "skill_id": "<skill id>",
      "skill_name": "<skill name>",
      "type": "role|instruction|constraint|format|example",
      "content": "<verbatim text from the skill>",
      "reason": "<why it scores well>",
      "dimension": "<dimension key>"
    }}
  ],
  "issues": [
    {{"skill_id": "<skill id>", "skill_name": "<skill name>", "dimension": "<dimension key>", "description": "<weakness>"}}
  ]
}}"""


def analysis_report_path(project_dir: Path) -> Path:
    return project_dir / "analysis_report.json"


def _iteration_context(config: dict) -> str:
    original_ids = set(config.get("original_skill_ids") or [])
    skills = config.get("skills", [])
    candidates = [s["name"] for s in skills if s["ref_id"] not in original_ids]
    if not original_ids or not candidates:
        return ""
    originals = [s["name"] for s in skills if s["ref_id"] in original_ids]
    return (
        "## Iteration context\n"
        f"This run compares the original reference skills ({', '.join(originals)}) "
        f"with the current iteration candidate ({', '.join(candidates)}).\n"
        "Prefer segments where the candidate improves on the originals, and list "
        "any dimension where the candidate still trails them under issues.\n\n"
    )


def _role_tag(skill_id: str, original_ids: set[str]) -> str:
    if not original_ids:
        return ""
    return " [original]" if skill_id in original_ids else " [candidate]"


def top_diff_cases(project_dir: Path, config: dict, limit: int = 3) -> list[tuple[str, dict]]:
    """Cases with the widest total-score spread across skills."""
    case_scores: dict[str, dict[str, float]] = {}
    for skill in config.get("skills", []):
        result_dir = project_dir / "results" / skill["ref_id"]
        if not result_dir.is_dir():
            continue
        for path in sorted(result_dir.glob("*.json")):
            record = read_json(path)
            if not isinstance(record, dict) or not record.get("scores"):
                continue
            case_scores.setdefault(str(record["case_id"]), {})[skill["ref_id"]] = record[
                "scores"
            ]["total"]

    spreads = [
        (case_id, scores, max(scores.values()) - min(scores.values()))
        for case_id, scores in case_scores.items()
        if len(scores) > 1
    ]
    spreads.sort(key=lambda item: item[2], reverse=True)
    return [(case_id, scores) for case_id, scores, _ in spreads[:limit]]


def build_analysis_prompt(project_dir: Path, config: dict) -> str:
    """Assemble the analysis prompt for a project with a finished run.

    Raises:
        CollaboratorError: NO_RESULTS if the project has no summary yet.
    """
    summary = read_json(summary_path(project_dir))
    if not isinstance(summary, dict):
        raise CollaboratorError("Test summary not found. Run tests first.", code="NO_RESULTS")

    baselines = config.get("baselines") or []
    baseline_name = baselines[0].get("name", "unknown") if baselines else "unknown"
    total_cases = summary.get("total_cases", 0)
    ranking = summary.get("ranking", [])
    original_ids = set(config.get("original_skill_ids") or [])

    skills_content = "\n\n---\n\n".join(
        f"Skill: {s['name']}{_role_tag(s['ref_id'], original_ids)} (ID: {s['ref_id']})\n"
        + read_text(project_dir / s.get("local_path", "") / "content.txt")
        for s in config.get("skills", [])
    )

    score_lines = []
    for r in ranking:
        line = (
            f"- {r['skill_name']}{_role_tag(r['skill_id'], original_ids)} "
            f"(ID: {r['skill_id']}): avg {r['avg_score']}, "
            f"completed {r['completed_cases']}/{total_cases}"
        )
        if r.get("failed_cases"):
            line += f" ({r['failed_cases']} failed)"
        score_lines.append(line)

    table = ["dimension\t" + "\t".join(r["skill_name"] for r in ranking)]
    for dim, maximum in DIMENSIONS.items():
        values = [
            f"{float((r.get('score_breakdown') or {}).get(dim, 0)):.1f}" for r in ranking
        ]
        table.append(f"{dim}({maximum})\t" + "\t".join(values))

    names = {s["ref_id"]: s["name"] for s in config.get("skills", [])}
    diff_blocks = []
    for case_id, scores in top_diff_cases(project_dir, config):
        lines = [f"Case {case_id}:"]
        for skill_id, name in names.items():
            lines.append(f"  {name} (total {scores.get(skill_id, 'N/A')})")
        diff_blocks.append("\n".join(lines))

    return ANALYSIS_PROMPT.format(
        baseline_name=baseline_name,
        case_count=total_cases,
        iteration_context=_iteration_context(config),
        skills_content=skills_content,
        skills_score_summary="\n".join(score_lines),
        dimension_scores_table="\n".join(table),
        top_diff_cases="\n\n".join(diff_blocks) or "Not enough data to compare",
    )


class OracleAnalyzer:
    """Analysis collaborator that asks the oracle for the report."""

    def __init__(self, oracle: Oracle, oracle_config: OracleConfig | None = None) -> None:
        self.oracle = oracle
        self.oracle_config = oracle_config or OracleConfig()

    def analyze(self, project_id: str, project_dir: Path, config: dict) -> dict:
        """Run the analysis synchronously and write the report."""
        prompt = build_analysis_prompt(project_dir, config)
        response = self.oracle.generate(
            prompt,
            working_dir=project_dir / ".claude",
            timeout=self.oracle_config.collaborator_timeout_seconds,
            model=self.oracle_config.default_model,
        )
        parsed = parse_structured_output(response.text)
        report = {
            "project_id": project_id,
            "generated_at": now_iso(),
            "best_skill_id": parsed.get("best_skill_id") or "",
            "best_skill_name": parsed.get("best_skill_name") or "",
            "dimension_leaders": parsed.get("dimension_leaders") or {},
            "advantage_segments": parsed.get("advantage_segments") or [],
            "issues": parsed.get("issues") or [],
        }
        write_json(analysis_report_path(project_dir), report)
        return report

    def run_analysis(self, project_id: str, on_complete: Callback | None = None) -> dict:
        """Start analysis in the background and return its task id.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project_dir = find_project_dir(project_id)
        config = load_project_config(project_dir)
        task_id = str(uuid.uuid4())
        logger.info(
            "analysis started project=%s task=%s skills=%d",
            project_id,
            task_id,
            len(config.get("skills", [])),
        )

        def _run() -> None:
            try:
                self.analyze(project_id, project_dir, config)
            except (SkillbenchError, OSError) as e:
                detail = e.describe() if isinstance(e, SkillbenchError) else str(e)
                logger.error("analysis failed project=%s: %s", project_id, detail)
                event = {"project_id": project_id, "task_id": task_id, "status": FAILED, "error": detail}
            else:
                logger.info("analysis completed project=%s", project_id)
                event = {"project_id": project_id, "task_id": task_id, "status": COMPLETED}
            if on_complete:
                on_complete(event)

        threading.Thread(target=_run, name=f"skillbench-analysis-{task_id[:8]}", daemon=True).start()
        return {"task_id": task_id}

    def get_report(self, project_id: str) -> dict:
        report = read_json(analysis_report_path(find_project_dir(project_id)))
        if not isinstance(report, dict):
            raise NotFoundError("Analysis report not found. Run analysis first.")
        return report
