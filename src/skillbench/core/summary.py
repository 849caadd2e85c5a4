"""Summary aggregation over a run's result records."""

import math
from pathlib import Path
from typing import Iterable, Mapping

from skillbench.core.models import (
    COMPLETED,
    DIMENSIONS,
    ResultRecord,
    Summary,
    SummaryEntry,
    Task,
)
from skillbench.core.store import now_iso, read_json, summary_path, write_json


def round1(value: float) -> float:
    """Round half-up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


def load_records(tasks: Iterable[Task]) -> dict[tuple[str, str], ResultRecord]:
    """Read every task's result record that exists on disk."""
    records = {}
    for task in tasks:
        data = read_json(task.result_path)
        if isinstance(data, dict):
            records[task.key] = ResultRecord.from_dict(data)
    return records


def aggregate(
    tasks: list[Task],
    records: Mapping[tuple[str, str], ResultRecord],
    project_id: str = "",
) -> Summary:
    """Fold result records into a ranked per-skill summary.

    Averages divide by the number of scored cases, not total cases.
    Ranking is by average score descending, then completed cases
    descending. Skills with no scored cases average 0 and rank last.
    """
    entries: dict[str, SummaryEntry] = {}
    totals: dict[str, float] = {}
    case_counts: dict[str, int] = {}

    for task in tasks:
        skill_id = task.skill.ref_id
        if skill_id not in entries:
            entries[skill_id] = SummaryEntry(
                skill_id=skill_id,
                skill_name=task.skill.name,
                skill_version=task.skill.version,
            )
            totals[skill_id] = 0
        case_counts[skill_id] = case_counts.get(skill_id, 0) + 1

        record = records.get(task.key)
        if record is None:
            continue
        entry = entries[skill_id]
        if record.status != COMPLETED:
            entry.failed_cases += 1
            continue

        entry.completed_cases += 1
        if record.score is not None:
            entry.scored_cases += 1
            totals[skill_id] += record.score.total
            for dim in DIMENSIONS:
                entry.score_breakdown[dim] += getattr(record.score, dim)

    for skill_id, entry in entries.items():
        divisor = entry.scored_cases or 1
        entry.avg_score = round1(totals[skill_id] / divisor) if entry.scored_cases else 0
        entry.score_breakdown = {
            dim: round1(value / divisor) for dim, value in entry.score_breakdown.items()
        }

    ranking = sorted(
        entries.values(),
        key=lambda e: (e.scored_cases == 0, -e.avg_score, -e.completed_cases),
    )
    for index, entry in enumerate(ranking, start=1):
        entry.rank = index

    total_cases = case_counts[ranking[0].skill_id] if ranking else 0
    return Summary(
        project_id=project_id,
        generated_at=now_iso(),
        total_cases=total_cases,
        ranking=ranking,
    )


def write_summary(project_dir: Path, summary: Summary) -> None:
    write_json(summary_path(project_dir), summary.to_dict())


def load_summary(project_dir: Path) -> Summary | None:
    data = read_json(summary_path(project_dir))
    if not isinstance(data, dict):
        return None
    return Summary.from_dict(data)
