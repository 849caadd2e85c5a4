"""Data model for test runs and iteration rounds.

Persisted documents are plain dicts written with orjson; the dataclasses
here convert to and from those dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# Rubric dimensions and their maximum scores, in declaration order.
DIMENSIONS: dict[str, int] = {
    "functional_correctness": 30,
    "robustness": 20,
    "readability": 15,
    "conciseness": 15,
    "complexity_control": 10,
    "format_compliance": 10,
}

# Run and round statuses
PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
INTERRUPTED = "interrupted"
COMPLETED = "completed"
FAILED = "failed"

# Iteration stop reasons
MAX_ROUNDS = "max_rounds"
THRESHOLD_REACHED = "threshold_reached"
MANUAL = "manual"
STOP_PAUSED = "paused"
ERROR = "error"


def empty_breakdown() -> dict[str, float]:
    return {dim: 0 for dim in DIMENSIONS}


@dataclass
class SkillRef:
    """A skill registered in a project's config."""

    ref_id: str
    name: str = ""
    version: str = "v1"
    local_path: str = ""
    purpose: str = "general"
    provider: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> SkillRef:
        return cls(
            ref_id=data["ref_id"],
            name=data.get("name", ""),
            version=data.get("version", "v1"),
            local_path=data.get("local_path", ""),
            purpose=data.get("purpose", "general"),
            provider=data.get("provider", ""),
        )

    def to_dict(self) -> dict:
        return {
            "ref_id": self.ref_id,
            "name": self.name,
            "version": self.version,
            "local_path": self.local_path,
            "purpose": self.purpose,
            "provider": self.provider,
        }


@dataclass
class BaselineRef:
    ref_id: str
    name: str = ""
    version: str = "v1"
    local_path: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> BaselineRef:
        return cls(
            ref_id=data["ref_id"],
            name=data.get("name", ""),
            version=data.get("version", "v1"),
            local_path=data.get("local_path", ""),
        )


@dataclass
class Case:
    case_id: str
    input: str = ""
    expected_output: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Case:
        return cls(
            case_id=str(data["case_id"]),
            input=data.get("input", ""),
            expected_output=data.get("expected_output", ""),
        )


@dataclass(frozen=True)
class Task:
    """One skill x case execution unit. Identity is (skill id, case id)."""

    skill: SkillRef
    skill_content: str
    working_dir: Path
    baseline: BaselineRef
    case: Case
    result_path: Path

    @property
    def key(self) -> tuple[str, str]:
        return (self.skill.ref_id, self.case.case_id)


@dataclass
class Score:
    """Rubric score. ``total`` is always the sum of the six dimensions."""

    functional_correctness: float = 0
    robustness: float = 0
    readability: float = 0
    conciseness: float = 0
    complexity_control: float = 0
    format_compliance: float = 0
    reasoning: str = ""

    @property
    def total(self) -> float:
        return sum(getattr(self, dim) for dim in DIMENSIONS)

    @classmethod
    def from_response(cls, data: dict) -> Score:
        """Build a score from a parsed oracle response.

        Accepts either ``{"scores": {...}, "reasoning": ...}`` or a flat
        mapping of dimensions. Each dimension is clamped to [0, max].

        Raises:
            ValueError: If a dimension is missing or not numeric.
        """
        scores = data.get("scores", data)
        if not isinstance(scores, dict):
            raise ValueError("score response has no scores object")

        values: dict[str, float] = {}
        for dim, maximum in DIMENSIONS.items():
            raw = scores.get(dim)
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"score dimension {dim} missing or not numeric")
            values[dim] = min(max(raw, 0), maximum)

        return cls(**values, reasoning=str(data.get("reasoning", "")))

    def to_dict(self) -> dict:
        result = {dim: getattr(self, dim) for dim in DIMENSIONS}
        result["total"] = self.total
        return result


@dataclass
class ResultRecord:
    """Persisted outcome of one task. A failed record never has a score."""

    case_id: str
    skill_id: str
    status: str
    skill_version: str = ""
    baseline_id: str = ""
    baseline_version: str = ""
    executed_at: str = ""
    input: str = ""
    expected_output: str = ""
    actual_output: str = ""
    duration_ms: int = 0
    model_version: str = ""
    error: str | None = None
    score: Score | None = None
    score_evaluated_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "skill_id": self.skill_id,
            "skill_version": self.skill_version,
            "baseline_id": self.baseline_id,
            "baseline_version": self.baseline_version,
            "executed_at": self.executed_at,
            "status": self.status,
            "input": self.input,
            "expected_output": self.expected_output,
            "actual_output": self.actual_output,
            "duration_ms": self.duration_ms,
            "model_version": self.model_version,
            "error": self.error,
            "scores": self.score.to_dict() if self.score else None,
            "score_reasoning": self.score.reasoning if self.score else "",
            "score_evaluated_at": self.score_evaluated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ResultRecord:
        score = None
        scores = data.get("scores")
        if scores and data.get("status") == COMPLETED:
            score = Score(
                **{dim: scores.get(dim, 0) for dim in DIMENSIONS},
                reasoning=data.get("score_reasoning", ""),
            )
        return cls(
            case_id=str(data["case_id"]),
            skill_id=data["skill_id"],
            status=data.get("status", FAILED),
            skill_version=data.get("skill_version", ""),
            baseline_id=data.get("baseline_id", ""),
            baseline_version=data.get("baseline_version", ""),
            executed_at=data.get("executed_at", ""),
            input=data.get("input", ""),
            expected_output=data.get("expected_output", ""),
            actual_output=data.get("actual_output", ""),
            duration_ms=data.get("duration_ms", 0),
            model_version=data.get("model_version", ""),
            error=data.get("error"),
            score=score,
            score_evaluated_at=data.get("score_evaluated_at"),
        )


@dataclass
class SummaryEntry:
    skill_id: str
    skill_name: str = ""
    skill_version: str = ""
    completed_cases: int = 0
    failed_cases: int = 0
    scored_cases: int = 0
    avg_score: float = 0
    score_breakdown: dict[str, float] = field(default_factory=empty_breakdown)
    rank: int = 0

    def to_dict(self) -> dict:
        return {
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "skill_version": self.skill_version,
            "completed_cases": self.completed_cases,
            "failed_cases": self.failed_cases,
            "scored_cases": self.scored_cases,
            "avg_score": self.avg_score,
            "score_breakdown": dict(self.score_breakdown),
            "rank": self.rank,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SummaryEntry:
        return cls(
            skill_id=data["skill_id"],
            skill_name=data.get("skill_name", ""),
            skill_version=data.get("skill_version", ""),
            completed_cases=data.get("completed_cases", 0),
            failed_cases=data.get("failed_cases", 0),
            scored_cases=data.get("scored_cases", 0),
            avg_score=data.get("avg_score", 0),
            score_breakdown=data.get("score_breakdown") or empty_breakdown(),
            rank=data.get("rank", 0),
        )


@dataclass
class Summary:
    """Ranked per-skill rollup of a run. Derived, never authoritative."""

    project_id: str
    generated_at: str
    total_cases: int
    ranking: list[SummaryEntry] = field(default_factory=list)

    def entry_for(self, skill_id: str) -> SummaryEntry | None:
        for entry in self.ranking:
            if entry.skill_id == skill_id:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "generated_at": self.generated_at,
            "total_cases": self.total_cases,
            "ranking": [entry.to_dict() for entry in self.ranking],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Summary:
        return cls(
            project_id=data.get("project_id", ""),
            generated_at=data.get("generated_at", ""),
            total_cases=data.get("total_cases", 0),
            ranking=[SummaryEntry.from_dict(r) for r in data.get("ranking", [])],
        )


@dataclass
class Round:
    """One completed iteration round."""

    round: int
    skill_id: str
    skill_name: str = ""
    strategy: str = "GREEDY"
    avg_score: float = 0
    score_delta: float | None = None
    score_breakdown: dict[str, float] = field(default_factory=dict)
    status: str = COMPLETED

    def to_dict(self) -> dict:
        return {
            "round": self.round,
            "strategy": self.strategy,
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "avg_score": self.avg_score,
            "score_delta": self.score_delta,
            "score_breakdown": dict(self.score_breakdown),
            "status": self.status,
        }


@dataclass
class Candidate:
    """One strategy-specific skill variant tried between rounds."""

    strategy: str
    skill_id: str | None = None
    avg_score: float | None = None
    score_breakdown: dict[str, float] = field(default_factory=dict)
    won: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "strategy": self.strategy,
            "skill_id": self.skill_id,
            "avg_score": self.avg_score,
            "score_breakdown": dict(self.score_breakdown),
            "won": self.won,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class IterationRun:
    """Final report of an iteration. Written once at loop exit."""

    project_id: str
    iteration_id: str
    generated_at: str
    rounds: tuple[Round, ...]
    stop_reason: str
    stop_threshold: float | None
    best_round: int
    best_skill_id: str
    best_skill_name: str
    best_avg_score: float

    @property
    def total_rounds(self) -> int:
        return len(self.rounds)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "iteration_id": self.iteration_id,
            "generated_at": self.generated_at,
            "total_rounds": self.total_rounds,
            "stop_reason": self.stop_reason,
            "stop_threshold": self.stop_threshold,
            "best_round": self.best_round,
            "best_skill_id": self.best_skill_id,
            "best_skill_name": self.best_skill_name,
            "best_avg_score": self.best_avg_score,
            "rounds": [r.to_dict() for r in self.rounds],
        }


@dataclass
class IterationParams:
    """Parameters of one iteration run."""

    recomposed_skill_id: str
    max_rounds: int = 3
    stop_threshold: float | None = None
    retention_rules: str = ""
    selected_segment_ids: list[str] = field(default_factory=list)
    beam_width: int = 1
    plateau_threshold: float = 1.0
    plateau_rounds_before_escape: int = 2

    def to_dict(self) -> dict:
        return {
            "recomposed_skill_id": self.recomposed_skill_id,
            "max_rounds": self.max_rounds,
            "stop_threshold": self.stop_threshold,
            "retention_rules": self.retention_rules,
            "selected_segment_ids": list(self.selected_segment_ids),
            "beam_width": self.beam_width,
            "plateau_threshold": self.plateau_threshold,
            "plateau_rounds_before_escape": self.plateau_rounds_before_escape,
        }
