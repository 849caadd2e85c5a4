"""Beam exploration between iteration rounds.

Each step tries ``beam_width`` recomposition strategies one after
another, tests every candidate, and keeps only the single best one as the
next round's skill. Losers are kept in the exploration log only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from skillbench.core.errors import SkillbenchError
from skillbench.core.models import DIMENSIONS, Candidate, IterationParams, Round
from skillbench.core.ports import Recomposer, TestRunner, run_recompose, run_tests
from skillbench.core.store import (
    copy_skill_into_project,
    load_project_config,
    load_skill_meta,
    save_project_config,
)
from skillbench.core.summary import load_summary

logger = logging.getLogger(__name__)

GREEDY = "GREEDY"
DIMENSION_FOCUS = "DIMENSION_FOCUS"
SEGMENT_EXPLORE = "SEGMENT_EXPLORE"
CROSS_POLLINATE = "CROSS_POLLINATE"
RANDOM_SUBSET = "RANDOM_SUBSET"

STRATEGIES = [GREEDY, DIMENSION_FOCUS, SEGMENT_EXPLORE, CROSS_POLLINATE, RANDOM_SUBSET]

# Strategy pair per plateau level; level 3 covers every deeper plateau.
STRATEGY_TABLE = {
    0: [GREEDY, DIMENSION_FOCUS],
    1: [GREEDY, SEGMENT_EXPLORE],
    2: [CROSS_POLLINATE, DIMENSION_FOCUS],
    3: [RANDOM_SUBSET, SEGMENT_EXPLORE],
}


def select_strategies(round_number: int, plateau_level: int, beam_width: int) -> list[str]:
    """Return exactly ``beam_width`` strategy names for a round.

    Widths above two are padded with the remaining strategies in
    declaration order, cycling if the width exceeds the strategy count.
    """
    if beam_width <= 1:
        return [GREEDY]

    chosen = list(STRATEGY_TABLE[min(max(plateau_level, 0), 3)])
    rest = [s for s in STRATEGIES if s not in chosen]
    i = 0
    while len(chosen) < beam_width:
        chosen.append(rest[i % len(rest)])
        i += 1
    return chosen[:beam_width]


def detect_plateau_level(rounds: list[Round], threshold: float, escape_limit: int) -> int:
    """Grade the trailing run of rounds with negligible score change.

    Returns 0 (no plateau), 1 (run shorter than ``escape_limit``),
    2 (up to twice the limit) or 3.
    """
    if len(rounds) < 2:
        return 0

    run = 0
    for r in reversed(rounds[1:]):
        if r.score_delta is None or abs(r.score_delta) < threshold:
            run += 1
        else:
            break

    if run == 0:
        return 0
    if run < escape_limit:
        return 1
    if run < escape_limit * 2:
        return 2
    return 3


def find_weakest_dimension(rounds: list[Round]) -> str:
    """Dimension with the lowest score-to-maximum ratio in the latest round."""
    if not rounds:
        return "functional_correctness"
    latest = rounds[-1].score_breakdown or {}

    weakest = "functional_correctness"
    lowest = float("inf")
    for dim, maximum in DIMENSIONS.items():
        ratio = (latest.get(dim) or 0) / maximum
        if ratio < lowest:
            lowest = ratio
            weakest = dim
    return weakest


def build_score_history(rounds: list[Round]) -> list[dict]:
    return [
        {
            "round": r.round,
            "strategy": r.strategy or GREEDY,
            "avg_score": r.avg_score,
            "score_delta": r.score_delta,
            "score_breakdown": dict(r.score_breakdown),
        }
        for r in rounds
    ]


def register_candidate(project_dir: Path, skill_id: str, round_number: int) -> dict:
    """Make ``skill_id`` the project's only non-original skill.

    The skill is copied to ``skills/skill_iter_v<round>``; every skill
    listed in ``original_skill_ids`` stays in place.
    """
    meta = load_skill_meta(skill_id)
    local_path = copy_skill_into_project(skill_id, project_dir, f"skill_iter_v{round_number}")

    config = load_project_config(project_dir)
    original_ids = set(config.get("original_skill_ids") or [])
    skill = {
        "ref_id": skill_id,
        "name": meta.get("name") or f"iter-skill-v{round_number}",
        "purpose": meta.get("purpose") or "general",
        "provider": meta.get("provider") or "iteration",
        "version": meta.get("version") or "v1",
        "local_path": local_path,
    }
    config["skills"] = [
        s for s in config.get("skills", []) if s["ref_id"] in original_ids
    ] + [skill]
    save_project_config(project_dir, config)
    return skill


def registered_candidate(project_dir: Path) -> str | None:
    """Id of the project's non-original skill, if any."""
    config = load_project_config(project_dir)
    original_ids = set(config.get("original_skill_ids") or [])
    candidates = [s["ref_id"] for s in config.get("skills", []) if s["ref_id"] not in original_ids]
    return candidates[-1] if candidates else None


@dataclass
class Exploration:
    """Log entry for one beam step."""

    round: int
    plateau_level: int
    strategies: list[str]
    focus_dimension: str
    candidates: list[Candidate] = field(default_factory=list)
    winner: Candidate | None = None

    def to_dict(self) -> dict:
        return {
            "round": self.round,
            "plateau_level": self.plateau_level,
            "strategies_tried": list(self.strategies),
            "focus_dimension": self.focus_dimension,
            "candidates": [c.to_dict() for c in self.candidates],
            "winner_skill_id": self.winner.skill_id if self.winner else None,
        }


class BeamExplorer:
    """Generates, tests and picks next-round candidates."""

    def __init__(
        self,
        runner: TestRunner,
        recomposer: Recomposer,
        collaborator_timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.recomposer = recomposer
        self.collaborator_timeout = collaborator_timeout

    def _try_candidate(
        self,
        project_id: str,
        project_dir: Path,
        round_number: int,
        index: int,
        strategy: str,
        focus_dimension: str,
        params: IterationParams,
        history: list[dict],
    ) -> Candidate:
        next_round = round_number + 1
        event = run_recompose(
            self.recomposer,
            project_id,
            {
                "retention_rules": params.retention_rules,
                "selected_segment_ids": list(params.selected_segment_ids),
                "strategy": strategy,
                "focus_dimension": focus_dimension,
                "score_history": history,
            },
            timeout=self.collaborator_timeout,
        )
        saved = self.recomposer.save_recomposed_skill(
            project_id,
            event["preview"]["content"],
            {
                "name": f"iter-skill-v{next_round}-c{index}",
                "purpose": "general",
                "provider": "iteration",
            },
        )
        skill_id = saved["skill_id"]

        register_candidate(project_dir, skill_id, next_round)
        run_tests(self.runner, project_id)

        summary = load_summary(project_dir)
        entry = summary.entry_for(skill_id) if summary else None
        return Candidate(
            strategy=strategy,
            skill_id=skill_id,
            avg_score=entry.avg_score if entry else 0,
            score_breakdown=dict(entry.score_breakdown) if entry else {},
        )

    def explore(
        self,
        project_id: str,
        project_dir: Path,
        round_number: int,
        rounds: list[Round],
        plateau_level: int,
        params: IterationParams,
        should_continue: Callable[[], bool] = lambda: True,
        current_skill_id: str | None = None,
    ) -> Exploration:
        """Try every selected strategy and register the winner for the next round.

        A failing candidate is logged and recorded; it never aborts the step.
        If every candidate fails, ``current_skill_id`` is registered again
        in place of any failed candidate left in the project.
        """
        step = Exploration(
            round=round_number,
            plateau_level=plateau_level,
            strategies=select_strategies(round_number, plateau_level, params.beam_width),
            focus_dimension=find_weakest_dimension(rounds),
        )
        history = build_score_history(rounds)

        for index, strategy in enumerate(step.strategies, start=1):
            if not should_continue():
                break
            try:
                candidate = self._try_candidate(
                    project_id,
                    project_dir,
                    round_number,
                    index,
                    strategy,
                    step.focus_dimension,
                    params,
                    history,
                )
            except (SkillbenchError, OSError) as e:
                detail = e.describe() if isinstance(e, SkillbenchError) else str(e)
                logger.warning(
                    "beam candidate failed project=%s round=%d strategy=%s: %s",
                    project_id,
                    round_number,
                    strategy,
                    detail,
                )
                step.candidates.append(Candidate(strategy=strategy, error=detail))
                continue

            logger.info(
                "beam candidate %d/%d project=%s strategy=%s skill=%s avg=%s",
                index,
                len(step.strategies),
                project_id,
                strategy,
                candidate.skill_id,
                candidate.avg_score,
            )
            step.candidates.append(candidate)
            if step.winner is None or candidate.avg_score > step.winner.avg_score:
                step.winner = candidate

        if step.winner is None:
            if not step.candidates:
                return step
            logger.warning(
                "all beam candidates failed project=%s round=%d, keeping current skill",
                project_id,
                round_number,
            )
            if current_skill_id and registered_candidate(project_dir) != current_skill_id:
                register_candidate(project_dir, current_skill_id, round_number + 1)
            return step

        step.winner.won = True
        # Later candidates replaced the winner in the project config
        register_candidate(project_dir, step.winner.skill_id, round_number + 1)
        logger.info(
            "beam winner project=%s round=%d skill=%s avg=%s",
            project_id,
            round_number + 1,
            step.winner.skill_id,
            step.winner.avg_score,
        )
        return step
