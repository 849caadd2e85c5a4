"""Round controller: the outer test -> analyse -> recompose loop.

Each round tests the current candidate skill, runs analysis, records the
candidate's score and, unless the loop is about to stop, asks the beam
explorer for the next round's candidate. Pause and stop requests are
honoured at round and candidate boundaries only.

Files written under ``<project>/iterations/``:
  round_<n>/config.json   - round snapshot (running | completed | failed)
  iteration_report.json   - final report, written once at loop exit
  exploration_log.json    - every beam step and candidate
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from skillbench.core.beam import (
    GREEDY,
    BeamExplorer,
    Exploration,
    detect_plateau_level,
    register_candidate,
)
from skillbench.core.errors import (
    ALREADY_RUNNING,
    NOT_RUNNING,
    NotFoundError,
    SkillbenchError,
    StateError,
)
from skillbench.core.models import (
    COMPLETED,
    ERROR,
    FAILED,
    MANUAL,
    MAX_ROUNDS,
    PAUSED,
    RUNNING,
    STOP_PAUSED,
    THRESHOLD_REACHED,
    IterationParams,
    IterationRun,
    Round,
)
from skillbench.core.ports import Analyzer, Recomposer, TestRunner, run_analysis, run_tests
from skillbench.core.store import (
    find_project_dir,
    iterations_dir,
    load_project_config,
    now_iso,
    read_json,
    save_project_config,
    write_json,
)
from skillbench.core.summary import load_summary

logger = logging.getLogger(__name__)

Callback = Callable[[dict], None]


def round_dir(project_dir: Path, round_number: int) -> Path:
    return iterations_dir(project_dir) / f"round_{round_number}"


def report_path(project_dir: Path) -> Path:
    return iterations_dir(project_dir) / "iteration_report.json"


def exploration_log_path(project_dir: Path) -> Path:
    return iterations_dir(project_dir) / "exploration_log.json"


@dataclass
class IterationState:
    """Cooperative control flags for one iteration loop."""

    iteration_id: str
    project_id: str
    project_dir: Path
    params: IterationParams
    paused: bool = False
    stopped: bool = False
    finished: bool = False
    current_round: int = 0
    phase: str = "idle"
    thread: threading.Thread | None = field(default=None, repr=False)

    def should_continue(self) -> bool:
        return not (self.paused or self.stopped)


class RoundController:
    """Drives iteration loops, one per project at a time."""

    def __init__(
        self,
        runner: TestRunner,
        analyzer: Analyzer,
        recomposer: Recomposer,
        collaborator_timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.analyzer = analyzer
        self.recomposer = recomposer
        self.collaborator_timeout = collaborator_timeout
        self.explorer = BeamExplorer(runner, recomposer, collaborator_timeout)
        self._iterations: dict[str, IterationState] = {}
        self._lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Round steps
    # -----------------------------------------------------------------------

    def _write_snapshot(self, state: IterationState, round_number: int, skill_id: str, **extra) -> None:
        snapshot = {
            "round": round_number,
            "skill_id": skill_id,
            "retention_rules": state.params.retention_rules,
            **extra,
        }
        write_json(round_dir(state.project_dir, round_number) / "config.json", snapshot)

    def _run_round(
        self,
        state: IterationState,
        round_number: int,
        skill_id: str,
        strategy: str,
        previous: Round | None,
    ) -> Round:
        started_at = now_iso()
        self._write_snapshot(
            state, round_number, skill_id, strategy=strategy, started_at=started_at, status=RUNNING
        )

        state.phase = "test"
        run_tests(self.runner, state.project_id)
        state.phase = "analysis"
        run_analysis(self.analyzer, state.project_id, self.collaborator_timeout)
        state.phase = "idle"

        config = load_project_config(state.project_dir)
        summary = load_summary(state.project_dir)
        entry = summary.entry_for(skill_id) if summary is not None else None
        if entry is None:
            logger.warning(
                "no summary entry for skill project=%s round=%d skill=%s, scoring 0",
                state.project_id,
                round_number,
                skill_id,
            )

        skill_name = next(
            (s.get("name", "") for s in config.get("skills", []) if s["ref_id"] == skill_id),
            "",
        )
        avg_score = entry.avg_score if entry else 0
        result = Round(
            round=round_number,
            skill_id=skill_id,
            skill_name=skill_name or f"iter-skill-v{round_number}",
            strategy=strategy,
            avg_score=avg_score,
            score_delta=avg_score - previous.avg_score if previous else None,
            score_breakdown=dict(entry.score_breakdown) if entry else {},
        )

        self._write_snapshot(
            state,
            round_number,
            skill_id,
            strategy=strategy,
            skill_name=result.skill_name,
            avg_score=avg_score,
            started_at=started_at,
            completed_at=now_iso(),
            status=COMPLETED,
        )
        return result

    # -----------------------------------------------------------------------
    # Loop
    # -----------------------------------------------------------------------

    def _run_loop(
        self,
        state: IterationState,
        on_round_complete: Callback | None,
        on_all_complete: Callback | None,
    ) -> None:
        params = state.params
        config = load_project_config(state.project_dir)
        rounds: list[Round] = []
        log: dict = {
            "project_id": state.project_id,
            "iteration_id": state.iteration_id,
            "started_at": now_iso(),
            "params": params.to_dict(),
            "original_skill_ids": config.get("original_skill_ids") or [],
            "rounds": [],
            "best_ever": None,
        }

        skill_id = params.recomposed_skill_id
        strategy = GREEDY
        stop_reason = MAX_ROUNDS

        for round_number in range(1, params.max_rounds + 1):
            if state.stopped:
                stop_reason = MANUAL
                break
            if state.paused:
                stop_reason = STOP_PAUSED
                break

            state.current_round = round_number
            try:
                result = self._run_round(
                    state, round_number, skill_id, strategy, rounds[-1] if rounds else None
                )
                rounds.append(result)
                plateau_level = detect_plateau_level(
                    rounds, params.plateau_threshold, params.plateau_rounds_before_escape
                )
                logger.info(
                    "round completed project=%s round=%d avg=%s delta=%s plateau=%d",
                    state.project_id,
                    round_number,
                    result.avg_score,
                    result.score_delta,
                    plateau_level,
                )
                if on_round_complete:
                    on_round_complete(
                        {
                            "project_id": state.project_id,
                            "iteration_id": state.iteration_id,
                            "round": round_number,
                            "skill_id": skill_id,
                            "avg_score": result.avg_score,
                            "score_delta": result.score_delta,
                            "plateau_level": plateau_level,
                        }
                    )

                if params.stop_threshold is not None and result.avg_score >= params.stop_threshold:
                    stop_reason = THRESHOLD_REACHED
                    break

                if round_number < params.max_rounds and state.should_continue():
                    state.phase = "explore"
                    step: Exploration = self.explorer.explore(
                        state.project_id,
                        state.project_dir,
                        round_number,
                        rounds,
                        plateau_level,
                        params,
                        state.should_continue,
                        current_skill_id=skill_id,
                    )
                    state.phase = "idle"
                    log["rounds"].append(step.to_dict())
                    if step.winner is not None:
                        skill_id = step.winner.skill_id
                        strategy = step.winner.strategy
            except (SkillbenchError, OSError) as e:
                detail = e.describe() if isinstance(e, SkillbenchError) else str(e)
                logger.warning(
                    "round failed project=%s round=%d: %s", state.project_id, round_number, detail
                )
                # A round aborted before its score was recorded leaves a failed snapshot
                if not rounds or rounds[-1].round != round_number:
                    self._write_snapshot(
                        state, round_number, skill_id, strategy=strategy, status=FAILED, error=detail
                    )
                stop_reason = ERROR
                break

        report = self._finish(state, rounds, log, stop_reason)
        if on_all_complete:
            on_all_complete(
                {
                    "project_id": state.project_id,
                    "iteration_id": state.iteration_id,
                    "status": COMPLETED,
                    "report": report.to_dict(),
                }
            )

    def _finish(
        self, state: IterationState, rounds: list[Round], log: dict, stop_reason: str
    ) -> IterationRun:
        params = state.params
        if rounds:
            best = max(rounds, key=lambda r: r.avg_score)
        else:
            best = Round(
                round=1,
                skill_id=params.recomposed_skill_id,
                skill_name="iter-skill-v1",
                avg_score=0,
            )

        log["best_ever"] = {
            "round": best.round,
            "strategy": best.strategy,
            "skill_id": best.skill_id,
            "avg_score": best.avg_score,
        }
        log["completed_at"] = now_iso()
        write_json(exploration_log_path(state.project_dir), log)

        report = IterationRun(
            project_id=state.project_id,
            iteration_id=state.iteration_id,
            generated_at=now_iso(),
            rounds=tuple(rounds),
            stop_reason=stop_reason,
            stop_threshold=params.stop_threshold,
            best_round=best.round,
            best_skill_id=best.skill_id,
            best_skill_name=best.skill_name,
            best_avg_score=best.avg_score,
        )
        write_json(report_path(state.project_dir), report.to_dict())

        with self._lock:
            state.finished = True
            state.phase = "idle"
        logger.info(
            "iteration finished project=%s rounds=%d stop_reason=%s best_round=%d best=%s",
            state.project_id,
            report.total_rounds,
            stop_reason,
            best.round,
            best.avg_score,
        )
        return report

    def _guarded_loop(self, state: IterationState, *callbacks) -> None:
        try:
            self._run_loop(state, *callbacks)
        except Exception:
            logger.exception("iteration loop crashed project=%s", state.project_id)
            with self._lock:
                state.finished = True
            raise

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def start_iteration(
        self,
        project_id: str,
        params: IterationParams,
        on_round_complete: Callback | None = None,
        on_all_complete: Callback | None = None,
    ) -> dict:
        """Start an iteration loop in the background.

        Registers ``params.recomposed_skill_id`` as the project's candidate
        skill and remembers the current skills as the originals.

        Raises:
            StateError: ALREADY_RUNNING if an iteration is active.
            NotFoundError: If the project or the initial skill is missing.
        """
        if not params.recomposed_skill_id:
            raise SkillbenchError("recomposed_skill_id is required", code="INVALID_PARAMS")
        project_dir = find_project_dir(project_id)

        with self._lock:
            active = self._iterations.get(project_id)
            if active is not None and not active.finished:
                raise StateError(ALREADY_RUNNING, f"Project {project_id} has an active iteration")
            state = IterationState(
                iteration_id=str(uuid.uuid4()),
                project_id=project_id,
                project_dir=project_dir,
                params=params,
            )
            self._iterations[project_id] = state

        try:
            config = load_project_config(project_dir)
            if config.get("original_skill_ids") is None:
                config["original_skill_ids"] = [
                    s["ref_id"]
                    for s in config.get("skills", [])
                    if s["ref_id"] != params.recomposed_skill_id
                ]
                save_project_config(project_dir, config)
            register_candidate(project_dir, params.recomposed_skill_id, 1)

            for old in iterations_dir(project_dir).glob("round_*"):
                shutil.rmtree(old)
        except (SkillbenchError, OSError):
            with self._lock:
                state.finished = True
            raise

        logger.info(
            "iteration started project=%s iteration=%s skill=%s max_rounds=%d beam_width=%d",
            project_id,
            state.iteration_id,
            params.recomposed_skill_id,
            params.max_rounds,
            params.beam_width,
        )
        state.thread = threading.Thread(
            target=self._guarded_loop,
            args=(state, on_round_complete, on_all_complete),
            name=f"skillbench-iteration-{project_id}",
            daemon=True,
        )
        state.thread.start()
        return {"iteration_id": state.iteration_id}

    def _active(self, project_id: str) -> IterationState:
        with self._lock:
            state = self._iterations.get(project_id)
        if state is None or state.finished:
            raise StateError(NOT_RUNNING, f"No active iteration for project {project_id}")
        return state

    def pause_iteration(self, project_id: str) -> dict:
        """Stop the loop at the next boundary with stop reason "paused"."""
        state = self._active(project_id)
        state.paused = True
        logger.info("iteration pause requested project=%s", project_id)
        return {"paused": True}

    def stop_iteration(self, project_id: str) -> dict:
        """Stop the loop at the next boundary with stop reason "manual"."""
        state = self._active(project_id)
        state.stopped = True
        logger.info("iteration stop requested project=%s", project_id)
        return {"stopped": True}

    def get_progress(self, project_id: str) -> dict:
        project_dir = find_project_dir(project_id)
        with self._lock:
            state = self._iterations.get(project_id)

        rounds = []
        for path in iterations_dir(project_dir).glob("round_*"):
            snapshot = read_json(path / "config.json") or {}
            rounds.append(
                {
                    "round": snapshot.get("round", int(path.name.removeprefix("round_"))),
                    "status": snapshot.get("status", "unknown"),
                    "avg_score": snapshot.get("avg_score"),
                }
            )
        rounds.sort(key=lambda r: r["round"])

        if state is not None and not state.finished:
            status = "stopped" if state.stopped else PAUSED if state.paused else RUNNING
            current_round, phase = state.current_round, state.phase
        else:
            status = COMPLETED if report_path(project_dir).exists() else "idle"
            current_round = sum(1 for r in rounds if r["status"] == COMPLETED)
            phase = "idle"

        return {
            "status": status,
            "current_round": current_round,
            "total_rounds": len(rounds),
            "current_phase": phase,
            "rounds": rounds,
        }

    def get_report(self, project_id: str) -> dict:
        report = read_json(report_path(find_project_dir(project_id)))
        if not isinstance(report, dict):
            raise NotFoundError("Iteration report not found. Run an iteration first.")
        return report

    def get_exploration_log(self, project_id: str) -> dict:
        log = read_json(exploration_log_path(find_project_dir(project_id)))
        if not isinstance(log, dict):
            raise NotFoundError("Exploration log not found. Run an iteration first.")
        return log

    def wait(self, project_id: str, timeout: float | None = None) -> bool:
        """Block until the project's iteration loop exits.

        Returns False if the timeout elapsed first.
        """
        with self._lock:
            state = self._iterations.get(project_id)
        if state is None or state.thread is None:
            return True
        state.thread.join(timeout)
        return not state.thread.is_alive()
