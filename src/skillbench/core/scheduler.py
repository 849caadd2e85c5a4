"""Run scheduler: executes a project's skill x case matrix.

One execution stream (thread) runs per skill; cases within a stream run
strictly in case-list order. Streams check the run's status before each
task and stop at task boundaries. In-flight oracle calls are never
preempted, so pause and stop take effect only between tasks.

In-memory run state is keyed by project id. A checkpoint (status and
progress counters) is written to the project's config.json after every
task, and ``get_progress`` falls back to it when no run is in memory.
"""

from __future__ import annotations

import csv
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from skillbench.core.config import OracleConfig, run_settings
from skillbench.core.errors import (
    ALREADY_RUNNING,
    NOT_PAUSED,
    NOT_RUNNING,
    NotFoundError,
    StateError,
)
from skillbench.core.executor import TaskExecutor
from skillbench.core.models import (
    COMPLETED,
    DIMENSIONS,
    FAILED,
    INTERRUPTED,
    PAUSED,
    PENDING,
    RUNNING,
    BaselineRef,
    Case,
    ResultRecord,
    SkillRef,
    Task,
)
from skillbench.core.oracle import Oracle
from skillbench.core.store import (
    find_project_dir,
    load_project_config,
    read_json,
    read_text,
    result_path,
    save_project_config,
    skill_working_dir,
    summary_path,
    write_json,
)
from skillbench.core.summary import aggregate, load_records, write_summary

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], None]


def build_task_list(project_dir: Path, config: dict) -> list[Task]:
    """Cross product of the project's skills and its baselines' cases."""
    tasks: list[Task] = []
    for skill_data in config.get("skills", []):
        skill = SkillRef.from_dict(skill_data)
        content = read_text(project_dir / skill.local_path / "content.txt")
        working_dir = skill_working_dir(project_dir, skill.ref_id)

        for baseline_data in config.get("baselines", []):
            baseline = BaselineRef.from_dict(baseline_data)
            cases_doc = read_json(project_dir / baseline.local_path / "cases.json")
            cases = cases_doc.get("cases", []) if isinstance(cases_doc, dict) else []

            for case_data in cases:
                case = Case.from_dict(case_data)
                tasks.append(
                    Task(
                        skill=skill,
                        skill_content=content,
                        working_dir=working_dir,
                        baseline=baseline,
                        case=case,
                        result_path=result_path(project_dir, skill.ref_id, case.case_id),
                    )
                )
    return tasks


def group_by_skill(tasks: list[Task]) -> dict[str, list[Task]]:
    """Group tasks per skill, keeping case order within each group."""
    groups: dict[str, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.skill.ref_id, []).append(task)
    return groups


@dataclass
class RunState:
    """In-memory state of one project's active run."""

    project_id: str
    project_dir: Path
    tasks: list[Task]
    executor: TaskExecutor
    status: str = RUNNING
    completed_tasks: int = 0
    failed_tasks: int = 0
    error: str | None = None
    listeners: list[ProgressCallback] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    thread: threading.Thread | None = field(default=None, repr=False)

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def checkpoint(self) -> dict:
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "last_checkpoint": self.completed_tasks + self.failed_tasks,
        }

    def event(self, **extra) -> dict:
        data = {
            "project_id": self.project_id,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "total_tasks": self.total_tasks,
            "project_status": self.status,
        }
        data.update(extra)
        return data


class RunScheduler:
    """Starts, pauses, resumes and stops test runs per project."""

    def __init__(
        self,
        oracle: Oracle,
        oracle_config: OracleConfig | None = None,
    ) -> None:
        self.oracle = oracle
        self.oracle_config = oracle_config or OracleConfig()
        self._runs: dict[str, RunState] = {}
        self._threads: dict[str, threading.Thread] = {}
        # Projects with a retry in flight; they hold the single writer slot too
        self._retries: set[str] = set()
        self._registry_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _make_executor(self, config: dict) -> TaskExecutor:
        model, timeout = run_settings(config, self.oracle_config)
        return TaskExecutor(
            self.oracle,
            model=model,
            timeout=timeout,
            score_timeout=self.oracle_config.score_timeout_seconds,
        )

    def _new_state(self, project_id: str, project_dir: Path, config: dict) -> RunState:
        tasks = build_task_list(project_dir, config)
        state = RunState(
            project_id=project_id,
            project_dir=project_dir,
            tasks=tasks,
            executor=self._make_executor(config),
        )
        # Records already on disk count toward progress and are skipped
        for record in load_records(tasks).values():
            if record.status == COMPLETED:
                state.completed_tasks += 1
            else:
                state.failed_tasks += 1
        return state

    def _save_checkpoint(self, state: RunState, status: str | None = None) -> None:
        """Persist status and counters. Caller holds ``state.lock``."""
        config = load_project_config(state.project_dir)
        if status is not None:
            config["status"] = status
        config["progress"] = state.checkpoint()
        save_project_config(state.project_dir, config)

    def _notify(self, state: RunState, event: dict) -> None:
        for listener in list(state.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "progress listener failed project=%s", state.project_id
                )

    def _launch(self, state: RunState) -> None:
        thread = threading.Thread(
            target=self._run_loop,
            args=(state,),
            name=f"skillbench-run-{state.project_id}",
            daemon=True,
        )
        state.thread = thread
        self._threads[state.project_id] = thread
        thread.start()

    def _run_stream(self, state: RunState, skill_id: str, tasks: list[Task]) -> None:
        logger.info(
            "skill stream started project=%s skill=%s tasks=%d",
            state.project_id,
            skill_id,
            len(tasks),
        )
        for task in tasks:
            if state.status != RUNNING:
                break
            # An existing record marks the task done; this makes resume idempotent
            if task.result_path.exists():
                continue

            try:
                record = state.executor.execute(task)
            except OSError as e:
                logger.exception(
                    "stream aborted project=%s skill=%s case=%s",
                    state.project_id,
                    skill_id,
                    task.case.case_id,
                )
                with state.lock:
                    state.error = f"STORAGE_ERROR: {e}"
                    state.status = INTERRUPTED
                break

            with state.lock:
                if record.status == COMPLETED:
                    state.completed_tasks += 1
                else:
                    state.failed_tasks += 1
                self._save_checkpoint(state)
                event = state.event(
                    project_status=RUNNING,
                    last_result={
                        "skill_id": record.skill_id,
                        "case_id": record.case_id,
                        "status": record.status,
                        "score": record.score.total if record.score else None,
                    },
                )
            self._notify(state, event)

        logger.info(
            "skill stream finished project=%s skill=%s", state.project_id, skill_id
        )

    def _run_loop(self, state: RunState) -> None:
        groups = group_by_skill(state.tasks)
        logger.info(
            "run started project=%s skills=%d tasks=%d",
            state.project_id,
            len(groups),
            state.total_tasks,
        )

        streams = [
            threading.Thread(
                target=self._run_stream,
                args=(state, skill_id, tasks),
                name=f"skillbench-stream-{skill_id[:8]}",
                daemon=True,
            )
            for skill_id, tasks in groups.items()
        ]
        for stream in streams:
            stream.start()
        for stream in streams:
            stream.join()

        with state.lock:
            final = state.status
            if final == RUNNING:
                state.status = COMPLETED
                self._save_checkpoint(state, status=COMPLETED)
            elif final == INTERRUPTED:
                self._save_checkpoint(state, status=INTERRUPTED)

        if final == RUNNING:
            summary = aggregate(state.tasks, load_records(state.tasks), state.project_id)
            write_summary(state.project_dir, summary)
            self._forget(state)
            logger.info(
                "run completed project=%s completed=%d failed=%d",
                state.project_id,
                state.completed_tasks,
                state.failed_tasks,
            )
            self._notify(state, state.event())
        elif final == PAUSED:
            logger.info(
                "run paused project=%s checkpoint=%d/%d",
                state.project_id,
                state.completed_tasks + state.failed_tasks,
                state.total_tasks,
            )
            self._notify(state, state.event())
        else:
            self._forget(state)
            logger.info("run interrupted project=%s", state.project_id)
            extra = {"error": state.error} if state.error else {}
            self._notify(state, state.event(**extra))

    def _forget(self, state: RunState) -> None:
        with self._registry_lock:
            if self._runs.get(state.project_id) is state:
                del self._runs[state.project_id]

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def start(self, project_id: str, on_progress: ProgressCallback | None = None) -> dict:
        """Start a run in the background and return immediately.

        Raises:
            StateError: ALREADY_RUNNING if the project has an active run.
            NotFoundError: If the project or its config is missing.
        """
        project_dir = find_project_dir(project_id)
        config = load_project_config(project_dir)

        with self._registry_lock:
            existing = self._runs.get(project_id)
            if existing is not None:
                raise StateError(
                    ALREADY_RUNNING, f"Project {project_id} has a {existing.status} run"
                )
            if project_id in self._retries:
                raise StateError(ALREADY_RUNNING, f"Project {project_id} has a retry in flight")
            state = self._new_state(project_id, project_dir, config)
            if on_progress:
                state.listeners.append(on_progress)
            self._runs[project_id] = state

        with state.lock:
            self._save_checkpoint(state, status=RUNNING)
        self._launch(state)
        return {"started": True, "total_tasks": state.total_tasks}

    def pause(self, project_id: str) -> dict:
        """Ask a running run to stop after its in-flight tasks finish.

        Raises:
            StateError: NOT_RUNNING if no run is currently running.
        """
        with self._registry_lock:
            state = self._runs.get(project_id)
        if state is None:
            raise StateError(NOT_RUNNING, f"No running test for project {project_id}")

        with state.lock:
            if state.status != RUNNING:
                raise StateError(NOT_RUNNING, f"No running test for project {project_id}")
            state.status = PAUSED
            self._save_checkpoint(state, status=PAUSED)
            checkpoint = state.completed_tasks + state.failed_tasks
        logger.info(
            "pause requested project=%s checkpoint=%d/%d",
            project_id,
            checkpoint,
            state.total_tasks,
        )
        return {"paused": True, "checkpoint": checkpoint}

    def resume(self, project_id: str, on_progress: ProgressCallback | None = None) -> dict:
        """Resume a paused run from its checkpoint.

        Rehydrates the run from disk if this process did not pause it.

        Raises:
            StateError: NOT_PAUSED if the project has no paused run,
                ALREADY_RUNNING while a retry is in flight.
        """
        with self._registry_lock:
            state = self._runs.get(project_id)
            if state is None:
                if project_id in self._retries:
                    raise StateError(
                        ALREADY_RUNNING, f"Project {project_id} has a retry in flight"
                    )
                project_dir = find_project_dir(project_id)
                config = load_project_config(project_dir)
                if config.get("status") != PAUSED:
                    raise StateError(NOT_PAUSED, f"No paused test for project {project_id}")
                state = self._new_state(project_id, project_dir, config)
                state.status = PAUSED
                self._runs[project_id] = state
            elif state.status != PAUSED:
                raise StateError(NOT_PAUSED, f"No paused test for project {project_id}")

        # Let streams from the paused loop settle their in-flight tasks
        if state.thread is not None and state.thread is not threading.current_thread():
            state.thread.join()

        with state.lock:
            if state.status != PAUSED:
                raise StateError(NOT_PAUSED, f"No paused test for project {project_id}")
            state.status = RUNNING
            if on_progress:
                state.listeners.append(on_progress)
            self._save_checkpoint(state, status=RUNNING)
            remaining = state.total_tasks - state.completed_tasks - state.failed_tasks
        logger.info("run resumed project=%s remaining=%d", project_id, remaining)
        self._launch(state)
        return {"resumed": True, "remaining_tasks": remaining}

    def stop(self, project_id: str) -> dict:
        """Interrupt a running or paused run. Interrupted runs cannot resume.

        Raises:
            StateError: NOT_RUNNING if the project has no active run.
        """
        with self._registry_lock:
            state = self._runs.get(project_id)
        if state is None:
            raise StateError(NOT_RUNNING, f"No active test for project {project_id}")

        with state.lock:
            if state.status not in (RUNNING, PAUSED):
                raise StateError(NOT_RUNNING, f"No active test for project {project_id}")
            was_paused = state.status == PAUSED
            state.status = INTERRUPTED
            self._save_checkpoint(state, status=INTERRUPTED)
        logger.info("run stopped project=%s", project_id)

        # A paused run has no live loop left to emit the terminal event
        if was_paused and (state.thread is None or not state.thread.is_alive()):
            self._forget(state)
            self._notify(state, state.event())
        return {"stopped": True}

    def get_progress(self, project_id: str) -> dict:
        with self._registry_lock:
            state = self._runs.get(project_id)
        if state is not None:
            with state.lock:
                return {
                    "status": state.status,
                    "total_tasks": state.total_tasks,
                    "completed_tasks": state.completed_tasks,
                    "failed_tasks": state.failed_tasks,
                }

        config = load_project_config(find_project_dir(project_id))
        progress = config.get("progress") or {}
        return {
            "status": config.get("status", PENDING),
            "total_tasks": progress.get("total_tasks", 0),
            "completed_tasks": progress.get("completed_tasks", 0),
            "failed_tasks": progress.get("failed_tasks", 0),
        }

    def wait(self, project_id: str, timeout: float | None = None) -> bool:
        """Block until the project's current run loop exits.

        Returns False if the timeout elapsed first.
        """
        thread = self._threads.get(project_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def get_results(
        self,
        project_id: str,
        *,
        skill_id: str | None = None,
        case_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict:
        """Return a page of result records plus the latest summary."""
        project_dir = find_project_dir(project_id)
        config = load_project_config(project_dir)

        items: list[dict] = []
        for task in build_task_list(project_dir, config):
            if skill_id and task.skill.ref_id != skill_id:
                continue
            if case_id and task.case.case_id != case_id:
                continue
            record = read_json(task.result_path)
            if not isinstance(record, dict):
                continue
            if status and record.get("status") != status:
                continue
            items.append(record)

        start = (page - 1) * page_size
        return {
            "items": items[start : start + page_size],
            "total": len(items),
            "page": page,
            "page_size": page_size,
            "summary": read_json(summary_path(project_dir)),
        }

    def retry_case(
        self,
        project_id: str,
        skill_id: str,
        case_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> dict:
        """Re-execute one task in the background, overwriting its record.

        The project is reserved until the retry finishes, so ``start`` and
        other retries are rejected meanwhile. An existing summary is
        recomputed with the new record.

        Raises:
            StateError: ALREADY_RUNNING while a run or retry is active on the project.
            NotFoundError: If the task does not exist.
        """
        project_dir = find_project_dir(project_id)
        config = load_project_config(project_dir)
        tasks = build_task_list(project_dir, config)
        task = next((t for t in tasks if t.key == (skill_id, case_id)), None)
        if task is None:
            raise NotFoundError(f"Task not found: {skill_id}/{case_id}")
        task_id = f"retry_{skill_id}_{case_id}_{uuid.uuid4().hex[:8]}"
        executor = self._make_executor(config)

        with self._registry_lock:
            if project_id in self._runs or project_id in self._retries:
                raise StateError(ALREADY_RUNNING, f"Project {project_id} has an active run")
            self._retries.add(project_id)

        def _retry() -> None:
            try:
                record: ResultRecord = executor.execute(task)
                if summary_path(project_dir).exists():
                    write_summary(project_dir, aggregate(tasks, load_records(tasks), project_id))
            finally:
                with self._registry_lock:
                    self._retries.discard(project_id)
            logger.info(
                "retry finished project=%s skill=%s case=%s status=%s",
                project_id,
                skill_id,
                case_id,
                record.status,
            )
            if on_progress:
                on_progress(
                    {
                        "project_id": project_id,
                        "task_id": task_id,
                        "completed_tasks": 1 if record.status == COMPLETED else 0,
                        "failed_tasks": 1 if record.status == FAILED else 0,
                        "total_tasks": 1,
                        "project_status": COMPLETED,
                        "last_result": {
                            "skill_id": skill_id,
                            "case_id": case_id,
                            "status": record.status,
                            "score": record.score.total if record.score else None,
                        },
                    }
                )

        thread = threading.Thread(target=_retry, name=task_id, daemon=True)
        self._threads[task_id] = thread
        thread.start()
        return {"task_id": task_id}

    def export_results(self, project_id: str, fmt: str, dest: Path) -> Path:
        """Write every result record to ``dest`` as JSON or CSV."""
        items = self.get_results(project_id, page=1, page_size=10**9)["items"]
        dest.parent.mkdir(parents=True, exist_ok=True)

        if fmt != "csv":
            write_json(dest, items)
            return dest

        headers = [
            "case_id",
            "skill_id",
            "skill_version",
            "status",
            "duration_ms",
            "model_version",
            "scores.total",
            *(f"scores.{dim}" for dim in DIMENSIONS),
            "error",
        ]
        with dest.open("w", newline="") as f:
            writer = csv.writer(f, quoting=csv.QUOTE_ALL)
            writer.writerow(headers)
            for r in items:
                scores = r.get("scores") or {}
                writer.writerow(
                    [
                        r.get("case_id", ""),
                        r.get("skill_id", ""),
                        r.get("skill_version", ""),
                        r.get("status", ""),
                        r.get("duration_ms", ""),
                        r.get("model_version", ""),
                        scores.get("total", ""),
                        *(scores.get(dim, "") for dim in DIMENSIONS),
                        r.get("error") or "",
                    ]
                )
        return dest
