"""Collaborator interfaces used by the round controller and beam explorer.

The controller only depends on these capability sets; concrete
implementations (the run scheduler, the oracle-backed analyzer and
recomposer) are wired together in ``skillbench.services``.

All three collaborators report completion through callbacks from a
background thread. The ``run_*`` helpers turn that into a blocking call
that either returns the terminal event or raises CollaboratorError.
"""

import threading
from typing import Callable, Protocol

from skillbench.core.errors import CollaboratorError
from skillbench.core.models import COMPLETED, INTERRUPTED, PAUSED

Callback = Callable[[dict], None]


class TestRunner(Protocol):
    __test__ = False

    def start(self, project_id: str, on_progress: Callback | None = None) -> dict: ...


class Analyzer(Protocol):
    def run_analysis(
        self, project_id: str, on_complete: Callback | None = None
    ) -> dict: ...


class Recomposer(Protocol):
    def execute_recompose(
        self, project_id: str, params: dict, on_complete: Callback | None = None
    ) -> dict: ...

    def save_recomposed_skill(self, project_id: str, content: str, meta: dict) -> dict: ...


class _Waiter:
    """Collects the first terminal event delivered to a callback."""

    def __init__(self, is_terminal: Callable[[dict], bool]) -> None:
        self._is_terminal = is_terminal
        self._done = threading.Event()
        self.event: dict = {}

    def __call__(self, event: dict) -> None:
        if not self._done.is_set() and self._is_terminal(event):
            self.event = event
            self._done.set()

    def wait(self, what: str, timeout: float | None) -> dict:
        if not self._done.wait(timeout):
            raise CollaboratorError(f"{what} did not finish within {timeout}s", code="TIMEOUT")
        return self.event


def run_tests(runner: TestRunner, project_id: str, timeout: float | None = None) -> dict:
    """Start a test run and block until it completes.

    Raises:
        CollaboratorError: If the run is paused or interrupted instead.
    """
    waiter = _Waiter(
        lambda e: e.get("project_status") in (COMPLETED, PAUSED, INTERRUPTED)
    )
    runner.start(project_id, waiter)
    event = waiter.wait("test run", timeout)
    status = event.get("project_status")
    if status != COMPLETED:
        detail = event.get("error") or f"test run {status}"
        raise CollaboratorError(detail, code="TEST_" + status.upper())
    return event


def run_analysis(analyzer: Analyzer, project_id: str, timeout: float | None = None) -> dict:
    """Run analysis and block until its report is written.

    Raises:
        CollaboratorError: If the analyzer reports failure.
    """
    waiter = _Waiter(lambda e: e.get("status") is not None)
    analyzer.run_analysis(project_id, waiter)
    event = waiter.wait("analysis", timeout)
    if event["status"] != COMPLETED:
        raise CollaboratorError(event.get("error") or "analysis failed", code="ANALYSIS_FAILED")
    return event


def run_recompose(
    recomposer: Recomposer,
    project_id: str,
    params: dict,
    timeout: float | None = None,
) -> dict:
    """Request recomposed skill text and block until it is produced.

    Raises:
        CollaboratorError: If the recomposer reports failure.
    """
    waiter = _Waiter(lambda e: e.get("status") is not None)
    recomposer.execute_recompose(project_id, params, waiter)
    event = waiter.wait("recompose", timeout)
    if event["status"] != COMPLETED:
        raise CollaboratorError(event.get("error") or "recompose failed", code="RECOMPOSE_FAILED")
    return event
