from __future__ import annotations

from threading import Lock

from .errors import CancellationRejected, PipelineBusy, RunCancelled, UnknownRun
from .models import PipelineRun, RunState


class RunRegistry:
    """In-memory view of pipeline runs owned by this process.

    Persisted copies live in the database; this registry is what state
    transitions and cancellation requests synchronize on.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.runs: dict[str, PipelineRun] = {}
        self.cancel_requested: set[str] = set()
        self.active_id: str | None = None

    def register(self, run: PipelineRun) -> None:
        with self.lock:
            if self.active_id is not None:
                active = self.runs.get(self.active_id)
                if active is not None and not active.state.terminal:
                    raise PipelineBusy(f"Run {self.active_id} is still {active.state.value}.")
            self.runs[run.id] = run
            self.active_id = run.id

    def get(self, run_id: str) -> PipelineRun | None:
        with self.lock:
            return self.runs.get(run_id)

    def active(self) -> PipelineRun | None:
        with self.lock:
            if self.active_id is None:
                return None
            run = self.runs.get(self.active_id)
            return run if run is not None and not run.state.terminal else None

    def transition(self, run: PipelineRun, state: RunState) -> None:
        """Move a run into its next stage; pending cancellation takes effect here."""
        with self.lock:
            if run.id in self.cancel_requested and not state.terminal:
                raise RunCancelled(f"Cancelled before {state.value}.", next_state=state)
            run.state = state

    def request_cancel(self, run_id: str) -> PipelineRun:
        with self.lock:
            run = self.runs.get(run_id)
            if run is None:
                raise UnknownRun(run_id)
            if run.state.terminal:
                raise CancellationRejected(f"Run {run_id} already {run.state.value}.")
            if run.state is RunState.DEPLOYING:
                raise CancellationRejected(f"Run {run_id} is deploying; cancelling now could leave the host mid-recreation.")
            self.cancel_requested.add(run_id)
            return run

    def finish(self, run: PipelineRun) -> None:
        with self.lock:
            self.cancel_requested.discard(run.id)
