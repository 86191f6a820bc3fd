# Copyright (c) 2025. Review Council AI Analysis Engine.

"""In-process store of analysis runs and the progress fan-out."""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Mapping

from ._exceptions import RunSettledError
from ._findings import Finding
from ._orchestrator import LevelProgress, LevelStatus, PartialBatchFailure
from ._settings import DEFAULT_RETENTION_SECONDS

logger = logging.getLogger("review_council")


class AnalysisStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != AnalysisStatus.RUNNING


@dataclass(frozen=True)
class AnalysisRun:
    """Snapshot of one analysis. Records are replaced whole, never mutated.

    Attributes:
        id: Analysis id used by status and cancel.
        review_id: Owning review.
        run_id: Orchestrator run id.
        status: running until it settles as completed, failed or cancelled.
        levels: Latest progress per level.
        suggestions: Aggregated findings once completed.
        summary: Human-readable outcome.
        error: Failure reason for failed runs.
        partial_failure: Levels or members that did not succeed.
    """

    id: str
    review_id: str
    run_id: str
    status: AnalysisStatus = AnalysisStatus.RUNNING
    levels: Mapping[int, LevelProgress] = field(default_factory=dict)
    suggestions: tuple[Finding, ...] = ()
    summary: str | None = None
    error: str | None = None
    partial_failure: PartialBatchFailure | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    cancelled_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.status == AnalysisStatus.CANCELLED


class AnalysisRegistry:
    """Analysis runs keyed by analysis id.

    Running records accept updates; settled records reject them with
    RunSettledError and are dropped after ``retention_seconds``.

    Args:
        retention_seconds: How long settled runs stay queryable.
        clock: Time source, in seconds.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._runs: dict[str, AnalysisRun] = {}

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, analysis_id: object) -> bool:
        return analysis_id in self._runs

    def insert(self, run: AnalysisRun) -> AnalysisRun:
        self.prune()
        if run.id in self._runs:
            raise ValueError(f"Analysis {run.id} already exists")
        self._runs[run.id] = run
        return run

    def get(self, analysis_id: str) -> AnalysisRun | None:
        self.prune()
        return self._runs.get(analysis_id)

    def runs(self) -> list[AnalysisRun]:
        self.prune()
        return list(self._runs.values())

    def update(self, analysis_id: str, **changes: Any) -> AnalysisRun | None:
        """Replace a running record with the given fields changed.

        Returns:
            The new record, or None if the id is unknown.

        Raises:
            RunSettledError: If the run already settled.
        """
        run = self._runs.get(analysis_id)
        if run is None:
            return None
        if run.is_terminal:
            raise RunSettledError(analysis_id, run.status.value)
        updated = replace(run, **changes)
        self._runs[analysis_id] = updated
        return updated

    def set_level(self, analysis_id: str, level: int, progress: LevelProgress) -> AnalysisRun | None:
        run = self._runs.get(analysis_id)
        if run is None:
            return None
        return self.update(analysis_id, levels={**run.levels, level: progress})

    def transition(self, analysis_id: str, status: AnalysisStatus, **changes: Any) -> AnalysisRun | None:
        """Settle a running record.

        Raises:
            ValueError: If ``status`` is not terminal.
            RunSettledError: If the run already settled.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot transition analysis to {status.value}")

        now = self._clock()
        changes.setdefault("completed_at", now)
        if status == AnalysisStatus.CANCELLED:
            changes.setdefault("cancelled_at", now)

        updated = self.update(analysis_id, status=status, **changes)
        if updated is not None:
            logger.info(f"Analysis {analysis_id} {status.value}")
        return updated

    def cancel_levels(self, analysis_id: str) -> dict[int, LevelProgress]:
        """Level progress with every pending or running level marked cancelled."""
        run = self._runs.get(analysis_id)
        if run is None:
            return {}
        return {
            level: progress if progress.status.is_terminal
            else replace(progress, status=LevelStatus.CANCELLED, message="Cancelled")
            for level, progress in run.levels.items()
        }

    def remove(self, analysis_id: str) -> None:
        self._runs.pop(analysis_id, None)

    def prune(self) -> int:
        """Drop settled runs older than the retention window."""
        cutoff = self._clock() - self.retention_seconds
        expired = [
            analysis_id for analysis_id, run in self._runs.items()
            if run.is_terminal and run.completed_at is not None and run.completed_at < cutoff
        ]
        for analysis_id in expired:
            del self._runs[analysis_id]
        return len(expired)


ProgressListener = Callable[[AnalysisRun], None]


class ProgressSink:
    """Pushes run snapshots to subscribers as they change."""

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, run: AnalysisRun) -> None:
        for listener in list(self._listeners):
            try:
                listener(run)
            except Exception as e:
                logger.warning(f"Progress listener failed for analysis {run.id}: {e}")
