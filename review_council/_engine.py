# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Launch, observe and cancel analyses."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from ._bridge_provider import CodexAgentProvider
from ._cli_providers import BUILTIN_PROVIDERS
from ._exceptions import RunSettledError
from ._orchestrator import (
    ANALYSIS_LEVELS,
    AnalysisResult,
    Analyzer,
    CouncilConfig,
    LevelProgress,
    LevelStatus,
    ReviewContext,
)
from ._processes import ProcessTracker
from ._prompts import ORCHESTRATION_LEVEL
from ._provider import ProviderRegistry
from ._registry import AnalysisRegistry, AnalysisRun, AnalysisStatus, ProgressSink
from ._settings import EngineSettings

logger = logging.getLogger("review_council")


def default_registry() -> ProviderRegistry:
    """A registry holding every built-in provider."""
    registry = ProviderRegistry()
    for provider_class in (*BUILTIN_PROVIDERS, CodexAgentProvider):
        registry.register(provider_class)
    return registry


@dataclass(frozen=True)
class LaunchHandle:
    analysis_id: str
    run_id: str


@dataclass(frozen=True)
class CancelResult:
    """Outcome of a cancel request.

    Attributes:
        processes_killed: Live processes signalled by this call.
        status: Run status after the call; None for an unknown analysis.
    """

    processes_killed: int
    status: AnalysisStatus | None


def completion_message(run: AnalysisRun) -> str:
    """One-line description of a settled run, for notifications."""
    if run.status == AnalysisStatus.CANCELLED:
        return "Analysis cancelled"
    if run.status == AnalysisStatus.FAILED:
        return f"Analysis failed: {run.error or 'all levels failed'}"
    if run.status == AnalysisStatus.RUNNING:
        return "Analysis in progress"

    count = len(run.suggestions)
    message = f"Analysis complete: {count} suggestion{'' if count == 1 else 's'}"
    if run.partial_failure is not None and run.partial_failure.failed_levels:
        failed = ", ".join(map(str, run.partial_failure.failed_levels))
        message += f" (level {failed} failed)"
    return message


class ReviewEngine:
    """Facade used by the outer service layer.

    ``launch`` returns immediately; progress lands in the registry and is
    pushed to ``progress`` subscribers. Must be used from a running event loop.

    Args:
        providers: Provider registry. Defaults to every built-in provider.
        registry: Run store. Pass an isolated instance per test.
        tracker: Process tracker shared by all runs of this engine.
        progress: Sink that receives run snapshots.
        settings: Engine defaults (timeout, retention, concurrency).

    Example:
        engine = ReviewEngine()
        handle = engine.launch(context, {"levels": {"1": True}, "default_members": ["claude"]})
        ...
        engine.cancel(handle.analysis_id)
    """

    def __init__(
        self,
        providers: ProviderRegistry | None = None,
        *,
        registry: AnalysisRegistry | None = None,
        tracker: ProcessTracker | None = None,
        progress: ProgressSink | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.providers = providers or default_registry()
        self.registry = registry or AnalysisRegistry(retention_seconds=self.settings.retention_seconds)
        self.tracker = tracker or ProcessTracker()
        self.progress = progress or ProgressSink()
        self.analyzer = Analyzer(self.providers, settings=self.settings)
        self._tasks: dict[str, asyncio.Task] = {}

    def launch(self, context: ReviewContext, config: CouncilConfig | Mapping[str, Any]) -> LaunchHandle:
        """Validate, register and start an analysis in the background.

        Raises:
            AnalysisSetupError: For configurations that cannot run.
        """
        if not isinstance(config, CouncilConfig):
            config = CouncilConfig.from_dict(config)
        self.analyzer.validate(config)

        analysis_id = uuid.uuid4().hex
        run_id = uuid.uuid4().hex
        levels = {
            level: LevelProgress(
                level=level,
                status=LevelStatus.PENDING if config.is_enabled(level) else LevelStatus.SKIPPED,
            )
            for level in ANALYSIS_LEVELS
        }
        if config.consolidation is not None:
            levels[ORCHESTRATION_LEVEL] = LevelProgress(level=ORCHESTRATION_LEVEL, status=LevelStatus.PENDING)
        run = self.registry.insert(AnalysisRun(
            id=analysis_id,
            review_id=context.review_id,
            run_id=run_id,
            levels=levels,
        ))
        self.progress.publish(run)

        task = asyncio.get_running_loop().create_task(self._run(analysis_id, run_id, context, config))
        self._tasks[analysis_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(analysis_id, None))
        logger.info(f"Launched analysis {analysis_id} (run {run_id}) for review {context.review_id}")
        return LaunchHandle(analysis_id=analysis_id, run_id=run_id)

    def status(self, analysis_id: str) -> AnalysisRun | None:
        return self.registry.get(analysis_id)

    def is_cancelled(self, analysis_id: str) -> bool:
        run = self.registry.get(analysis_id)
        return run is not None and run.is_cancelled

    def cancel(self, analysis_id: str) -> CancelResult:
        """Cancel a running analysis.

        The run is marked cancelled first, then every tracked process is
        signalled without waiting for it to exit. Cancelling an unknown or
        settled analysis changes nothing and reports the existing status.
        """
        run = self.registry.get(analysis_id)
        if run is None:
            logger.info(f"Cancel requested for unknown analysis {analysis_id}")
            return CancelResult(processes_killed=0, status=None)
        if run.is_terminal:
            logger.info(f"Analysis {analysis_id} is already {run.status.value}")
            return CancelResult(processes_killed=0, status=run.status)

        run = self.registry.transition(
            analysis_id,
            AnalysisStatus.CANCELLED,
            levels=self.registry.cancel_levels(analysis_id),
            summary="Analysis cancelled by user",
        )
        killed = self.tracker.kill_all(analysis_id)
        logger.info(f"Cancelled analysis {analysis_id}, signalled {killed} processes")
        self.progress.publish(run)
        return CancelResult(processes_killed=killed, status=run.status)

    async def wait(self, analysis_id: str) -> AnalysisRun | None:
        """Wait until the analysis task finishes and return the final record."""
        task = self._tasks.get(analysis_id)
        if task is not None:
            await asyncio.shield(task)
        return self.registry.get(analysis_id)

    def _on_progress(self, analysis_id: str, level: int, progress: LevelProgress) -> None:
        try:
            run = self.registry.set_level(analysis_id, level, progress)
        except RunSettledError:
            return
        if run is not None:
            self.progress.publish(run)

    async def _run(self, analysis_id: str, run_id: str, context: ReviewContext, config: CouncilConfig) -> None:
        try:
            result = await self.analyzer.run(
                context,
                config,
                run_id=run_id,
                analysis_id=analysis_id,
                progress_callback=lambda level, progress: self._on_progress(analysis_id, level, progress),
                tracker=self.tracker,
                is_cancelled=lambda: self.is_cancelled(analysis_id),
            )
        except Exception as e:
            logger.exception(f"Analysis {analysis_id} failed: {e}")
            self._settle(analysis_id, AnalysisStatus.FAILED, error=str(e))
            return
        finally:
            self.tracker.release(analysis_id)

        self._settle_result(analysis_id, result)

    def _settle_result(self, analysis_id: str, result: AnalysisResult) -> None:
        if result.succeeded_levels:
            status = AnalysisStatus.COMPLETED
            error = None
        else:
            status = AnalysisStatus.FAILED
            error = result.partial_failure.describe() if result.partial_failure else "No level succeeded"

        self._settle(
            analysis_id,
            status,
            suggestions=tuple(result.suggestions),
            summary=result.summary,
            partial_failure=result.partial_failure,
            error=error,
        )

    def _settle(self, analysis_id: str, status: AnalysisStatus, **changes: Any) -> None:
        try:
            run = self.registry.transition(analysis_id, status, **changes)
        except RunSettledError as e:
            # Cancelled while the last members were winding down.
            logger.info(f"{e}; keeping existing status")
            return
        if run is not None:
            logger.info(completion_message(run))
            self.progress.publish(run)
