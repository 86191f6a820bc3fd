# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Run analysis levels and council members concurrently and aggregate findings.

A council is a set of provider+model members. Each enabled level runs every
one of its members against a level-specific prompt; all members of all levels
run at the same time. Member failures are recorded, never raised, so one
broken reviewer cannot discard the work of the others.

With a consolidation member configured, a fourth pass hands the findings of
every completed level to that member, which merges them into one curated
list. When it fails or returns no JSON, the de-duplicated findings are used.

Example:
    config = CouncilConfig.from_dict({
        "levels": {"1": True, "2": True, "3": False},
        "default_members": [{"provider": "claude", "model": "sonnet"}],
        "consolidation": {"provider": "claude", "model": "opus"},
    })
    result = await Analyzer(registry).run(context, config)
    print(result.summary)
"""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from ._cli_executor import StreamEvent
from ._exceptions import AnalysisSetupError, CancellationError, ReviewCouncilException
from ._findings import Finding, dedupe_findings, findings_from_result
from ._logging import level_prefix
from ._processes import ProcessTracker
from ._prompts import ORCHESTRATION_LEVEL, build_orchestration_prompt, build_prompt
from ._provider import ExecuteOptions, ProviderRegistry, resolve_default_model
from ._settings import EngineSettings

logger = logging.getLogger("review_council")

ANALYSIS_LEVELS = (1, 2, 3)


class LevelStatus(str, Enum):
    """Progress of one analysis level."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (LevelStatus.PENDING, LevelStatus.RUNNING)


@dataclass(frozen=True)
class CouncilMember:
    """One provider+model combination."""

    provider: str
    model: str | None = None
    timeout: float | None = None

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model}" if self.model else self.provider

    @classmethod
    def from_value(cls, value: Any) -> "CouncilMember":
        """Accept ``"claude"``, ``"claude/opus"`` or ``{"provider": ..., "model": ...}``."""
        if isinstance(value, CouncilMember):
            return value
        if isinstance(value, str):
            provider, _, model = value.partition("/")
            return cls(provider=provider, model=model or None)
        if isinstance(value, Mapping) and value.get("provider"):
            return cls(provider=value["provider"], model=value.get("model"), timeout=value.get("timeout"))
        raise AnalysisSetupError(f"Invalid council member: {value!r}")


@dataclass
class LevelConfig:
    level: int
    enabled: bool = False
    members: list[CouncilMember] = field(default_factory=list)


@dataclass
class CouncilConfig:
    """Which levels run and which members run them.

    Attributes:
        levels: Level number to its configuration. Missing levels are disabled.
        default_members: Members used by enabled levels that name none.
        timeout: Per-call timeout in seconds. None uses the engine default.
        max_concurrency: Cap on simultaneous provider calls. None is unbounded.
        consolidation: Member that merges the level findings. None skips
            the consolidation pass.
    """

    levels: dict[int, LevelConfig] = field(default_factory=dict)
    default_members: list[CouncilMember] = field(default_factory=list)
    timeout: float | None = None
    max_concurrency: int | None = None
    consolidation: CouncilMember | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CouncilConfig":
        """Build from the JSON configuration shape.

        ``levels`` maps "1", "2", "3" to a bool or ``{"enabled": bool, "members": [...]}``.
        ``consolidation`` (or its older name ``orchestration``) is a member
        that must name both a provider and a model.

        Raises:
            AnalysisSetupError: For malformed levels or members.
        """
        default_members = [CouncilMember.from_value(m) for m in data.get("default_members") or []]

        levels = {}
        for key, value in (data.get("levels") or {}).items():
            try:
                level = int(key)
            except (TypeError, ValueError):
                raise AnalysisSetupError(f"Invalid analysis level: {key!r}")
            if level not in ANALYSIS_LEVELS:
                raise AnalysisSetupError(f"Invalid analysis level: {key!r}")

            if isinstance(value, Mapping):
                enabled = bool(value.get("enabled", True))
                members = [CouncilMember.from_value(m) for m in value.get("members") or []]
            else:
                enabled = bool(value)
                members = []
            levels[level] = LevelConfig(level=level, enabled=enabled, members=members)

        max_concurrency = data.get("max_concurrency")
        if max_concurrency is not None and int(max_concurrency) < 1:
            raise AnalysisSetupError("max_concurrency must be at least 1")

        return cls(
            levels=levels,
            default_members=default_members,
            timeout=data.get("timeout"),
            max_concurrency=int(max_concurrency) if max_concurrency is not None else None,
            consolidation=_consolidation_member(data),
        )

    def is_enabled(self, level: int) -> bool:
        config = self.levels.get(level)
        return bool(config and config.enabled)

    def enabled_levels(self) -> list[int]:
        return [level for level in ANALYSIS_LEVELS if self.is_enabled(level)]

    def members_for(self, level: int) -> list[CouncilMember]:
        config = self.levels.get(level)
        if config and config.members:
            return list(config.members)
        return list(self.default_members)


def _consolidation_member(data: Mapping[str, Any]) -> CouncilMember | None:
    value = data.get("consolidation", data.get("orchestration"))
    if not value:
        return None
    member = CouncilMember.from_value(value)
    if not member.model:
        raise AnalysisSetupError(
            f"Consolidation member {member.label} must name both a provider and a model"
        )
    return member


@dataclass
class ReviewContext:
    """The change under review.

    Attributes:
        review_id: Identity of the owning review.
        diff: Unified diff of the change.
        changed_files: Files the change touches; findings elsewhere are dropped.
        title: Change title.
        description: Change description.
        worktree_path: Checkout the reviewers run in.
        custom_instructions: Repository or request specific instructions.
    """

    review_id: str
    diff: str
    changed_files: list[str] = field(default_factory=list)
    title: str = ""
    description: str = ""
    worktree_path: str | None = None
    custom_instructions: str | None = None


@dataclass(frozen=True)
class LevelProgress:
    """Snapshot of one level, delivered on every status change."""

    level: int
    status: LevelStatus
    message: str = ""
    members_total: int = 0
    members_done: int = 0
    findings: int = 0
    activity: str | None = None


@dataclass
class MemberOutcome:
    member: CouncilMember
    level: int
    status: LevelStatus
    findings: list[Finding] = field(default_factory=list)
    summary: str | None = None
    error: str | None = None
    parsed: bool = True
    duration: float = 0.0


@dataclass
class LevelOutcome:
    level: int
    status: LevelStatus
    members: list[MemberOutcome] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for m in self.members if m.status == LevelStatus.COMPLETED)


@dataclass
class PartialBatchFailure:
    """Levels and members that did not succeed in an otherwise reported run.

    This is carried on the result, never raised.
    """

    failed_levels: list[int] = field(default_factory=list)
    skipped_levels: list[int] = field(default_factory=list)
    cancelled_levels: list[int] = field(default_factory=list)
    member_errors: dict[str, str] = field(default_factory=dict)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_levels or self.member_errors)

    def describe(self) -> str:
        parts = []
        if self.failed_levels:
            parts.append(f"Failed levels: {', '.join(map(str, self.failed_levels))}")
        if self.cancelled_levels:
            parts.append(f"Cancelled levels: {', '.join(map(str, self.cancelled_levels))}")
        if self.skipped_levels:
            parts.append(f"Skipped levels: {', '.join(map(str, self.skipped_levels))}")
        if self.member_errors:
            parts.append("Member errors: " + "; ".join(
                f"{key}: {error}" for key, error in self.member_errors.items()
            ))
        return ". ".join(parts)


@dataclass
class AnalysisResult:
    """Aggregated outcome of a run.

    ``consolidation`` is the level 4 outcome when a consolidation member was
    configured; it is kept out of ``levels``.
    """

    summary: str
    suggestions: list[Finding]
    levels: dict[int, LevelOutcome]
    partial_failure: PartialBatchFailure | None = None
    consolidation: LevelOutcome | None = None

    @property
    def succeeded_levels(self) -> list[int]:
        return [n for n, outcome in self.levels.items() if outcome.status == LevelStatus.COMPLETED]

    @property
    def failed_levels(self) -> list[int]:
        return [n for n, outcome in self.levels.items() if outcome.status == LevelStatus.FAILED]


ProgressCallback = Callable[[int, LevelProgress], None]


class Analyzer:
    """Fans a review out over levels and council members.

    Args:
        registry: Providers available to council members.
        settings: Default timeout and concurrency cap.
    """

    def __init__(self, registry: ProviderRegistry, *, settings: EngineSettings | None = None) -> None:
        self.registry = registry
        self.settings = settings or EngineSettings()

    def validate(self, config: CouncilConfig) -> None:
        """Reject configurations that cannot run at all.

        Raises:
            AnalysisSetupError: If no level is enabled, an enabled level has no
                members, or a member (consolidation included) names an
                unknown provider.
        """
        enabled = config.enabled_levels()
        if not enabled:
            raise AnalysisSetupError("No analysis levels enabled")

        members = []
        for level in enabled:
            level_members = config.members_for(level)
            if not level_members:
                raise AnalysisSetupError(f"Level {level} is enabled but has no council members")
            members.extend(level_members)
        if config.consolidation is not None:
            members.append(config.consolidation)

        for member in members:
            if member.provider not in self.registry:
                raise AnalysisSetupError(
                    f"Unknown AI provider: {member.provider}. "
                    f"Available providers: {', '.join(self.registry.ids())}"
                )

    def tier_for(self, member: CouncilMember) -> str:
        """Tier of the member's model; balanced when the model is not listed."""
        models = self.registry.models_for(member.provider)
        model_id = member.model or resolve_default_model(models)
        if model_id is None:
            return "balanced"
        return self.registry.tier_for_model(member.provider, model_id) or "balanced"

    async def run(
        self,
        context: ReviewContext,
        config: CouncilConfig,
        *,
        run_id: str | None = None,
        analysis_id: str | None = None,
        progress_callback: ProgressCallback | None = None,
        tracker: ProcessTracker | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> AnalysisResult:
        """Run every enabled level and aggregate the findings.

        Args:
            context: The change under review.
            config: Levels and council members.
            run_id: Identifier used in logs; generated when omitted.
            analysis_id: Key spawned processes are tracked under; defaults to run_id.
            progress_callback: Called with (level, LevelProgress) on every transition.
            tracker: Process tracker used for cancellation.
            is_cancelled: Returns True once the run has been cancelled.

        Returns:
            AnalysisResult with de-duplicated (or consolidated) findings and
            per-level outcomes.

        Raises:
            AnalysisSetupError: If the configuration cannot run at all.
        """
        self.validate(config)
        run_id = run_id or uuid.uuid4().hex
        analysis_id = analysis_id or run_id
        cancelled = is_cancelled or (lambda: False)

        def report(level: int, status: LevelStatus, **details: Any) -> None:
            if progress_callback is None:
                return
            try:
                progress_callback(level, LevelProgress(level=level, status=status, **details))
            except Exception as e:
                logger.warning(f"{level_prefix(level)} Progress callback failed: {e}")

        enabled = config.enabled_levels()
        skipped = [level for level in ANALYSIS_LEVELS if level not in enabled]
        for level in skipped:
            report(level, LevelStatus.SKIPPED, message="Level disabled")

        limit = config.max_concurrency or self.settings.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        logger.info(
            f"Starting analysis {run_id} for review {context.review_id}: "
            f"levels {', '.join(map(str, enabled))}"
            + (f" (max {limit} concurrent calls)" if limit else "")
        )

        outcomes = await asyncio.gather(*(
            self._run_level(
                level, context, config,
                analysis_id=analysis_id,
                report=report,
                tracker=tracker,
                cancelled=cancelled,
                semaphore=semaphore,
            )
            for level in enabled
        ))

        levels = {outcome.level: outcome for outcome in outcomes}
        for level in skipped:
            levels[level] = LevelOutcome(level=level, status=LevelStatus.SKIPPED)
        levels = dict(sorted(levels.items()))

        suggestions = dedupe_findings(
            finding for outcome in outcomes for finding in outcome.findings
        )
        consolidation = None
        if config.consolidation is not None:
            consolidation = await self._consolidate(
                context, config, levels, suggestions,
                analysis_id=analysis_id,
                report=report,
                tracker=tracker,
                cancelled=cancelled,
            )
            if consolidation.status == LevelStatus.COMPLETED:
                suggestions = consolidation.findings

        partial_failure = self._partial_failure(levels, consolidation)
        summary = self._summarize(levels, suggestions, partial_failure, consolidation)
        logger.info(f"Analysis {run_id} finished: {summary}")

        return AnalysisResult(
            summary=summary,
            suggestions=suggestions,
            levels=levels,
            partial_failure=partial_failure,
            consolidation=consolidation,
        )

    async def _run_level(
        self,
        level: int,
        context: ReviewContext,
        config: CouncilConfig,
        *,
        analysis_id: str,
        report: Callable[..., None],
        tracker: ProcessTracker | None,
        cancelled: Callable[[], bool],
        semaphore: asyncio.Semaphore | None,
    ) -> LevelOutcome:
        prefix = level_prefix(level)
        members = config.members_for(level)
        prompts: dict[str, str] = {}
        done = 0

        report(level, LevelStatus.RUNNING, message="Analysis started", members_total=len(members))

        def on_stream_event(event: StreamEvent) -> None:
            report(
                level, LevelStatus.RUNNING,
                members_total=len(members), members_done=done, activity=event.text[:200],
            )

        async def run_member(member: CouncilMember) -> MemberOutcome:
            nonlocal done
            tier = self.tier_for(member)
            if tier not in prompts:
                prompts[tier] = build_prompt(level, context, tier)
            async with semaphore if semaphore is not None else contextlib.nullcontext():
                outcome = await self._run_member(
                    member, level, prompts[tier], context, config,
                    analysis_id=analysis_id,
                    tracker=tracker,
                    cancelled=cancelled,
                    on_stream_event=on_stream_event,
                )
            done += 1
            return outcome

        member_outcomes = await asyncio.gather(*(run_member(member) for member in members))

        findings = dedupe_findings(f for outcome in member_outcomes for f in outcome.findings)
        if cancelled() or any(m.status == LevelStatus.CANCELLED for m in member_outcomes):
            status = LevelStatus.CANCELLED
        elif any(m.status == LevelStatus.COMPLETED for m in member_outcomes):
            status = LevelStatus.COMPLETED
        else:
            status = LevelStatus.FAILED

        succeeded = sum(1 for m in member_outcomes if m.status == LevelStatus.COMPLETED)
        message = f"{succeeded}/{len(members)} members succeeded, {len(findings)} suggestions"
        if status == LevelStatus.CANCELLED:
            logger.info(f"{prefix} Cancelled")
        elif status == LevelStatus.FAILED:
            logger.error(f"{prefix} Failed: all {len(members)} members failed")
        else:
            logger.info(f"{prefix} Completed: {message}")

        report(
            level, status,
            message=message,
            members_total=len(members),
            members_done=len(members),
            findings=len(findings),
        )
        return LevelOutcome(level=level, status=status, members=list(member_outcomes), findings=findings)

    async def _consolidate(
        self,
        context: ReviewContext,
        config: CouncilConfig,
        levels: dict[int, LevelOutcome],
        fallback: list[Finding],
        *,
        analysis_id: str,
        report: Callable[..., None],
        tracker: ProcessTracker | None,
        cancelled: Callable[[], bool],
    ) -> LevelOutcome:
        """Merge the level findings with the consolidation member.

        On failure the outcome is FAILED and carries ``fallback`` as its
        findings; the caller keeps the de-duplicated list in that case.
        """
        level = ORCHESTRATION_LEVEL
        prefix = level_prefix(level)
        member = config.consolidation

        if cancelled():
            report(level, LevelStatus.CANCELLED, message="Analysis cancelled")
            return LevelOutcome(level=level, status=LevelStatus.CANCELLED, findings=fallback)

        completed = {
            n: outcome.findings for n, outcome in levels.items()
            if outcome.status == LevelStatus.COMPLETED
        }
        if not fallback:
            message = "No suggestions to consolidate" if completed else "No level completed"
            logger.info(f"{prefix} Skipped: {message}")
            report(level, LevelStatus.SKIPPED, message=message)
            return LevelOutcome(level=level, status=LevelStatus.SKIPPED)

        tier = self.tier_for(member)
        prompt = build_orchestration_prompt(context, completed, tier)
        logger.info(f"{prefix} Consolidating {len(fallback)} suggestions with {member.label} ({tier})")
        report(level, LevelStatus.RUNNING, message="Consolidation started", members_total=1)

        def on_stream_event(event: StreamEvent) -> None:
            report(level, LevelStatus.RUNNING, members_total=1, activity=event.text[:200])

        outcome = await self._run_member(
            member, level, prompt, context, config,
            analysis_id=analysis_id,
            tracker=tracker,
            cancelled=cancelled,
            on_stream_event=on_stream_event,
        )

        if outcome.status == LevelStatus.COMPLETED and outcome.parsed:
            findings = dedupe_findings(outcome.findings)
            message = f"Consolidated {len(fallback)} suggestions into {len(findings)}"
            logger.info(f"{prefix} {message}")
            report(level, LevelStatus.COMPLETED, message=message,
                   members_total=1, members_done=1, findings=len(findings))
            return LevelOutcome(level=level, status=LevelStatus.COMPLETED, members=[outcome], findings=findings)

        if outcome.status == LevelStatus.CANCELLED:
            report(level, LevelStatus.CANCELLED, message="Analysis cancelled", members_total=1, members_done=1)
            return LevelOutcome(level=level, status=LevelStatus.CANCELLED, members=[outcome], findings=fallback)

        if outcome.status == LevelStatus.COMPLETED:
            outcome.status = LevelStatus.FAILED
            outcome.error = "Consolidation returned no parseable JSON"
        message = f"Consolidation failed, keeping {len(fallback)} de-duplicated suggestions"
        logger.warning(f"{prefix} {message}: {outcome.error}")
        report(level, LevelStatus.FAILED, message=message,
               members_total=1, members_done=1, findings=len(fallback))
        return LevelOutcome(level=level, status=LevelStatus.FAILED, members=[outcome], findings=fallback)

    async def _run_member(
        self,
        member: CouncilMember,
        level: int,
        prompt: str,
        context: ReviewContext,
        config: CouncilConfig,
        *,
        analysis_id: str,
        tracker: ProcessTracker | None,
        cancelled: Callable[[], bool],
        on_stream_event: Callable[[StreamEvent], None],
    ) -> MemberOutcome:
        """Run one member; every failure becomes part of the outcome."""
        prefix = level_prefix(level)
        if cancelled():
            return MemberOutcome(member=member, level=level, status=LevelStatus.CANCELLED)

        started = time.monotonic()
        options = ExecuteOptions(
            cwd=context.worktree_path,
            timeout=member.timeout or config.timeout or self.settings.default_timeout,
            level=level,
            analysis_id=analysis_id,
            tracker=tracker,
            is_cancelled=cancelled,
            on_stream_event=on_stream_event,
        )

        def outcome(status: LevelStatus, **details: Any) -> MemberOutcome:
            return MemberOutcome(
                member=member, level=level, status=status,
                duration=time.monotonic() - started, **details,
            )

        try:
            provider = self.registry.create(member.provider, member.model)
            result = await provider.execute(prompt, options)
        except CancellationError:
            logger.info(f"{prefix} {member.label} cancelled")
            return outcome(LevelStatus.CANCELLED)
        except ReviewCouncilException as e:
            if cancelled():
                logger.info(f"{prefix} {member.label} stopped by cancellation")
                return outcome(LevelStatus.CANCELLED)
            logger.error(f"{prefix} {member.label} failed: {e}")
            return outcome(LevelStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"{prefix} {member.label} failed unexpectedly: {e}")
            return outcome(LevelStatus.FAILED, error=str(e))

        findings, summary = findings_from_result(
            result,
            provider=member.provider,
            model=provider.model,
            level=level,
            valid_files=context.changed_files,
        )
        if not result.parsed:
            logger.warning(f"{prefix} {member.label} returned no parseable JSON")
        logger.info(f"{prefix} {member.label} produced {len(findings)} suggestions")
        return outcome(LevelStatus.COMPLETED, findings=findings, summary=summary, parsed=result.parsed)

    @staticmethod
    def _partial_failure(
        levels: dict[int, LevelOutcome],
        consolidation: LevelOutcome | None = None,
    ) -> PartialBatchFailure | None:
        failure = PartialBatchFailure()
        for level, outcome in levels.items():
            if outcome.status == LevelStatus.FAILED:
                failure.failed_levels.append(level)
            elif outcome.status == LevelStatus.SKIPPED:
                failure.skipped_levels.append(level)
            elif outcome.status == LevelStatus.CANCELLED:
                failure.cancelled_levels.append(level)
            for member in outcome.members:
                if member.status == LevelStatus.FAILED:
                    failure.member_errors[f"level {level} {member.member.label}"] = member.error or "failed"
        if consolidation is not None:
            for member in consolidation.members:
                if member.status == LevelStatus.FAILED:
                    failure.member_errors[f"consolidation {member.member.label}"] = member.error or "failed"

        if failure.failed_levels or failure.cancelled_levels or failure.member_errors:
            return failure
        return None

    @staticmethod
    def _summarize(
        levels: dict[int, LevelOutcome],
        suggestions: list[Finding],
        partial_failure: PartialBatchFailure | None,
        consolidation: LevelOutcome | None = None,
    ) -> str:
        ran = [outcome for outcome in levels.values() if outcome.status != LevelStatus.SKIPPED]
        succeeded = [outcome for outcome in ran if outcome.status == LevelStatus.COMPLETED]
        summary = (
            f"{len(suggestions)} suggestions from {len(succeeded)} of {len(ran)} levels"
        )
        if consolidation is not None and consolidation.status == LevelStatus.COMPLETED:
            summary += " (consolidated)"
            reviewer_summaries = [m.summary for m in consolidation.members if m.summary]
        else:
            reviewer_summaries = [
                member.summary
                for outcome in succeeded
                for member in outcome.members
                if member.summary
            ]
        if reviewer_summaries:
            summary += ". " + " ".join(s.strip() for s in reviewer_summaries)
        if partial_failure is not None:
            summary += ". " + partial_failure.describe()
        return summary
