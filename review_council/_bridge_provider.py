# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Reviewer provider backed by a persistent agent session."""

import asyncio
import logging

from ._bridge import (
    AgentBridge,
    CloseEvent,
    CompleteEvent,
    DeltaEvent,
    ErrorEvent,
    EventSubscription,
    SpawnFn,
    ToolUseEvent,
)
from ._cli_executor import CLIExecutor, StreamEvent
from ._cli_providers import VERSION_CHECK_TIMEOUT, CodexProvider
from ._exceptions import (
    BridgeStartError,
    CancellationError,
    ProcessExecutionError,
    ProcessTimeoutError,
    ProtocolError,
)
from ._json_extractor import extract_json
from ._logging import level_prefix
from ._processes import ProcessHandle
from ._provider import ExecuteOptions, ProviderOverrides, ProviderResult, ReviewProvider
from ._settings import DEFAULT_TIMEOUT_SECONDS, BridgeSettings, ProviderSettings

logger = logging.getLogger("review_council")


class CodexAgentProvider(ReviewProvider):
    """Runs each review as one turn of a fresh Codex app-server session.

    Unlike the one-shot providers, output streams back as JSON-RPC
    notifications; the completed turn's text is then parsed like CLI output.
    """

    PROVIDER_ID = "codex-agent"
    PROVIDER_NAME = "Codex Agent"
    MODELS = CodexProvider.MODELS
    DEFAULT_MODEL = CodexProvider.DEFAULT_MODEL
    INSTALL_INSTRUCTIONS = CodexProvider.INSTALL_INSTRUCTIONS

    def __init__(
        self,
        model: str | None = None,
        overrides: ProviderOverrides | None = None,
        *,
        bridge_settings: BridgeSettings | None = None,
        system_prompt: str | None = None,
        spawn: SpawnFn | None = None,
    ) -> None:
        super().__init__(model, overrides)
        self.bridge_settings = bridge_settings or BridgeSettings(
            default_command=self.overrides.command or "codex",
            env=dict(self.overrides.env),
        )
        self.system_prompt = system_prompt
        self._spawn = spawn

    def create_bridge(self, cwd: str | None, on_spawn=None) -> AgentBridge:
        return AgentBridge(
            model=self.model,
            cwd=cwd,
            system_prompt=self.system_prompt,
            settings=self.bridge_settings,
            spawn=self._spawn,
            on_spawn=on_spawn,
        )

    async def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ProviderResult:
        """Start a session, run one turn and parse the reply.

        The session is always closed before returning.

        Raises:
            ProcessSpawnError: If the agent executable is missing.
            ProcessTimeoutError: If the turn does not complete in time.
            ProcessExecutionError: If the agent fails the turn or exits.
            CancellationError: If the run was cancelled meanwhile.
        """
        options = options or ExecuteOptions()
        prefix = level_prefix(options.level)
        timeout = options.timeout if options.timeout is not None else DEFAULT_TIMEOUT_SECONDS
        handles: list[ProcessHandle] = []

        def track(handle: ProcessHandle) -> None:
            handles.append(handle)
            if options.tracker is not None and options.analysis_id is not None:
                options.tracker.register(options.analysis_id, handle)

        bridge = self.create_bridge(options.cwd, on_spawn=track)
        events = bridge.subscribe()
        logger.info(f"{prefix} Executing {self.provider_name()} (model {self.model})...")

        try:
            text = await asyncio.wait_for(
                self._run_turn(bridge, events, prompt, options, prefix),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{prefix} {self.provider_name()} turn timed out after {timeout}s")
            bridge.abort()
            raise ProcessTimeoutError(timeout, level=None if options.level is None else str(options.level))
        except (BridgeStartError, ProtocolError) as e:
            if options.cancelled():
                raise CancellationError(f"{prefix} Analysis cancelled by user") from e
            raise
        finally:
            events.close()
            await bridge.close()
            if options.tracker is not None and options.analysis_id is not None:
                for handle in handles:
                    options.tracker.unregister(options.analysis_id, handle)

        extracted = extract_json(text, level=options.level)
        if extracted.success:
            logger.info(f"{prefix} Parsed JSON response ({extracted.strategy})")
            return ProviderResult(data=extracted.data)
        logger.warning(f"{prefix} Failed to extract JSON: {extracted.error}")
        return ProviderResult.degraded(text)

    async def _run_turn(
        self,
        bridge: AgentBridge,
        events: EventSubscription,
        prompt: str,
        options: ExecuteOptions,
        prefix: str,
    ) -> str:
        await bridge.start()
        if options.cancelled():
            raise CancellationError(f"{prefix} Analysis cancelled by user")
        await bridge.send_message(prompt)

        async for event in events:
            if isinstance(event, CompleteEvent):
                return event.full_text
            if isinstance(event, DeltaEvent):
                self._relay(options, StreamEvent(event_type="assistant_text", text=event.text))
            elif isinstance(event, ToolUseEvent) and event.status == "start":
                self._relay(options, StreamEvent(event_type="tool_use", text=event.name))
            elif isinstance(event, ErrorEvent):
                if options.cancelled():
                    logger.info(f"{prefix} {self.provider_name()} stopped due to analysis cancellation")
                    raise CancellationError(f"{prefix} Analysis cancelled by user")
                raise ProcessExecutionError(f"{prefix} {self.provider_name()} error: {event.message}")
            elif isinstance(event, CloseEvent):
                break

        if options.cancelled():
            raise CancellationError(f"{prefix} Analysis cancelled by user")
        raise ProcessExecutionError(f"{prefix} {self.provider_name()} exited before completing the turn")

    @staticmethod
    def _relay(options: ExecuteOptions, event: StreamEvent) -> None:
        if options.on_stream_event is None:
            return
        try:
            options.on_stream_event(event)
        except Exception as e:
            logger.warning(f"Stream event handler failed: {e}")

    async def test_availability(self) -> bool:
        """Run ``<command> --version``."""
        settings = ProviderSettings(provider_id="codex", command=self.bridge_settings.command)
        result = await CLIExecutor(settings, timeout=VERSION_CHECK_TIMEOUT).execute(["--version"])
        return result.returncode == 0
