# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Multi-level, multi-provider AI code review engine.

A council of reviewer CLIs (Claude, Codex, Gemini, OpenCode) analyzes a diff at
three levels of context concurrently. Findings are salvaged from free-form
output, validated, de-duplicated and reported through an in-process run
registry that supports live progress and cancellation.

Example:
    from review_council import ReviewContext, ReviewEngine

    engine = ReviewEngine()
    handle = engine.launch(
        ReviewContext(review_id="pr-42", diff=diff, changed_files=["app.py"]),
        {"levels": {"1": True, "2": True}, "default_members": ["claude/sonnet"]},
    )
    run = await engine.wait(handle.analysis_id)
    print(run.summary)
"""

from ._settings import BridgeSettings, EngineSettings, ProviderSettings
from ._exceptions import (
    AnalysisSetupError,
    BridgeStartError,
    BridgeStateError,
    CancellationError,
    ProcessExecutionError,
    ProcessSpawnError,
    ProcessTimeoutError,
    ProtocolError,
    ReviewCouncilException,
    RunSettledError,
    UnknownProviderError,
)
from ._logging import LogLevel, setup_logging
from ._json_extractor import ExtractionResult, extract_json
from ._processes import ProcessHandle, ProcessTracker
from ._cli_executor import CLIExecutor, CLIResult, StreamEvent
from ._provider import (
    AvailabilityResult,
    ExecuteOptions,
    ModelInfo,
    ProviderRegistry,
    ProviderResult,
    ReviewProvider,
)
from ._cli_providers import (
    CLIProvider,
    ClaudeProvider,
    CodexProvider,
    CopilotProvider,
    GeminiProvider,
    OpenCodeProvider,
)
from ._jsonrpc import JsonRpcConnection
from ._bridge import (
    AgentBridge,
    BridgeState,
    CloseEvent,
    CompleteEvent,
    DeltaEvent,
    ErrorEvent,
    ReadyEvent,
    SessionEvent,
    StatusEvent,
    ToolUseEvent,
)
from ._bridge_provider import CodexAgentProvider
from ._findings import Finding, dedupe_findings, findings_from_result
from ._prompts import ORCHESTRATION_LEVEL, build_orchestration_prompt, build_prompt
from ._orchestrator import (
    AnalysisResult,
    Analyzer,
    CouncilConfig,
    CouncilMember,
    LevelProgress,
    LevelStatus,
    PartialBatchFailure,
    ReviewContext,
)
from ._registry import AnalysisRegistry, AnalysisRun, AnalysisStatus, ProgressSink
from ._engine import CancelResult, LaunchHandle, ReviewEngine, default_registry

__version__ = "0.1.0"

__all__ = [
    # Engine
    "ReviewEngine",
    "LaunchHandle",
    "CancelResult",
    "default_registry",
    # Orchestration
    "Analyzer",
    "AnalysisResult",
    "CouncilConfig",
    "CouncilMember",
    "LevelProgress",
    "LevelStatus",
    "PartialBatchFailure",
    "ReviewContext",
    # Run registry
    "AnalysisRegistry",
    "AnalysisRun",
    "AnalysisStatus",
    "ProgressSink",
    # Providers
    "ReviewProvider",
    "ProviderRegistry",
    "ProviderResult",
    "ExecuteOptions",
    "AvailabilityResult",
    "ModelInfo",
    "CLIProvider",
    "ClaudeProvider",
    "CodexProvider",
    "GeminiProvider",
    "OpenCodeProvider",
    "CopilotProvider",
    "CodexAgentProvider",
    # Processes
    "CLIExecutor",
    "CLIResult",
    "StreamEvent",
    "ProcessHandle",
    "ProcessTracker",
    # Agent bridge
    "AgentBridge",
    "BridgeState",
    "JsonRpcConnection",
    "SessionEvent",
    "ReadyEvent",
    "DeltaEvent",
    "StatusEvent",
    "ToolUseEvent",
    "CompleteEvent",
    "ErrorEvent",
    "CloseEvent",
    # Findings
    "Finding",
    "dedupe_findings",
    "findings_from_result",
    "extract_json",
    "ExtractionResult",
    "build_prompt",
    "build_orchestration_prompt",
    "ORCHESTRATION_LEVEL",
    # Settings
    "ProviderSettings",
    "BridgeSettings",
    "EngineSettings",
    # Exceptions
    "ReviewCouncilException",
    "UnknownProviderError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProcessExecutionError",
    "ProtocolError",
    "BridgeStateError",
    "BridgeStartError",
    "CancellationError",
    "AnalysisSetupError",
    "RunSettledError",
    # Logging
    "setup_logging",
    "LogLevel",
]
