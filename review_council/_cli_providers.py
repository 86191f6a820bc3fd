# Copyright (c) 2025. Review Council AI Analysis Engine.

"""One-shot reviewer providers: one CLI process per prompt."""

import json
import logging
from abc import abstractmethod
from dataclasses import replace
from typing import Any, Callable

from ._cli_executor import CLIExecutor, CLIResult, StreamEvent
from ._exceptions import CancellationError, ProcessExecutionError
from ._json_extractor import extract_json
from ._logging import level_prefix
from ._provider import ExecuteOptions, ModelInfo, ProviderOverrides, ProviderResult, ReviewProvider
from ._settings import ProviderSettings

logger = logging.getLogger("review_council")

# Timeout for `--version` checks
VERSION_CHECK_TIMEOUT = 10.0

# Read-only tools granted to Claude in print mode
CLAUDE_ALLOWED_TOOLS = (
    "Read",
    "Bash(git diff*)",
    "Bash(git log*)",
    "Bash(git show*)",
    "Bash(git status*)",
    "Bash(git branch*)",
    "Bash(git rev-parse*)",
    "Bash(cat *)",
    "Bash(ls *)",
    "Bash(head *)",
    "Bash(tail *)",
    "Bash(grep *)",
    "Bash(find *)",
)

# Copilot tool rules; shell(<prefix>) matches a command prefix
COPILOT_ALLOWED_TOOLS = (
    "shell(git diff)",
    "shell(git log)",
    "shell(git show)",
    "shell(git status)",
    "shell(git branch)",
    "shell(git rev-parse)",
    "shell(ls)",
    "shell(cat)",
    "shell(pwd)",
    "shell(head)",
    "shell(tail)",
    "shell(wc)",
    "shell(find)",
    "shell(grep)",
    "shell(rg)",
)

COPILOT_DENIED_TOOLS = (
    "shell(rm)",
    "shell(mv)",
    "shell(chmod)",
    "shell(chown)",
    "shell(sudo)",
    "shell(git commit)",
    "shell(git push)",
    "shell(git checkout)",
    "shell(git reset)",
    "shell(git rebase)",
    "shell(git merge)",
    "write",
)


class CLIProvider(ReviewProvider):
    """Base for providers that run a CLI once per prompt.

    Subclasses supply the command-line arguments and, for streaming CLIs,
    a parser that turns one output line into a StreamEvent. The prompt is
    always written to stdin.
    """

    DEFAULT_COMMAND: str = ""

    def __init__(self, model: str | None = None, overrides: ProviderOverrides | None = None) -> None:
        super().__init__(model, overrides)
        model_info = self.overrides.model(self.model)
        self.settings = ProviderSettings(
            provider_id=self.provider_id(),
            default_command=self.overrides.command or self.DEFAULT_COMMAND or None,
            extra_args=[*self.overrides.extra_args, *(model_info.extra_args if model_info else ())],
            env={**self.overrides.env, **(model_info.env if model_info else {})},
        )
        self.executor = CLIExecutor(
            self.settings,
            install_instructions=self.overrides.install_instructions or self.install_instructions(),
        )

    @abstractmethod
    def build_args(self) -> list[str]:
        """Provider arguments for a review run (the prompt goes to stdin)."""

    def parse_stream_line(self, line: str) -> StreamEvent | None:
        """Turn one stdout line into a StreamEvent. Non-streaming CLIs return None."""
        return None

    def parse_response(self, result: CLIResult, level: Any = None) -> ProviderResult:
        """Extract the review payload from the process output."""
        extracted = extract_json(result.stdout, level=level)
        if extracted.success:
            logger.info(f"{level_prefix(level)} Parsed JSON response ({extracted.strategy})")
            return ProviderResult(data=extracted.data)

        raw = extracted.text or result.stdout
        logger.warning(f"{level_prefix(level)} Failed to extract JSON: {extracted.error}")
        logger.info(f"{level_prefix(level)} Raw response preview: {raw[:500]}")
        return ProviderResult.degraded(raw)

    def _line_handler(self, on_stream_event: Callable[[StreamEvent], None]) -> Callable[[str], None]:
        def handle(line: str) -> None:
            event = self.parse_stream_line(line)
            if event is not None:
                on_stream_event(event)
        return handle

    async def execute(self, prompt: str, options: ExecuteOptions | None = None) -> ProviderResult:
        """Run the CLI with the prompt on stdin.

        Args:
            prompt: Review prompt.
            options: Execution options (cwd, timeout, level, cancellation).

        Returns:
            ProviderResult with parsed data, or a degraded result holding raw text.

        Raises:
            ProcessSpawnError: If the CLI is not installed.
            ProcessTimeoutError: If the CLI does not finish in time.
            ProcessExecutionError: If the CLI exits with a non-zero code.
            CancellationError: If the run was cancelled while the CLI ran.
        """
        options = options or ExecuteOptions()
        prefix = level_prefix(options.level)
        logger.info(f"{prefix} Executing {self.provider_name()} CLI (model {self.model})...")

        on_line = self._line_handler(options.on_stream_event) if options.on_stream_event else None
        result = await self.executor.execute(
            self.build_args(),
            input_text=prompt,
            cwd=options.cwd,
            timeout=options.timeout,
            level=options.level,
            tracker=options.tracker,
            run_id=options.analysis_id,
            on_line=on_line,
        )

        if result.returncode != 0:
            if options.cancelled():
                logger.info(
                    f"{prefix} {self.provider_name()} CLI terminated due to analysis cancellation "
                    f"(exit code {result.returncode})"
                )
                raise CancellationError(f"{prefix} Analysis cancelled by user")

            stderr = result.stderr.strip()
            logger.error(f"{prefix} {self.provider_name()} CLI exited with code {result.returncode}: {stderr}")
            raise ProcessExecutionError(
                f"{prefix} {self.provider_name()} CLI exited with code {result.returncode}: {stderr}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )

        if result.stderr.strip():
            logger.warning(f"{prefix} {self.provider_name()} CLI stderr (success): {result.stderr.strip()}")

        return self.parse_response(result, options.level)

    async def test_availability(self) -> bool:
        """Run ``<command> --version``."""
        checker = CLIExecutor(replace(self.settings, extra_args=[]), timeout=VERSION_CHECK_TIMEOUT)
        result = await checker.execute(["--version"])

        if result.returncode == 0:
            logger.info(f"{self.provider_name()} CLI available: {result.stdout.strip()}")
            return True
        logger.warning(f"{self.provider_name()} CLI returned exit code {result.returncode}")
        return False


class ClaudeProvider(CLIProvider):
    """Claude Code CLI in print mode with read-only tools."""

    PROVIDER_ID = "claude"
    PROVIDER_NAME = "Claude"
    DEFAULT_COMMAND = "claude"
    MODELS = (
        ModelInfo(id="haiku", tier="fast", name="Haiku", description="Quick analysis for simple changes"),
        ModelInfo(id="sonnet", tier="balanced", name="Sonnet", description="Recommended for most reviews",
                  default=True),
        ModelInfo(id="opus", tier="thorough", name="Opus", description="Deep analysis for complex code"),
    )
    DEFAULT_MODEL = "sonnet"
    INSTALL_INSTRUCTIONS = "Install Claude CLI: npm install -g @anthropic-ai/claude-code"

    def build_args(self) -> list[str]:
        return [
            "-p",
            "--model", self.model,
            "--output-format", "json",
            "--allowedTools", ",".join(CLAUDE_ALLOWED_TOOLS),
        ]


class CodexProvider(CLIProvider):
    """Codex CLI in non-interactive ``exec`` mode with a read-only sandbox."""

    PROVIDER_ID = "codex"
    PROVIDER_NAME = "Codex"
    DEFAULT_COMMAND = "codex"
    MODELS = (
        ModelInfo(id="gpt-5.1-codex-mini", tier="fast", name="GPT-5.1 Codex Mini"),
        ModelInfo(id="gpt-5.1-codex-max", tier="balanced", name="GPT-5.1 Codex Max", default=True),
        ModelInfo(id="gpt-5.2-codex", tier="thorough", name="GPT-5.2 Codex"),
    )
    DEFAULT_MODEL = "gpt-5.1-codex-max"
    INSTALL_INSTRUCTIONS = "Install Codex CLI: npm install -g @openai/codex"

    def build_args(self) -> list[str]:
        return [
            "exec",
            "-m", self.model,
            "--json",
            "--sandbox", "read-only",
            "--skip-git-repo-check",
            "-",
        ]

    def parse_stream_line(self, line: str) -> StreamEvent | None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(event, dict) or event.get("type") != "item.completed":
            return None

        item = event.get("item") or {}
        item_type = item.get("type")
        if item_type == "agent_message" and item.get("text"):
            return StreamEvent(event_type="assistant_text", text=item["text"])
        if item_type in ("command_execution", "mcp_tool_call", "tool_call", "function_call"):
            name = item.get("command") or item.get("tool") or item.get("name") or item_type
            return StreamEvent(event_type="tool_use", text=str(name))
        return None


class GeminiProvider(CLIProvider):
    """Gemini CLI with JSON output; the answer arrives in a ``response`` envelope."""

    PROVIDER_ID = "gemini"
    PROVIDER_NAME = "Gemini"
    DEFAULT_COMMAND = "gemini"
    MODELS = (
        ModelInfo(id="gemini-3-flash-preview", tier="fast", name="Gemini 3 Flash"),
        ModelInfo(id="gemini-2.5-pro", tier="balanced", name="Gemini 2.5 Pro", default=True),
        ModelInfo(id="gemini-3-pro-preview", tier="thorough", name="Gemini 3 Pro"),
    )
    DEFAULT_MODEL = "gemini-2.5-pro"
    INSTALL_INSTRUCTIONS = "Install Gemini CLI: npm install -g @google/gemini-cli"

    def build_args(self) -> list[str]:
        return ["-m", self.model, "-o", "json", "-y"]


class OpenCodeProvider(CLIProvider):
    """OpenCode ``run`` with JSON Lines output.

    OpenCode ships no built-in model list; models come from configuration.
    """

    PROVIDER_ID = "opencode"
    PROVIDER_NAME = "OpenCode"
    DEFAULT_COMMAND = "opencode"
    INSTALL_INSTRUCTIONS = "Install OpenCode: curl -fsSL https://opencode.ai/install | bash"

    def build_args(self) -> list[str]:
        if not self.model:
            raise ProcessExecutionError(
                "OpenCode has no default model; configure providers.opencode.models"
            )
        return ["run", "-m", self.model, "--format", "json"]

    def parse_stream_line(self, line: str) -> StreamEvent | None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(event, dict):
            return None

        part = event.get("part") or {}
        event_type = event.get("type")
        if event_type == "text":
            text = part.get("text") or event.get("text")
            if text:
                return StreamEvent(event_type="assistant_text", text=text)
        elif event_type == "tool_use":
            name = part.get("tool") or part.get("name") or part.get("tool_name") or "unknown"
            return StreamEvent(event_type="tool_use", text=str(name))
        return None


class CopilotProvider(CLIProvider):
    """GitHub Copilot CLI in silent mode.

    Copilot reads the prompt from stdin when ``-p`` is not given. Tool access
    is limited with ``--allow-tool``/``--deny-tool``; denials take precedence,
    so ``--allow-all-tools`` only approves what remains.
    """

    PROVIDER_ID = "copilot"
    PROVIDER_NAME = "Copilot"
    DEFAULT_COMMAND = "copilot"
    MODELS = (
        ModelInfo(id="gpt-5.1-codex-mini", tier="fast", name="GPT-5.1 Mini"),
        ModelInfo(id="gemini-3-pro-preview", tier="balanced", name="Gemini 3 Pro", default=True),
        ModelInfo(id="gpt-5.1-codex-max", tier="thorough", name="GPT-5.1 Max"),
        ModelInfo(id="claude-opus-4.5", tier="thorough", name="Claude Opus 4.5",
                  description="The most capable model for critical code reviews"),
    )
    DEFAULT_MODEL = "gemini-3-pro-preview"
    INSTALL_INSTRUCTIONS = (
        "Install GitHub Copilot CLI: npm install -g @github/copilot\n"
        "Or visit: https://docs.github.com/en/copilot/how-tos/set-up/install-copilot-cli"
    )

    def build_args(self) -> list[str]:
        args = ["--model", self.model]
        for tool in COPILOT_ALLOWED_TOOLS:
            args += ["--allow-tool", tool]
        for tool in COPILOT_DENIED_TOOLS:
            args += ["--deny-tool", tool]
        return [*args, "--allow-all-tools", "--allow-all-paths", "-s"]


BUILTIN_PROVIDERS: tuple[type[CLIProvider], ...] = (
    ClaudeProvider,
    CodexProvider,
    GeminiProvider,
    OpenCodeProvider,
    CopilotProvider,
)
