# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Settings for reviewer providers, the agent bridge and the engine."""

import os
import shlex
from dataclasses import dataclass, field

# Default timeout for one-shot provider calls (5 minutes)
DEFAULT_TIMEOUT_SECONDS = 300.0

# Grace window between SIGTERM and SIGKILL when closing the agent bridge
DEFAULT_CLOSE_GRACE_SECONDS = 3.0

# How long settled runs stay queryable in the registry (1 hour)
DEFAULT_RETENTION_SECONDS = 3600.0

ENV_PREFIX = "REVIEW_COUNCIL_"

# Shell exit status for "command not found"
SHELL_NOT_FOUND = 127


@dataclass
class ProviderSettings:
    """Settings for a one-shot reviewer CLI.

    Attributes:
        provider_id: Provider the settings belong to ('claude', 'codex', ...).
        command: Executable or full command line. None means the provider default,
            overridable with the REVIEW_COUNCIL_<PROVIDER>_CMD environment variable.
        default_command: Executable used when nothing overrides it.
        extra_args: Additional CLI arguments appended after the provider's own.
        env: Extra environment variables for the subprocess.
        use_shell: Run through the shell. Derived from the command: a command
            line containing whitespace (e.g. "npx gemini") switches to shell mode.

    Example:
        settings = ProviderSettings(provider_id="gemini", default_command="gemini")
        settings.command  # "gemini", or $REVIEW_COUNCIL_GEMINI_CMD when set
    """

    provider_id: str
    command: str | None = None
    default_command: str | None = None
    extra_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    use_shell: bool = field(default=False, init=False)

    env_prefix: str = field(default=ENV_PREFIX, repr=False)

    def __post_init__(self) -> None:
        """Load the command from the environment if not explicitly set."""
        if self.command is None:
            env_name = f"{self.env_prefix}{self.provider_id.upper().replace('-', '_')}_CMD"
            self.command = os.environ.get(env_name) or self.default_command or self.provider_id

        self.use_shell = any(ch.isspace() for ch in self.command.strip())

    def build_command(self, args: list[str]) -> tuple[str, list[str]]:
        """Combine the command with provider arguments.

        Returns:
            (program, argv) for exec mode, or (command_line, []) for shell mode.
        """
        all_args = [*args, *self.extra_args]
        if self.use_shell:
            if not all_args:
                return self.command, []
            return f"{self.command} {shlex.join(all_args)}", []
        return self.command, all_args

    def subprocess_env(self) -> dict[str, str]:
        """Environment for the subprocess: the current environment plus overrides."""
        return {**os.environ, **self.env}


@dataclass
class BridgeSettings:
    """Settings for the persistent agent bridge.

    Attributes:
        command: Agent command line. None means REVIEW_COUNCIL_CODEX_CMD, then default_command.
            A command line containing whitespace runs through the shell, as
            for one-shot providers.
        default_command: Command used when nothing overrides it.
        args: Arguments that put the agent in app-server mode.
        close_grace_period: Seconds between SIGTERM and SIGKILL on close.
        client_name: Name reported in the initialize handshake.
        client_version: Version reported in the initialize handshake.
        env: Extra environment variables for the subprocess.
    """

    command: str | None = None
    default_command: str = "codex"
    args: list[str] = field(default_factory=lambda: ["app-server"])
    close_grace_period: float = DEFAULT_CLOSE_GRACE_SECONDS
    client_name: str = "review-council"
    client_version: str = "0.1.0"
    env: dict[str, str] = field(default_factory=dict)
    use_shell: bool = field(default=False, init=False)

    env_prefix: str = field(default=ENV_PREFIX, repr=False)

    def __post_init__(self) -> None:
        if self.command is None:
            self.command = os.environ.get(f"{self.env_prefix}CODEX_CMD") or self.default_command

        self.use_shell = any(ch.isspace() for ch in self.command.strip())

    def build_command(self) -> tuple[str, list[str]]:
        """Program and arguments for the agent process.

        In shell mode the command line and the app-server arguments are
        handed to the system shell.
        """
        if not self.use_shell:
            return self.command, list(self.args)
        line = f"{self.command} {shlex.join(self.args)}" if self.args else self.command
        if os.name == "posix":
            return "/bin/sh", ["-c", line]
        return os.environ.get("COMSPEC", "cmd.exe"), ["/c", line]


@dataclass
class EngineSettings:
    """Settings for the review engine.

    Attributes:
        default_timeout: Per-call timeout in seconds for provider executions.
        retention_seconds: How long settled runs remain available to status queries.
        max_concurrency: Upper bound on concurrent provider calls per analysis.
            None means unbounded fan-out.
    """

    default_timeout: float | None = None
    retention_seconds: float = DEFAULT_RETENTION_SECONDS
    max_concurrency: int | None = None

    env_prefix: str = field(default=ENV_PREFIX, repr=False)

    def __post_init__(self) -> None:
        if self.default_timeout is None:
            env_timeout = os.environ.get(f"{self.env_prefix}TIMEOUT")
            self.default_timeout = float(env_timeout) if env_timeout else DEFAULT_TIMEOUT_SECONDS

        if self.max_concurrency is None:
            env_concurrency = os.environ.get(f"{self.env_prefix}MAX_CONCURRENCY")
            if env_concurrency:
                self.max_concurrency = int(env_concurrency)

        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
