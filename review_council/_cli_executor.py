# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Async subprocess wrapper for one-shot reviewer CLI execution."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ._exceptions import ProcessSpawnError, ProcessTimeoutError
from ._logging import level_prefix
from ._processes import KILL_GRACE_SECONDS, USE_PROCESS_GROUPS, ProcessHandle, ProcessTracker
from ._settings import DEFAULT_TIMEOUT_SECONDS, SHELL_NOT_FOUND, ProviderSettings

READ_CHUNK_SIZE = 64 * 1024

logger = logging.getLogger("review_council")


@dataclass
class CLIResult:
    """Result from a reviewer CLI execution.

    Attributes:
        returncode: Process exit code (negative when killed by a signal).
        stdout: Decoded standard output.
        stderr: Decoded standard error.
        pid: Process id.
        duration: Wall-clock seconds from spawn to exit.
    """

    returncode: int
    stdout: str
    stderr: str
    pid: int | None = None
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass
class StreamEvent:
    """A normalized progress event parsed from a provider's output stream.

    Attributes:
        event_type: 'assistant_text' or 'tool_use'.
        text: Assistant text, or the tool/command name for tool use.
        timestamp: Unix time the event was observed.
    """

    event_type: str
    text: str
    timestamp: float = field(default_factory=time.time)

    @property
    def is_assistant_text(self) -> bool:
        return self.event_type == "assistant_text"

    @property
    def is_tool_use(self) -> bool:
        return self.event_type == "tool_use"


class CLIExecutor:
    """Runs a reviewer CLI once: prompt on stdin, output collected from stdout."""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace: float = KILL_GRACE_SECONDS,
        install_instructions: str | None = None,
    ) -> None:
        """Initialize the CLI executor.

        Args:
            settings: Provider settings (command, shell mode, env).
            timeout: Default timeout for CLI execution in seconds.
            kill_grace: Seconds between SIGTERM and SIGKILL on timeout.
            install_instructions: Appended to the error when the CLI is missing.
        """
        self.settings = settings
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.install_instructions = install_instructions

    async def execute(
        self,
        args: list[str],
        *,
        input_text: str = "",
        cwd: str | None = None,
        timeout: float | None = None,
        level: str | int | None = None,
        tracker: ProcessTracker | None = None,
        run_id: str | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> CLIResult:
        """Execute the CLI and wait for it to exit.

        A non-zero exit code is returned, not raised; callers decide whether
        it means failure or cancellation.

        Args:
            args: Provider arguments (appended after the command).
            input_text: Text written to stdin, then stdin is closed.
            cwd: Working directory for the process.
            timeout: Optional timeout override in seconds.
            level: Analysis level, for log prefixes.
            tracker: Process tracker the process is registered with while it runs.
            run_id: Run id to register the process under.
            on_line: Called with each non-empty stdout line as it arrives.

        Returns:
            CLIResult with the collected output.

        Raises:
            ProcessSpawnError: If the executable cannot be found or started.
            ProcessTimeoutError: If the process does not finish in time.
        """
        effective_timeout = timeout if timeout is not None else self.timeout
        prefix = level_prefix(level)
        process = await self._spawn(args, cwd)

        handle = ProcessHandle(process, label=f"{self.settings.provider_id} cli")
        if tracker is not None and run_id is not None:
            tracker.register(run_id, handle)

        input_bytes = input_text.encode()
        logger.info(
            f"{prefix} Spawned {self.settings.provider_id} (pid {process.pid}), "
            f"writing {len(input_bytes)} bytes to stdin",
            extra={"pid": process.pid, "prompt_bytes": len(input_bytes), "level": level},
        )

        started = time.monotonic()
        try:
            stdout, stderr = await asyncio.wait_for(
                self._communicate(process, input_bytes, on_line, prefix),
                timeout=effective_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{prefix} Process {process.pid} timed out after {effective_timeout}s")
            await handle.stop(self.kill_grace)
            raise ProcessTimeoutError(effective_timeout, level=None if level is None else str(level))
        except asyncio.CancelledError:
            handle.kill()
            raise
        finally:
            if tracker is not None and run_id is not None:
                tracker.unregister(run_id, handle)

        duration = time.monotonic() - started
        logger.info(
            f"{prefix} Process {process.pid} exited with code {process.returncode} "
            f"after {duration:.1f}s (stdout {len(stdout)} bytes, stderr {len(stderr)} bytes)",
            extra={
                "pid": process.pid,
                "exit_code": process.returncode,
                "stdout_bytes": len(stdout),
                "stderr_bytes": len(stderr),
                "duration": round(duration, 3),
                "level": level,
            },
        )

        if self.settings.use_shell and process.returncode == SHELL_NOT_FOUND:
            raise ProcessSpawnError(
                f"{self.settings.command} not found (shell exit {SHELL_NOT_FOUND}).",
                command=self.settings.command,
                install_instructions=self.install_instructions,
            )

        return CLIResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            pid=process.pid,
            duration=duration,
        )

    async def _spawn(self, args: list[str], cwd: str | None) -> asyncio.subprocess.Process:
        program, argv = self.settings.build_command(args)
        kwargs = dict(
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=self.settings.subprocess_env(),
            start_new_session=USE_PROCESS_GROUPS,
        )
        try:
            if self.settings.use_shell:
                return await asyncio.create_subprocess_shell(program, **kwargs)
            return await asyncio.create_subprocess_exec(program, *argv, **kwargs)
        except FileNotFoundError as e:
            raise ProcessSpawnError(
                f"{self.settings.command} not found.",
                command=self.settings.command,
                install_instructions=self.install_instructions,
            ) from e
        except OSError as e:
            logger.exception(f"Failed to start {self.settings.command}: {e}")
            raise ProcessSpawnError(
                f"Failed to start {self.settings.command}: {e}",
                command=self.settings.command,
            ) from e

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        input_bytes: bytes,
        on_line: Callable[[str], None] | None,
        prefix: str,
    ) -> tuple[bytes, bytes]:
        """Write stdin while draining stdout and stderr, then wait for exit."""

        async def write_stdin() -> None:
            try:
                process.stdin.write(input_bytes)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug(f"{prefix} stdin closed before the prompt was fully written")
            finally:
                process.stdin.close()

        async def read_stdout() -> bytes:
            chunks = []
            pending = b""
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
                if on_line is not None:
                    pending += chunk
                    *lines, pending = pending.split(b"\n")
                    for line in lines:
                        self._emit_line(on_line, line, prefix)
            if on_line is not None and pending:
                self._emit_line(on_line, pending, prefix)
            return b"".join(chunks)

        _, stdout, stderr = await asyncio.gather(
            write_stdin(),
            read_stdout(),
            process.stderr.read(),
        )
        await process.wait()
        return stdout, stderr

    @staticmethod
    def _emit_line(on_line: Callable[[str], None], line: bytes, prefix: str) -> None:
        text = line.decode(errors="replace").strip()
        if not text:
            return
        try:
            on_line(text)
        except Exception as e:
            logger.warning(f"{prefix} Stream line handler failed: {e}")

