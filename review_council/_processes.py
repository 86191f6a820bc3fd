# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Killable handles for provider subprocesses, grouped by analysis run."""

import asyncio
import logging
import os
import signal

logger = logging.getLogger("review_council")

# Children are started in their own session so the whole group can be signalled.
USE_PROCESS_GROUPS = os.name == "posix"

# Seconds between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 2.0

# How often a group whose leader already exited is checked for survivors
GROUP_POLL_INTERVAL = 0.05

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ProcessHandle:
    """A spawned provider process that can be signalled.

    On POSIX the process leads its own process group, so signalling the handle
    also reaches anything a shell-mode command started underneath it. The
    group is signalled even after the leader has exited: a shell that died
    on SIGTERM can leave the reviewer it started behind.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        label: str = "process",
        process_group: bool = USE_PROCESS_GROUPS,
    ) -> None:
        self.process = process
        self.label = label
        self.process_group = process_group

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_running(self) -> bool:
        """Whether the spawned process itself has not exited."""
        return self.process.returncode is None

    @property
    def is_alive(self) -> bool:
        """Whether the process, or anything left in its group, still exists."""
        if self.is_running:
            return True
        if not self.process_group or self.pid is None:
            return False
        try:
            os.killpg(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def send_signal(self, sig: int) -> bool:
        """Signal the process group, or the process when it has no group.

        Returns:
            True if something was signalled.
        """
        try:
            if self.process_group:
                if self.pid is None:
                    return False
                os.killpg(self.pid, sig)
            else:
                if not self.is_running:
                    return False
                self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"Could not signal {self.label} (pid {self.pid}): {e}")
            return False
        return True

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(SIGKILL)

    async def wait_gone(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the process and its group to exit.

        Returns:
            True if nothing is left running.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.is_alive:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            if self.is_running:
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    return not self.is_alive
            else:
                await asyncio.sleep(min(remaining, GROUP_POLL_INTERVAL))
        return True

    async def stop(self, grace: float = KILL_GRACE_SECONDS) -> int | None:
        """SIGTERM, then SIGKILL whatever is still alive after ``grace`` seconds.

        Returns:
            The exit code of the spawned process.
        """
        self.terminate()
        await self.escalate(grace)
        if self.is_running:
            await self.process.wait()
        return self.returncode

    async def escalate(self, grace: float = KILL_GRACE_SECONDS) -> bool:
        """SIGKILL the process group if it outlives ``grace`` seconds.

        Returns:
            True if SIGKILL was needed.
        """
        if await self.wait_gone(grace):
            return False
        logger.warning(f"{self.label} (pid {self.pid}) ignored SIGTERM, sending SIGKILL")
        self.kill()
        return True

    def __repr__(self) -> str:
        return f"ProcessHandle(label={self.label!r}, pid={self.pid}, returncode={self.returncode})"


class ProcessTracker:
    """Processes spawned on behalf of each analysis run.

    Unknown run ids are treated as already settled: killing them is a no-op.
    A process registered after its run was killed is terminated immediately.
    Killed processes that survive SIGTERM for ``kill_grace`` seconds are sent
    SIGKILL; the timer ends early once they exit.
    """

    def __init__(self, kill_grace: float = KILL_GRACE_SECONDS) -> None:
        self.kill_grace = kill_grace
        self._handles: dict[str, list[ProcessHandle]] = {}
        self._killed: set[str] = set()
        self._escalations: set[asyncio.Task] = set()

    def register(self, run_id: str, handle: ProcessHandle) -> None:
        if run_id in self._killed:
            logger.info(f"Run {run_id} was cancelled; terminating late {handle.label} (pid {handle.pid})")
            if handle.terminate():
                self._schedule_escalation(run_id, [handle])
            return
        self._handles.setdefault(run_id, []).append(handle)

    def unregister(self, run_id: str, handle: ProcessHandle) -> None:
        handles = self._handles.get(run_id)
        if not handles:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._handles[run_id]

    def count(self, run_id: str) -> int:
        """Number of tracked processes still running for the run."""
        return sum(1 for handle in self._handles.get(run_id, []) if handle.is_running)

    def kill_all(self, run_id: str, sig: int = signal.SIGTERM) -> int:
        """Signal every tracked process for the run without waiting for exit.

        Returns:
            The number of processes that were signalled.
        """
        self._killed.add(run_id)
        handles = self._handles.pop(run_id, [])
        signalled = []
        for handle in handles:
            if handle.send_signal(sig):
                signalled.append(handle)
                logger.info(f"Sent signal {sig} to {handle.label} (pid {handle.pid}) for run {run_id}")
        if sig != SIGKILL:
            self._schedule_escalation(run_id, signalled)
        return len(signalled)

    def _schedule_escalation(self, run_id: str, handles: list[ProcessHandle]) -> None:
        if not handles:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop; SIGKILL follow-up skipped for run {run_id}")
            return
        task = loop.create_task(self._escalate(run_id, handles))
        self._escalations.add(task)
        task.add_done_callback(self._escalations.discard)

    async def _escalate(self, run_id: str, handles: list[ProcessHandle]) -> None:
        results = await asyncio.gather(
            *(handle.escalate(self.kill_grace) for handle in handles),
            return_exceptions=True,
        )
        for handle, result in zip(handles, results):
            if isinstance(result, Exception):
                logger.warning(f"SIGKILL follow-up for {handle.label} (pid {handle.pid}) failed: {result}")
        forced = sum(1 for result in results if result is True)
        if forced:
            logger.info(f"Force killed {forced} processes for run {run_id}")

    async def settle(self) -> None:
        """Wait for pending SIGKILL follow-ups."""
        if self._escalations:
            await asyncio.gather(*list(self._escalations), return_exceptions=True)

    def release(self, run_id: str) -> None:
        """Forget a settled run."""
        self._handles.pop(run_id, None)
        self._killed.discard(run_id)
