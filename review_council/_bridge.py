# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Persistent agent session over JSON-RPC on stdio.

The agent runs in app-server mode for the lifetime of the bridge. A thread is
created (or resumed) during ``start()``; each ``send_message()`` submits one
turn whose output streams back as notifications.

Example:
    bridge = AgentBridge(model="gpt-5.1-codex-max", cwd=worktree)
    events = bridge.subscribe()
    await bridge.start()
    await bridge.send_message("Review the staged changes")
    async for event in events:
        if isinstance(event, CompleteEvent):
            print(event.full_text)
            break
    await bridge.close()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ._exceptions import BridgeStartError, BridgeStateError, ProcessSpawnError, ProtocolError
from ._jsonrpc import METHOD_NOT_FOUND, JsonRpcConnection
from ._processes import USE_PROCESS_GROUPS, ProcessHandle
from ._settings import SHELL_NOT_FOUND, BridgeSettings

logger = logging.getLogger("review_council")

# stdout line limit; item notifications can carry whole command outputs
STREAM_LIMIT = 16 * 1024 * 1024

# Item types reported as tool use
TOOL_ITEM_TYPES = ("command", "tool_call", "function_call")

INSTALL_INSTRUCTIONS = "Install Codex CLI: npm install -g @openai/codex"


class BridgeState(str, Enum):
    """Lifecycle states of an AgentBridge."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    TURN_ACTIVE = "turn_active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionEvent:
    """The thread is established; ``thread_id`` can be used to resume it later."""
    thread_id: str


@dataclass(frozen=True)
class ReadyEvent:
    """The bridge accepts messages."""


@dataclass(frozen=True)
class DeltaEvent:
    """A streamed chunk of assistant text."""
    text: str


@dataclass(frozen=True)
class StatusEvent:
    status: str


@dataclass(frozen=True)
class ToolUseEvent:
    """A tool or command started or finished inside the agent."""
    tool_id: str | None
    name: str
    status: str  # 'start' or 'end'


@dataclass(frozen=True)
class CompleteEvent:
    """The turn completed; ``full_text`` is every delta of the turn joined."""
    full_text: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class CloseEvent:
    """The agent process is gone. Always the last event of a subscription."""
    exit_code: int | None = None


BridgeEvent = (
    SessionEvent | ReadyEvent | DeltaEvent | StatusEvent
    | ToolUseEvent | CompleteEvent | ErrorEvent | CloseEvent
)

_END = object()


class EventSubscription:
    """Async iterator over the events a bridge emits after subscription.

    Iteration stops after the bridge closes or when ``close()`` is called.
    """

    def __init__(self, bridge: "AgentBridge") -> None:
        self._bridge = bridge
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False
        self._finished = False

    def _put(self, event: BridgeEvent) -> None:
        if not self._ended:
            self._queue.put_nowait(event)

    def _end(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    def close(self) -> None:
        """Stop receiving events."""
        self._bridge._unsubscribe(self)
        self._end()

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> BridgeEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item


SpawnFn = Callable[..., Awaitable[Any]]


async def spawn_agent_process(program: str, args: list[str], *, cwd: str | None, env: dict[str, str]):
    """Start the agent with piped stdio in its own process group."""
    return await asyncio.create_subprocess_exec(
        program,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        limit=STREAM_LIMIT,
        start_new_session=USE_PROCESS_GROUPS,
    )


class AgentBridge:
    """One agent process, one thread, sequential turns.

    Args:
        model: Model passed with each thread and turn. None uses the agent default.
        cwd: Working directory of the agent process.
        system_prompt: Prepended to the first message of a new thread.
        resume_thread_id: Resume this thread instead of starting a new one.
        settings: Command, grace period and handshake identity.
        spawn: Coroutine used to start the process; receives
            ``(program, args, cwd=..., env=...)``. Defaults to a real subprocess.
        on_spawn: Called with a ProcessHandle as soon as the process exists.
    """

    def __init__(
        self,
        *,
        model: str | None = None,
        cwd: str | None = None,
        system_prompt: str | None = None,
        resume_thread_id: str | None = None,
        settings: BridgeSettings | None = None,
        spawn: SpawnFn | None = None,
        on_spawn: Callable[[ProcessHandle], None] | None = None,
    ) -> None:
        self.model = model
        self.cwd = cwd
        self.system_prompt = system_prompt
        self.resume_thread_id = resume_thread_id
        self.settings = settings or BridgeSettings()
        self._spawn = spawn or spawn_agent_process
        self._own_process_group = spawn is None and USE_PROCESS_GROUPS
        self._on_spawn = on_spawn

        self.state = BridgeState.IDLE
        self.thread_id: str | None = None
        self.turn_id: str | None = None
        self._first_message = resume_thread_id is None
        self._buffer: list[str] = []
        self._interrupted_turn: str | None = None

        self._process = None
        self._rpc: JsonRpcConnection | None = None
        self._subscribers: list[EventSubscription] = []
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._close_task: asyncio.Future | None = None
        self._close_emitted = False

    @property
    def is_ready(self) -> bool:
        return self.state in (BridgeState.READY, BridgeState.TURN_ACTIVE)

    @property
    def is_busy(self) -> bool:
        return self.state == BridgeState.TURN_ACTIVE

    @property
    def process(self):
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def process_handle(self) -> ProcessHandle | None:
        """A killable handle for the agent process, once started."""
        if self._process is None:
            return None
        return ProcessHandle(self._process, label="agent bridge", process_group=self._own_process_group)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self) -> EventSubscription:
        """Receive every event emitted from now on."""
        subscription = EventSubscription(self)
        if self._close_emitted:
            subscription._end()
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def _emit(self, event: BridgeEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._put(event)

    def _emit_close(self, exit_code: int | None) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        self._emit(CloseEvent(exit_code=exit_code))
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._end()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the agent, perform the handshake and establish the thread.

        Raises:
            BridgeStateError: If the bridge was already started.
            ProcessSpawnError: If the agent executable cannot be found.
            BridgeStartError: If the agent fails or exits before becoming ready.
        """
        if self.state != BridgeState.IDLE:
            raise BridgeStateError("AgentBridge already started")

        self.state = BridgeState.INITIALIZING
        program, args = self.settings.build_command()
        logger.info(f"[AgentBridge] Starting agent: {program} {' '.join(args)}")

        try:
            self._process = await self._spawn(
                program,
                args,
                cwd=self.cwd,
                env={**os.environ, **self.settings.env},
            )
        except FileNotFoundError as e:
            self.state = BridgeState.CLOSED
            self._emit_close(None)
            raise ProcessSpawnError(
                f"{program} not found.",
                command=program,
                install_instructions=INSTALL_INSTRUCTIONS,
            ) from e
        except OSError as e:
            self.state = BridgeState.CLOSED
            self._emit_close(None)
            raise BridgeStartError(f"Failed to start agent: {e}") from e

        if self._on_spawn is not None:
            self._on_spawn(self.process_handle())

        self._rpc = JsonRpcConnection(self._write)
        self._reader_task = asyncio.create_task(self._read_stdout())
        if getattr(self._process, "stderr", None) is not None:
            self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            await self._initialize_thread()
        except ProtocolError as e:
            if self.state not in (BridgeState.CLOSING, BridgeState.CLOSED):
                await self.close()
            if self.settings.use_shell and await self._process.wait() == SHELL_NOT_FOUND:
                raise ProcessSpawnError(
                    f"{self.settings.command} not found (shell exit {SHELL_NOT_FOUND}).",
                    command=self.settings.command,
                    install_instructions=INSTALL_INSTRUCTIONS,
                ) from e
            raise BridgeStartError(f"Agent initialization failed: {e}") from e

        self.state = BridgeState.READY
        logger.info(f"[AgentBridge] Ready (PID {self.pid}, thread {self.thread_id})")
        self._emit(SessionEvent(thread_id=self.thread_id))
        self._emit(ReadyEvent())

    async def _initialize_thread(self) -> None:
        await self._rpc.request("initialize", {
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version,
            },
        })
        self._rpc.notify("initialized")

        if self.resume_thread_id:
            result = await self._rpc.request("thread/resume", {"threadId": self.resume_thread_id})
            self.thread_id = (result or {}).get("threadId") or self.resume_thread_id
            logger.info(f"[AgentBridge] Thread resumed: {self.thread_id}")
        else:
            params = {key: value for key, value in (("model", self.model), ("cwd", self.cwd)) if value}
            result = await self._rpc.request("thread/start", params)
            result = result or {}
            thread = result.get("thread") or {}
            self.thread_id = thread.get("id") or result.get("threadId")
            if not self.thread_id:
                raise ProtocolError("thread/start returned no thread id")
            logger.info(f"[AgentBridge] Thread created: {self.thread_id}")

    async def send_message(self, text: str) -> str | None:
        """Submit one turn.

        Completion is reported through a CompleteEvent or ErrorEvent, not by
        this call.

        Returns:
            The turn id assigned by the agent.

        Raises:
            BridgeStateError: If the bridge is not ready or a turn is active.
            ProtocolError: If the agent rejects the turn.
        """
        if self.state != BridgeState.READY:
            if self.state == BridgeState.TURN_ACTIVE:
                raise BridgeStateError("AgentBridge is not ready: a turn is already active")
            raise BridgeStateError(f"AgentBridge is not ready (state: {self.state.value})")

        content = text
        if self.system_prompt and self._first_message:
            content = f"{self.system_prompt}\n\n{text}"
        self._first_message = False

        self._buffer = []
        self.turn_id = None
        self.state = BridgeState.TURN_ACTIVE
        logger.debug(f"[AgentBridge] Sending message ({len(content)} chars)")

        params = {
            "threadId": self.thread_id,
            "input": [{"type": "text", "text": content}],
            "approvalPolicy": "never",
        }
        if self.model:
            params["model"] = self.model

        try:
            result = await self._rpc.request("turn/start", params)
        except ProtocolError:
            if self.state == BridgeState.TURN_ACTIVE:
                self.state = BridgeState.READY
            raise

        result = result or {}
        turn_id = result.get("turnId") or (result.get("turn") or {}).get("id")
        if self.state == BridgeState.TURN_ACTIVE:
            self.turn_id = turn_id
        return turn_id

    def abort(self) -> bool:
        """Interrupt the active turn. A no-op when no turn is active.

        Returns:
            True if a ``turn/interrupt`` request was sent.
        """
        if self.state != BridgeState.TURN_ACTIVE or not self.thread_id or not self.turn_id:
            return False
        if self._interrupted_turn == self.turn_id:
            return False

        self._interrupted_turn = self.turn_id
        logger.debug(f"[AgentBridge] Sending turn/interrupt for turn {self.turn_id}")
        try:
            future = self._rpc.send_request("turn/interrupt", {
                "threadId": self.thread_id,
                "turnId": self.turn_id,
            })
        except ProtocolError as e:
            logger.warning(f"[AgentBridge] turn/interrupt not sent: {e}")
            return False
        future.add_done_callback(self._log_interrupt_result)
        return True

    @staticmethod
    def _log_interrupt_result(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"[AgentBridge] turn/interrupt error: {error}")

    async def close(self) -> None:
        """Shut the agent down. Safe to call repeatedly and concurrently.

        Pending requests are rejected, the process gets SIGTERM and, if it is
        still alive after the grace period, SIGKILL.
        """
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close())
        await asyncio.shield(self._close_task)

    async def _close(self) -> None:
        if self.state == BridgeState.CLOSED:
            self._emit_close(None)
            return

        self.state = BridgeState.CLOSING
        if self._rpc is not None:
            rejected = self._rpc.reject_all("AgentBridge closing")
            if rejected:
                logger.debug(f"[AgentBridge] Rejected {rejected} pending requests")

        exit_code = None
        if self._process is not None:
            exit_code = await self._terminate_process()
            await self._stop_readers()

        self.state = BridgeState.CLOSED
        logger.info(f"[AgentBridge] Closed (exit code {exit_code})")
        self._emit_close(exit_code)

    async def _terminate_process(self) -> int | None:
        return await self.process_handle().stop(self.settings.close_grace_period)

    async def _stop_readers(self) -> None:
        tasks = [task for task in (self._reader_task, self._stderr_task) if task is not None]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        await asyncio.gather(*(task for task in tasks if task is not current), return_exceptions=True)

    # ------------------------------------------------------------------
    # Wire handling
    # ------------------------------------------------------------------

    def _write(self, data: bytes) -> None:
        stdin = getattr(self._process, "stdin", None)
        if stdin is None or stdin.is_closing():
            raise ProtocolError("AgentBridge is not running")
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProtocolError(f"Failed to write to agent: {e}") from e

    async def _read_stdout(self) -> None:
        process = self._process
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                self._handle_line(line)
        except ValueError as e:
            logger.error(f"[AgentBridge] Failed to read agent output: {e}")
        exit_code = await process.wait()
        self._handle_exit(exit_code)

    async def _read_stderr(self) -> None:
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            if text:
                logger.debug(f"[AgentBridge] stderr: {text}")

    def _handle_line(self, line: bytes) -> None:
        routed = self._rpc.dispatch(line)
        if routed is None:
            return
        kind, message = routed
        try:
            if kind == "request":
                self._handle_server_request(message)
            else:
                self._handle_notification(message)
        except ProtocolError as e:
            logger.warning(f"[AgentBridge] Could not answer {message.get('method')}: {e}")

    def _handle_exit(self, exit_code: int | None) -> None:
        if self.state in (BridgeState.CLOSING, BridgeState.CLOSED):
            logger.info(f"[AgentBridge] Process exited (code={exit_code})")
            return

        was_ready = self.is_ready
        self.state = BridgeState.CLOSED
        self.turn_id = None
        if was_ready:
            self._rpc.reject_all(f"Agent exited unexpectedly (code={exit_code})")
            logger.warning(f"[AgentBridge] Process exited unexpectedly (code={exit_code})")
            self._emit(ErrorEvent(message=f"Agent process exited unexpectedly (code={exit_code})"))
        else:
            self._rpc.reject_all(f"Agent exited before ready (code={exit_code})")
            logger.warning(f"[AgentBridge] Process exited before ready (code={exit_code})")
        self._emit_close(exit_code)

    def _handle_notification(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params") or {}

        if method == "item/agentMessage/delta":
            text = params.get("delta") or params.get("text")
            if text:
                self._buffer.append(text)
                self._emit(DeltaEvent(text=text))
        elif method == "turn/started":
            self._emit(StatusEvent(status="working"))
        elif method in ("item/started", "item/completed"):
            self._handle_item(params, "start" if method == "item/started" else "end")
        elif method == "turn/completed":
            self._handle_turn_completed(params)
        else:
            logger.debug(f"[AgentBridge] Unhandled notification: {method}")

    def _handle_item(self, params: dict[str, Any], status: str) -> None:
        item_type = params.get("type") or params.get("itemType")
        if item_type not in TOOL_ITEM_TYPES:
            return
        self._emit(ToolUseEvent(
            tool_id=params.get("itemId") or params.get("id"),
            name=params.get("name") or params.get("command") or params.get("title") or item_type,
            status=status,
        ))

    def _handle_turn_completed(self, params: dict[str, Any]) -> None:
        if self.state != BridgeState.TURN_ACTIVE:
            logger.debug("[AgentBridge] turn/completed without an active turn")
            return

        status = params.get("status") or (params.get("turn") or {}).get("status")
        self.state = BridgeState.READY
        self.turn_id = None

        if status == "failed":
            error = params.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            message = error or params.get("reason") or "Turn failed"
            logger.error(f"[AgentBridge] Turn failed: {message}")
            self._emit(ErrorEvent(message=message))
            return

        full_text = "".join(self._buffer)
        self._buffer = []
        logger.debug(f"[AgentBridge] Turn completed, accumulated {len(full_text)} chars")
        self._emit(CompleteEvent(full_text=full_text))

    def _handle_server_request(self, message: dict[str, Any]) -> None:
        method = message.get("method", "")
        request_id = message["id"]

        if method.endswith("requestApproval") or method.endswith("Approval"):
            logger.debug(f"[AgentBridge] Auto-approving {method} (id={request_id})")
            self._rpc.respond(request_id, {"decision": "accept"})
            return

        logger.warning(f"[AgentBridge] Unknown server request: {method} (id={request_id})")
        self._rpc.respond_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
