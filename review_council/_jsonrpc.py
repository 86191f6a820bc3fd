# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Newline-delimited JSON-RPC framing with request/response correlation."""

import asyncio
import itertools
import json
import logging
from typing import Any, Callable

from ._exceptions import ProtocolError

logger = logging.getLogger("review_council")

# JSON-RPC error code for an unknown method
METHOD_NOT_FOUND = -32601


class JsonRpcConnection:
    """One side of a JSON-RPC conversation over a line-oriented byte stream.

    Outbound requests get a fresh integer id and a pending future; inbound
    responses resolve or reject that future exactly once. Inbound requests
    and notifications are handed back to the caller of ``dispatch``.

    Args:
        write: Sends one encoded frame (bytes, newline included).
    """

    def __init__(self, write: Callable[[bytes], None]) -> None:
        self._write = write
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._closed_reason: str | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _send(self, message: dict[str, Any]) -> None:
        self._write((json.dumps(message) + "\n").encode())

    def send_request(self, method: str, params: dict[str, Any] | None = None) -> asyncio.Future:
        """Write a request frame now and return the future for its result."""
        if self._closed_reason is not None:
            raise ProtocolError(self._closed_reason)

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            self._send(message)
        except Exception:
            self._pending.pop(request_id, None)
            raise

        logger.debug(f"[AgentBridge] -> {method} (id {request_id})")
        return future

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            ProtocolError: On a JSON-RPC error response, or when the connection
                is closed while the request is pending.
        """
        return await self.send_request(method, params)

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._send(message)

    def respond(self, request_id: Any, result: Any) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def respond_error(self, request_id: Any, code: int, message: str) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})

    def dispatch(self, line: str | bytes) -> tuple[str, dict[str, Any]] | None:
        """Route one inbound frame.

        Responses settle their pending request. Requests and notifications are
        returned as ``("request", message)`` / ``("notification", message)``.
        Malformed frames are logged and dropped.
        """
        if isinstance(line, bytes):
            line = line.decode(errors="replace")
        line = line.strip()
        if not line:
            return None

        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"[AgentBridge] Ignoring malformed frame: {line[:200]}")
            return None
        if not isinstance(message, dict):
            logger.warning(f"[AgentBridge] Ignoring non-object frame: {line[:200]}")
            return None

        has_id = "id" in message and message["id"] is not None
        if "method" in message:
            return ("request" if has_id else "notification"), message

        if has_id and ("result" in message or "error" in message):
            self._settle(message)
            return None

        logger.warning(f"[AgentBridge] Ignoring unrecognized frame: {line[:200]}")
        return None

    def _settle(self, message: dict[str, Any]) -> None:
        future = self._pending.pop(message["id"], None)
        if future is None or future.done():
            logger.debug(f"[AgentBridge] Response for unknown request id {message['id']}")
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                future.set_exception(ProtocolError(
                    str(error.get("message", "JSON-RPC error")),
                    code=error.get("code"),
                ))
            else:
                future.set_exception(ProtocolError(str(error)))
        else:
            future.set_result(message.get("result"))

    def reject_all(self, reason: str) -> int:
        """Reject every pending request with a ProtocolError and refuse new ones.

        Returns:
            The number of requests rejected.
        """
        self._closed_reason = reason
        pending = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for future in pending:
            if not future.done():
                future.set_exception(ProtocolError(reason))
                rejected += 1
        return rejected
