from __future__ import annotations

import asyncio
import itertools
import json
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from contentrelay.logging import get_logger, sanitize_error_message
from contentrelay.service.errors import (
    ProtocolError,
    ServiceError,
    ToolConnectionError,
    ToolExecutionError,
    ToolTimeoutError,
)

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
_READ_CHUNK_SIZE = 64 * 1024
_STOP_TIMEOUT_SECONDS = 5.0

# Error text the content tool server emits once its internal client state is broken.
_CORRUPTION_PATTERNS = [
    re.compile(r"cannot read propert(?:y|ies) of (?:undefined|null)", re.IGNORECASE),
    re.compile(r"undefined is not an object", re.IGNORECASE),
]


class ConnectionState(str, Enum):
    STOPPED = "stopped"
    CONNECTED = "connected"
    # Spawned, but a timeout or failed write left it in an unknown state
    UNCERTAIN = "uncertain"


def _payload_texts(message: Mapping[str, Any]) -> list[str]:
    texts: list[str] = []
    error = message.get("error")
    if isinstance(error, Mapping):
        texts.append(str(error.get("message") or ""))
        if error.get("data") is not None:
            texts.append(str(error.get("data")))
    elif error is not None:
        texts.append(str(error))
    result = message.get("result")
    if isinstance(result, Mapping):
        for part in result.get("content") or []:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str):
                texts.append(part["text"])
    return texts


def is_corrupted_state(message: Mapping[str, Any]) -> bool:
    """Return True when a response frame shows the tool server's state is broken.

    This is the only place corruption is detected; ``ToolProcess`` accepts a
    replacement predicate if the server ever reports a structured code.
    """

    for text in _payload_texts(message):
        if any(pattern.search(text) for pattern in _CORRUPTION_PATTERNS):
            return True
    return False


@dataclass
class PendingRequest:
    request_id: int
    method: str
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)


class ToolProcess:
    """One supervised content-tool subprocess speaking line-delimited JSON-RPC.

    Responses are matched to requests by id, never by arrival order, so any
    number of ``send_request`` calls may be in flight at once. ``request``
    adds the recovery policy: a corrupted, exited or silent process is
    restarted once and the call retried once.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        request_timeout: float = 30.0,
        restart_grace_seconds: float = 2.0,
        handshake: bool = True,
        label: str = "tool-process",
        corruption_check: Callable[[Mapping[str, Any]], bool] = is_corrupted_state,
    ) -> None:
        if not command:
            raise ValueError("tool process command is empty")
        self.command = list(command)
        self.env = dict(env or {})
        self.request_timeout = request_timeout
        self.restart_grace_seconds = restart_grace_seconds
        self.handshake = handshake
        self.label = label
        self.corruption_check = corruption_check
        self.restart_count = 0
        self._state = ConnectionState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, PendingRequest] = {}
        # Ids are unique for the lifetime of this object, across restarts
        self._ids = itertools.count(1)
        self._generation = 0
        self._restart_lock = asyncio.Lock()
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and self._state != ConnectionState.STOPPED
        )

    def mark_uncertain(self) -> None:
        if self._state == ConnectionState.CONNECTED:
            self._state = ConnectionState.UNCERTAIN

    async def start(self) -> None:
        """Spawn the subprocess. Returns once spawned; never waits on a handshake."""

        if self.is_running():
            return
        self._closed = False
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except (OSError, ValueError) as exc:
            self._state = ConnectionState.STOPPED
            logger.error(
                "tool_process_spawn_failed",
                label=self.label,
                command=self.command[0],
                error=str(exc),
            )
            raise ToolConnectionError(
                "tool process failed to start", detail={"label": self.label}
            ) from exc

        self._process = process
        self._generation += 1
        self._state = ConnectionState.CONNECTED
        loop = asyncio.get_running_loop()
        self._reader_task = loop.create_task(self._read_stdout(process))
        self._stderr_task = loop.create_task(self._drain_stderr(process))
        logger.info(
            "tool_process_started",
            label=self.label,
            pid=process.pid,
            generation=self._generation,
        )
        if self.handshake:
            self._send_handshake(process)

    def _send_handshake(self, process: asyncio.subprocess.Process) -> None:
        # Replies to the handshake are dropped by the reader as unmatched.
        frames = [
            {
                "jsonrpc": JSONRPC_VERSION,
                "id": next(self._ids),
                "method": "initialize",
                "params": {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "contentrelay", "version": "0.1.0"},
                },
            },
            {"jsonrpc": JSONRPC_VERSION, "method": "notifications/initialized"},
        ]
        try:
            for frame in frames:
                process.stdin.write(_encode_frame(frame))
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            logger.warning("tool_process_handshake_failed", label=self.label, error=str(exc))

    async def stop(self) -> None:
        """Terminate the subprocess; every pending request fails with a connection error."""

        self._closed = True
        await self._terminate("stopped")

    async def _terminate(self, reason: str) -> None:
        process = self._process
        self._process = None
        self._state = ConnectionState.STOPPED
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(f"tool process {reason}")
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=_STOP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        logger.info(
            "tool_process_stopped",
            label=self.label,
            pid=process.pid,
            returncode=process.returncode,
            reason=reason,
        )

    async def restart(self) -> None:
        """Stop, wait the grace period, start again and validate with a tool listing."""

        await self._terminate("restarting")
        await asyncio.sleep(self.restart_grace_seconds)
        try:
            await self.start()
            self.restart_count += 1
            await self.send_request("tools/list", {})
        except ServiceError as exc:
            await self._terminate("restart validation failed")
            logger.error(
                "tool_process_restart_failed",
                label=self.label,
                error_code=exc.error_code,
                error=sanitize_error_message(str(exc)),
            )
            raise ToolConnectionError(
                "tool process could not be restarted", detail={"label": self.label}
            ) from exc
        logger.info("tool_process_restarted", label=self.label, restart_count=self.restart_count)

    async def send_request(self, method: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Send one request and wait for the response carrying the same id."""

        process = self._process
        if process is None or not self.is_running():
            raise ToolConnectionError("tool process is not running", detail={"label": self.label})
        request_id = next(self._ids)
        frame: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            frame["params"] = dict(params)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, method, future)
        try:
            try:
                process.stdin.write(_encode_frame(frame))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                self.mark_uncertain()
                raise ToolConnectionError(
                    "failed to write to tool process", detail={"method": method}
                ) from exc
            try:
                message = await asyncio.wait_for(future, timeout=self.request_timeout)
            except asyncio.TimeoutError as exc:
                self.mark_uncertain()
                logger.warning(
                    "tool_request_timeout",
                    label=self.label,
                    method=method,
                    request_id=request_id,
                    timeout=self.request_timeout,
                )
                raise ToolTimeoutError(
                    f"{method} timed out after {self.request_timeout}s",
                    detail={"method": method, "request_id": request_id},
                ) from exc
        finally:
            self._pending.pop(request_id, None)
        return self._unwrap(method, message)

    def _unwrap(self, method: str, message: Mapping[str, Any]) -> Any:
        if self.corruption_check(message):
            self.mark_uncertain()
            logger.warning("tool_process_corrupted", label=self.label, method=method)
            raise ProtocolError(
                "tool process reported corrupted state", detail={"method": method}
            )
        error = message.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, Mapping) else None
            text = error.get("message") if isinstance(error, Mapping) else str(error)
            raise ToolExecutionError(
                sanitize_error_message(str(text or "tool call failed")),
                rpc_code=code if isinstance(code, int) else None,
                detail={"method": method},
            )
        return message.get("result")

    async def request(self, method: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """``send_request`` with one restart-and-retry on transport faults."""

        generation = self._generation
        try:
            return await self.send_request(method, params)
        except (ProtocolError, ToolConnectionError, ToolTimeoutError) as exc:
            if self._closed:
                raise ToolConnectionError("tool process was shut down") from exc
            logger.warning(
                "tool_request_recovering",
                label=self.label,
                method=method,
                error_code=exc.error_code,
            )
        await self._recover(generation)
        try:
            return await self.send_request(method, params)
        except (ProtocolError, ToolConnectionError, ToolTimeoutError) as exc:
            logger.error(
                "tool_request_retry_failed",
                label=self.label,
                method=method,
                error_code=exc.error_code,
            )
            raise ToolConnectionError(
                f"{method} failed after restart", detail={"method": method}
            ) from exc

    async def _recover(self, failed_generation: int) -> None:
        async with self._restart_lock:
            # Another caller already restarted the process this request ran on
            if self._generation != failed_generation and self._state == ConnectionState.CONNECTED:
                return
            await self.restart()

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        buffer = b""
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    self._handle_line(line)
            if buffer.strip():
                self._handle_line(buffer)
        except (OSError, ValueError) as exc:
            logger.warning("tool_process_read_failed", label=self.label, error=str(exc))
        finally:
            if self._process is process:
                self._on_exit(process)

    def _handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("tool_process_non_json_output", label=self.label, preview=text[:200])
            return
        if not isinstance(message, dict):
            return
        if "result" not in message and "error" not in message:
            # Server-initiated notification or request
            logger.debug("tool_process_notification", label=self.label, method=message.get("method"))
            return
        pending = self._pending.get(_normalize_id(message.get("id")))
        if pending is None or pending.future.done():
            logger.debug("tool_process_unmatched_response", label=self.label, id=message.get("id"))
            return
        pending.future.set_result(message)

    def _on_exit(self, process: asyncio.subprocess.Process) -> None:
        self._state = ConnectionState.STOPPED
        logger.warning(
            "tool_process_exited",
            label=self.label,
            pid=process.pid,
            pending=len(self._pending),
        )
        self._fail_pending("tool process exited")

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for item in pending.values():
            if not item.future.done():
                item.future.set_exception(
                    ToolConnectionError(reason, detail={"method": item.method})
                )

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                return
            logger.debug(
                "tool_process_stderr",
                label=self.label,
                output=chunk.decode("utf-8", errors="replace").rstrip()[:500],
            )


def _encode_frame(frame: Mapping[str, Any]) -> bytes:
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


def _normalize_id(raw: Any) -> Any:
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return raw
