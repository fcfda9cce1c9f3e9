"""JSON-RPC 2.0 session over a child process's stdio.

Messages are newline-delimited JSON objects. Requests are correlated with
their responses through ``_pending``, a table of futures keyed by request id;
a single reader task owns stdout and settles each entry exactly once.
"""

import asyncio
import inspect
import itertools
import json
import os
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from mentis import __version__
from mentis.exceptions import RemoteToolError, RpcError, SessionClosedError
from mentis.logging import get_logger

if TYPE_CHECKING:
    from mentis.rpc.tools import RemoteTool

log = get_logger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
# Servers may answer tools/list with very large single lines.
_STREAM_LIMIT = 16 * 1024 * 1024
_TERMINATE_TIMEOUT = 5.0

NotificationHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


def render_tool_result(result: Any) -> str:
    """Flatten a ``tools/call`` result into text for the model."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            str(block.get("text", ""))
            for block in result["content"]
            if isinstance(block, dict) and "text" in block
        ]
        return "\n".join(texts)
    return json.dumps(result)


class RpcSession:
    """Client side of a tool server speaking JSON-RPC on stdin/stdout."""

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        client_name: str = "mentis-cli",
        client_version: str = __version__,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.server_name = "unknown"
        self.server_info: dict[str, Any] = {}
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._handlers: dict[str, NotificationHandler] = {}
        self._initialized = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def label(self) -> str:
        return " ".join([self.command, *self.args])

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Register a handler for server notifications named ``method``."""
        self._handlers[method] = handler

    async def connect(self) -> None:
        """Spawn the server process and start reading its output."""
        if self._process is not None:
            return

        env = {**os.environ, **(self.env or {})}
        log.info("Starting RPC server", command=self.command, args=self.args)
        self._process = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            limit=_STREAM_LIMIT,
        )
        self._reader_task = asyncio.create_task(self._read_messages(self._process))

    async def _read_messages(self, process: asyncio.subprocess.Process) -> None:
        """Dispatch every line the server writes until its stdout closes."""
        assert process.stdout is not None
        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError as e:
                    log.warning("Oversized RPC line skipped", error=str(e))
                    continue
                if not line:
                    break
                await self._handle_line(line.decode("utf-8", errors="replace"))
        finally:
            log.info("RPC server output closed", server=self.server_name, pending=len(self._pending))
            self._reject_pending(SessionClosedError(f"RPC server '{self.server_name}' exited"))

    async def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            log.warning("Failed to parse RPC message", line=line[:200], error=str(e))
            return
        if not isinstance(message, dict):
            log.warning("Ignoring non-object RPC message", line=line[:200])
            return

        if "id" in message and ("result" in message or "error" in message):
            self._handle_response(message)
        elif "method" in message:
            await self._handle_notification(message)
        else:
            log.debug("Ignoring unrecognized RPC message", message=message)

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self._pending.pop(message["id"], None)
        if future is None:
            log.debug("RPC response with no pending request", id=message["id"])
            return
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(
                RpcError(
                    str(error.get("message", "Unknown error")),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    async def _handle_notification(self, message: dict[str, Any]) -> None:
        method = str(message["method"])
        handler = self._handlers.get(method)
        if handler is None:
            log.debug("RPC notification ignored", method=method)
            return
        params = message.get("params")
        try:
            outcome = handler(params if isinstance(params, dict) else {})
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            log.warning("RPC notification handler failed", method=method, error=str(e))

    def _reject_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _write(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise SessionClosedError("RPC session is not connected")
        process = self._process
        assert process is not None and process.stdin is not None
        try:
            process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SessionClosedError(f"RPC server stdin closed: {e}") from e

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            RpcError: the server answered with an error object
            SessionClosedError: the session ended before a response arrived
        """
        request_id = next(self._ids)
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": request_id}
        if params is not None:
            message["params"] = params

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(message)
        except SessionClosedError:
            self._pending.pop(request_id, None)
            raise

        log.debug("RPC request sent", method=method, id=request_id)
        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def initialize(self) -> dict[str, Any]:
        """Perform the protocol handshake."""
        result = await self.request(
            "initialize",
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            },
        )
        result = result if isinstance(result, dict) else {}
        self.server_info = result.get("serverInfo") or {}
        self.server_name = str(self.server_info.get("name") or self.server_name)
        await self.notify("notifications/initialized")
        self._initialized = True
        log.info("RPC server initialized", server=self.server_name)
        return result

    async def list_remote_tools(self) -> list["RemoteTool"]:
        """Fetch the server's tools as registry-ready adapters."""
        from mentis.rpc.tools import RemoteTool

        if not self._initialized:
            raise RpcError("RPC session is not initialized")
        result = await self.request("tools/list")
        entries = result.get("tools", []) if isinstance(result, dict) else []
        return [RemoteTool(self, entry) for entry in entries if isinstance(entry, dict) and entry.get("name")]

    async def invoke(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        """Call a remote tool and return its text output.

        Raises:
            RemoteToolError: the server flagged the call as failed
        """
        result = await self.request("tools/call", {"name": name, "arguments": arguments or {}})
        if isinstance(result, dict) and result.get("isError"):
            raise RemoteToolError(name, render_tool_result(result).strip())
        return render_tool_result(result)

    async def disconnect(self) -> None:
        """Stop the server. Outstanding requests fail with SessionClosedError."""
        if self._closed:
            return
        self._closed = True
        self._reject_pending(SessionClosedError("RPC session disconnected"))

        process = self._process
        if process is not None and process.returncode is None:
            log.info("Stopping RPC server", server=self.server_name, pid=process.pid)
            if process.stdin is not None:
                process.stdin.close()
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_TIMEOUT)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
