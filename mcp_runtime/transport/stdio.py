"""Subprocess transport: newline-delimited JSON over stdin/stdout.

The server is spawned in its own session so that stopping it also reaches
any children it started (``npx`` wrappers in particular). Stdout is read in
chunks and split on newlines, so a message split across reads is reassembled
before parsing. Stderr is only logged.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from typing import Any

import structlog

from mcp_runtime.exceptions import TransportError
from mcp_runtime.models import ServerDefinition
from mcp_runtime.transport.base import Transport

log = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STDERR_LINE_LIMIT = 64 * 1024


class LineBuffer:
    """Accumulates byte chunks and yields complete lines."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer.extend(chunk)
        lines: list[bytes] = []
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            lines.append(bytes(self._buffer[:index]))
            del self._buffer[: index + 1]
        return lines

    def __len__(self) -> int:
        return len(self._buffer)

    def flush(self) -> bytes:
        rest = bytes(self._buffer)
        self._buffer.clear()
        return rest


class StdioTransport(Transport):
    """Runs the configured command and talks to it over standard streams."""

    def __init__(self, definition: ServerDefinition, *, terminate_timeout: float = 5.0) -> None:
        super().__init__(definition)
        self.terminate_timeout = terminate_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closing = False
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_open(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._closing

    async def open(self) -> None:
        command = self.definition.command
        if not command:
            raise TransportError(self.server_id, "stdio transport requires a command")

        env = os.environ.copy()
        env.update(self.definition.env)

        log.info("starting_mcp_server", server=self.server_id, cmd=[command, *self.definition.args])

        try:
            self._process = await asyncio.create_subprocess_exec(
                command,
                *self.definition.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise TransportError(self.server_id, f"Command not found: {command}") from e
        except OSError as e:
            raise TransportError(self.server_id, f"Failed to spawn {command}: {e}") from e

        self._closing = False
        self._closed_reported = False
        self._tasks = [
            asyncio.create_task(self._pump_stdout(), name=f"mcp-stdout-{self.server_id}"),
            asyncio.create_task(self._pump_stderr(), name=f"mcp-stderr-{self.server_id}"),
        ]

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_open or self._process is None or self._process.stdin is None:
            raise TransportError(self.server_id, "Server process is not running")

        data = json.dumps(message).encode() + b"\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(self.server_id, f"Failed to write to server: {e}") from e

    async def _pump_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        buffer = LineBuffer()

        while True:
            chunk = await stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._handle_line(line)

        tail = buffer.flush()
        if tail.strip():
            self._handle_line(tail)

        code = await self._process.wait()
        if not self._closing:
            log.info("mcp_server_exited", server=self.server_id, code=code)
            self._report_closed(code, None if code == 0 else f"Server exited with code {code}")

    def _handle_line(self, line: bytes) -> None:
        text = line.strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.debug("mcp_server_output", server=self.server_id, output=text[:500].decode(errors="replace"))
            return
        self._deliver(message)

    async def _pump_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        buffer = LineBuffer()

        while True:
            chunk = await stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            lines = buffer.feed(chunk)
            # Unterminated output is logged in pieces so the pipe keeps draining
            if len(buffer) > STDERR_LINE_LIMIT:
                lines.append(buffer.flush())
            for line in lines:
                self._log_stderr(line)

        self._log_stderr(buffer.flush())

    def _log_stderr(self, line: bytes) -> None:
        text = line.decode(errors="replace").rstrip()
        if text:
            log.warning("mcp_server_stderr", server=self.server_id, output=text)

    async def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._closing = True

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            log.info("stopping_mcp_server", server=self.server_id, pid=process.pid)
            self._signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
            except asyncio.TimeoutError:
                log.warning("mcp_server_kill", server=self.server_id, reason="timeout")
                self._signal(process, signal.SIGKILL)
                await process.wait()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._process = None

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except (ProcessLookupError, PermissionError):
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
