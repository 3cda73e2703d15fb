from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path

from pageflow.errors import SessionLost

logger = logging.getLogger(__name__)

# DevTools snapshots can exceed asyncio's default 64 KiB line limit.
STREAM_LIMIT = 16 * 1024 * 1024


class StdioTransport:
    def __init__(self, command: str, args: list[str], cwd: str | None = None) -> None:
        self.command = command
        self.args = args
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        logger.debug("Spawning MCP server: %s %s", self.command, " ".join(self.args))
        self._process = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            cwd=self.cwd or str(Path.cwd()),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def stop(self) -> None:
        if self._process is None:
            return
        process = self._process
        pid = process.pid
        if process.stdin is not None:
            process.stdin.close()
            with contextlib.suppress(Exception):
                await process.stdin.wait_closed()
        if process.returncode is None and os.name == "nt" and pid is not None:
            with contextlib.suppress(Exception):
                killer = await asyncio.create_subprocess_exec(
                    "taskkill",
                    "/T",
                    "/F",
                    "/PID",
                    str(pid),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(killer.wait(), timeout=5)
        if process.returncode is None:
            process.terminate()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=5)
            if process.returncode is None:
                process.kill()
                with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                    await asyncio.wait_for(process.wait(), timeout=5)
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None
        self._process = None

    async def send(self, payload: dict) -> None:
        if self._process is None or self._process.stdin is None:
            raise SessionLost("Transport is not started")
        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise SessionLost(f"MCP transport closed: {exc}") from exc

    async def recv(self) -> dict:
        if self._process is None or self._process.stdout is None:
            raise SessionLost("Transport is not started")
        while True:
            line = await self._process.stdout.readline()
            if not line:
                raise SessionLost("MCP transport closed")
            try:
                return json.loads(line.decode("utf-8"))
            except json.JSONDecodeError:
                # Servers occasionally print banners on stdout before speaking JSON-RPC.
                logger.debug("Ignoring non JSON-RPC line: %s", line[:200])

    async def _drain_stderr(self) -> None:
        if self._process is None or self._process.stderr is None:
            return
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.debug("[mcp-server] %s", line.decode("utf-8", errors="replace").rstrip())
