"""Reference-counted pool of tool-server subprocesses.

Several logical servers (or several agents talking to the same server) can
share one physical process.  Processes are keyed by their launch
configuration; callers receive :class:`ProcessHandle` tokens that own exactly
one reference each.  The pool terminates a process exactly once, when the
last reference is released, and forgets processes that exit on their own so a
later :meth:`ProcessPool.acquire` can respawn them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Sequence

from ..utils.logging import server_logger
from .errors import ProcessSpawnError, TransportClosedError

__all__ = [
    "LineListener",
    "ManagedProcess",
    "ProcessHandle",
    "ProcessPool",
    "ProcessStats",
    "process_key",
]

LOGGER = logging.getLogger(__name__)

LineListener = Callable[["str | None"], None]
"""Receives each stdout line; ``None`` signals that the stream ended."""

_DEFAULT_TERMINATE_TIMEOUT = 5.0
_STREAM_LIMIT = 16 * 1024 * 1024
_SERIALS = itertools.count(1)


def process_key(command: str, args: Sequence[str] = (), env: Mapping[str, str] | None = None) -> str:
    """Return the deterministic pool key for a launch configuration."""

    env_pairs = sorted(f"{key}={value}" for key, value in (env or {}).items())
    return f"{command}::{'|'.join(args)}::{'|'.join(env_pairs)}"


@dataclass(slots=True, frozen=True)
class ProcessStats:
    """Read-only view of one pooled process."""

    process_key: str
    pid: int | None
    command: str
    args: tuple[str, ...]
    reference_count: int
    referencing_servers: tuple[str, ...]


class ManagedProcess:
    """One OS process plus its reference bookkeeping and stream pumps."""

    def __init__(
        self,
        key: str,
        command: str,
        args: Sequence[str],
        process: asyncio.subprocess.Process,
    ) -> None:
        self.key = key
        self.command = command
        self.args = tuple(args)
        self.process = process
        self.serial = next(_SERIALS)
        self._references: Counter[str] = Counter()
        self._listeners: List[LineListener] = []
        self._request_ids = itertools.count()
        self._reader_tasks: List[asyncio.Task[None]] = []
        self._write_lock = asyncio.Lock()
        self._terminated = False
        self._stdout_closed = False

    # ------------------------------------------------------------------
    # Reference bookkeeping
    # ------------------------------------------------------------------
    @property
    def reference_count(self) -> int:
        return sum(self._references.values())

    @property
    def referencing_servers(self) -> frozenset[str]:
        return frozenset(name for name, count in self._references.items() if count > 0)

    def add_reference(self, server_name: str) -> None:
        self._references[server_name] += 1

    def remove_reference(self, server_name: str) -> None:
        if self._references[server_name] <= 1:
            self._references.pop(server_name, None)
        else:
            self._references[server_name] -= 1

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def alive(self) -> bool:
        # stdout EOF usually arrives before the child is reaped.
        return self.process.returncode is None and not self._terminated and not self._stdout_closed

    def next_request_id(self) -> str:
        """Allocate a request id unique across every transport sharing this process."""

        return str(next(self._request_ids))

    def stats(self) -> ProcessStats:
        return ProcessStats(
            process_key=self.key,
            pid=self.pid,
            command=self.command,
            args=self.args,
            reference_count=self.reference_count,
            referencing_servers=tuple(sorted(self.referencing_servers)),
        )

    # ------------------------------------------------------------------
    # Stream I/O
    # ------------------------------------------------------------------
    def subscribe(self, listener: LineListener) -> Callable[[], None]:
        """Attach a stdout line listener and return a callable that detaches it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    async def write_line(self, line: str) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing() or not self.alive:
            raise TransportClosedError(f"Process '{self.command}' is not accepting input")
        async with self._write_lock:
            try:
                stdin.write(line.encode("utf-8") + b"\n")
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise TransportClosedError(f"Process '{self.command}' closed its stdin") from exc

    def start_readers(self) -> None:
        if self._reader_tasks:
            return
        self._reader_tasks = [
            asyncio.create_task(self._pump_stdout(), name=f"mcp-stdout-{self.pid}"),
            asyncio.create_task(self._pump_stderr(), name=f"mcp-stderr-{self.pid}"),
        ]

    async def _pump_stdout(self) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    LOGGER.warning("Dropping oversized stdout line from '%s'", self.command)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    self._dispatch(line)
        finally:
            self._stdout_closed = True
            self._dispatch(None)

    async def _pump_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                server_logger(self.referencing_servers or self.command).debug("%s", text)

    def _dispatch(self, line: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(line)
            except Exception:
                LOGGER.exception("stdout listener for '%s' failed", self.command)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def terminate(self, timeout: float = _DEFAULT_TERMINATE_TIMEOUT) -> bool:
        """Terminate the process; returns ``False`` when it was already terminated."""

        if self._terminated:
            return False
        self._terminated = True
        process = self.process
        if process.returncode is None:
            LOGGER.info("Terminating tool server process pid=%s (%s)", process.pid, self.command)
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    LOGGER.warning("Process pid=%s ignored SIGTERM; killing", process.pid)
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass
        for task in self._reader_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._reader_tasks, return_exceptions=True)
        return True


class ProcessHandle:
    """Token owning one reference to a pooled process.

    The handle never holds the process itself; it resolves it through the
    pool by key and serial so a stale handle cannot touch a respawned process.
    """

    __slots__ = ("_pool", "_serial", "_disposed", "process_key", "server_name")

    def __init__(self, pool: "ProcessPool", process_key: str, serial: int, server_name: str) -> None:
        self._pool = pool
        self._serial = serial
        self._disposed = False
        self.process_key = process_key
        self.server_name = server_name

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def process(self) -> ManagedProcess:
        if self._disposed:
            raise TransportClosedError(f"Process handle for '{self.server_name}' was disposed")
        managed = self._pool._lookup(self.process_key, self._serial)
        if managed is None:
            raise TransportClosedError(f"Process for '{self.server_name}' is no longer running")
        return managed

    @property
    def pid(self) -> int | None:
        managed = self._pool._lookup(self.process_key, self._serial)
        return managed.pid if managed is not None else None

    async def dispose(self) -> None:
        if self._disposed:
            LOGGER.warning("Process handle for '%s' disposed twice; ignoring", self.server_name)
            return
        self._disposed = True
        await self._pool._release(self)

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ProcessHandle(server={self.server_name!r}, key={self.process_key!r}, disposed={self._disposed})"


class ProcessPool:
    """Owns shared subprocesses keyed by ``command::args::env``."""

    def __init__(
        self,
        *,
        terminate_timeout: float = _DEFAULT_TERMINATE_TIMEOUT,
        stream_limit: int = _STREAM_LIMIT,
    ) -> None:
        self._terminate_timeout = terminate_timeout
        self._stream_limit = stream_limit
        self._processes: Dict[str, ManagedProcess] = {}
        self._watchers: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, key: object) -> bool:
        return key in self._processes

    async def acquire(
        self,
        server_name: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Return a handle to the process for this configuration, spawning it if needed.

        Raises:
            ProcessSpawnError: the process could not be started.  Nothing is
                registered in that case.
        """

        key = process_key(command, args, env)
        async with self._lock:
            managed = self._processes.get(key)
            if managed is not None and not managed.alive:
                LOGGER.debug("Dropping exited process pid=%s before respawn", managed.pid)
                self._processes.pop(key, None)
                managed = None
            if managed is None:
                managed = await self._spawn(key, command, args, env)
                self._processes[key] = managed
                self._watch(managed)
                managed.start_readers()
            managed.add_reference(server_name)
            LOGGER.debug(
                "Server '%s' acquired pid=%s (refs=%d, servers=%s)",
                server_name,
                managed.pid,
                managed.reference_count,
                sorted(managed.referencing_servers),
            )
            return ProcessHandle(self, key, managed.serial, server_name)

    async def release(self, handle: ProcessHandle) -> None:
        """Release ``handle``; equivalent to ``await handle.dispose()``."""

        await handle.dispose()

    async def shutdown_all(self) -> None:
        """Terminate every pooled process regardless of its reference count."""

        async with self._lock:
            processes = list(self._processes.values())
            self._processes.clear()
            for managed in processes:
                await managed.terminate(self._terminate_timeout)
        for task in list(self._watchers):
            task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)
        if processes:
            LOGGER.info("Shut down %d tool server process(es)", len(processes))

    def stats(self) -> List[ProcessStats]:
        return [managed.stats() for managed in self._processes.values()]

    def get(self, key: str) -> ManagedProcess | None:
        return self._processes.get(key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _lookup(self, key: str, serial: int) -> ManagedProcess | None:
        managed = self._processes.get(key)
        if managed is None or managed.serial != serial:
            return None
        return managed

    async def _release(self, handle: ProcessHandle) -> None:
        async with self._lock:
            managed = self._lookup(handle.process_key, handle.serial)
            if managed is None:
                LOGGER.debug("Process for '%s' already gone; nothing to release", handle.server_name)
                return
            managed.remove_reference(handle.server_name)
            remaining = managed.reference_count
            if remaining > 0:
                LOGGER.debug(
                    "Server '%s' released pid=%s (refs=%d remaining)",
                    handle.server_name,
                    managed.pid,
                    remaining,
                )
                return
            await managed.terminate(self._terminate_timeout)
            if self._processes.get(handle.process_key) is managed:
                self._processes.pop(handle.process_key)

    async def _spawn(
        self,
        key: str,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str] | None,
    ) -> ManagedProcess:
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=self._stream_limit,
            )
        except (OSError, ValueError) as exc:
            LOGGER.error("Failed to spawn '%s': %s", command, exc)
            raise ProcessSpawnError(command, str(exc)) from exc
        LOGGER.info("Spawned tool server pid=%s: %s %s", process.pid, command, " ".join(args))
        return ManagedProcess(key, command, args, process)

    def _watch(self, managed: ManagedProcess) -> None:
        task = asyncio.create_task(self._watch_exit(managed), name=f"mcp-exit-{managed.pid}")
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _watch_exit(self, managed: ManagedProcess) -> None:
        code = await managed.process.wait()
        if self._processes.get(managed.key) is managed:
            self._processes.pop(managed.key)
        if not managed.terminated:
            LOGGER.warning(
                "Tool server pid=%s exited unexpectedly with code %s (servers=%s)",
                managed.pid,
                code,
                sorted(managed.referencing_servers),
            )
        else:
            LOGGER.debug("Tool server pid=%s exited with code %s", managed.pid, code)
