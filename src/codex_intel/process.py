"""Subprocess execution with batch and line-streaming modes.

Both modes run the child through asyncio so the caller's event loop is never
blocked. Streaming mode drains stdout and stderr concurrently, splits each
channel on newlines and hands every complete line to a single dispatcher task,
so the line handler observes events in arrival order without re-entrancy.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import os
import threading
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .errors import SpawnError
from .logging_utils import log_event
from .utils import command_preview, enriched_environment, render_command

_READ_CHUNK_SIZE = 64 * 1024
_SHELL_CANDIDATES = ("/bin/zsh", "/bin/bash", "/bin/sh")

_logger = logging.getLogger(__name__)


class StreamSource(str, enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclasses.dataclass(frozen=True)
class ProcessSpec:
    program: str
    arguments: Sequence[str] = ()
    working_directory: Optional[str] = None
    environment: Optional[Mapping[str, str]] = None
    shell: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", tuple(str(a) for a in self.arguments))
        if self.environment is not None:
            object.__setattr__(self, "environment", dict(self.environment))

    @classmethod
    def shell_command(
        cls,
        command: str,
        *,
        working_directory: Optional[str] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> "ProcessSpec":
        return cls(
            program=command,
            working_directory=working_directory,
            environment=environment,
            shell=True,
        )

    def argv(self) -> List[str]:
        if self.shell:
            return [_login_shell(), "-lc", self.program]
        return [self.program, *self.arguments]

    def resolved_environment(self) -> Dict[str, str]:
        if self.environment is not None:
            return dict(self.environment)
        extra: List[str] = []
        if not self.shell and os.path.sep in self.program:
            extra.append(str(Path(self.program).expanduser().parent))
        return enriched_environment(extra)

    def describe(self) -> str:
        if self.shell:
            return command_preview(self.program)
        return render_command(self.program, list(self.arguments))


@dataclasses.dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_text(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


@dataclasses.dataclass(frozen=True)
class StreamEvent:
    source: StreamSource
    line: str


LineHandler = Callable[[StreamEvent], Union[None, Awaitable[None]]]


def _login_shell() -> str:
    for candidate in _SHELL_CANDIDATES:
        if os.path.exists(candidate):
            return candidate
    return "sh"


def _decode(blob: bytes) -> str:
    return blob.decode("utf-8", errors="replace")


class ProcessRegistry:
    """Tracks live child processes so a stop request can reach all of them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: Dict[int, asyncio.subprocess.Process] = {}

    def add(self, process: asyncio.subprocess.Process) -> None:
        with self._lock:
            self._processes[process.pid] = process

    def discard(self, process: asyncio.subprocess.Process) -> None:
        with self._lock:
            self._processes.pop(process.pid, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def terminate_all(self) -> int:
        with self._lock:
            processes = list(self._processes.values())
        signalled = 0
        for process in processes:
            if process.returncode is not None:
                continue
            try:
                process.terminate()
                signalled += 1
            except ProcessLookupError:
                continue
        return signalled


class _StreamState:
    """Per-invocation buffers for both channels, guarded by one lock."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.pending: Dict[StreamSource, bytearray] = {
            StreamSource.STDOUT: bytearray(),
            StreamSource.STDERR: bytearray(),
        }
        self.raw: Dict[StreamSource, bytearray] = {
            StreamSource.STDOUT: bytearray(),
            StreamSource.STDERR: bytearray(),
        }

    async def feed(self, source: StreamSource, chunk: bytes) -> List[str]:
        lines: List[str] = []
        async with self.lock:
            self.raw[source].extend(chunk)
            buffer = self.pending[source]
            buffer.extend(chunk)
            while True:
                newline_index = buffer.find(b"\n")
                if newline_index == -1:
                    break
                line = bytes(buffer[:newline_index])
                del buffer[: newline_index + 1]
                if line.endswith(b"\r"):
                    line = line[:-1]
                lines.append(_decode(line))
        return lines

    async def flush(self, source: StreamSource) -> Optional[str]:
        async with self.lock:
            buffer = self.pending[source]
            tail = _decode(bytes(buffer))
            buffer.clear()
        if not tail.strip():
            return None
        return tail.rstrip("\r")

    async def texts(self) -> Dict[StreamSource, str]:
        async with self.lock:
            return {source: _decode(bytes(blob)) for source, blob in self.raw.items()}


class ProcessExecutor:
    def __init__(
        self,
        *,
        registry: Optional[ProcessRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry if registry is not None else ProcessRegistry()
        self._logger = logger or _logger

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    def cancel_all(self) -> int:
        """Signal every in-flight process; returns how many were signalled."""
        signalled = self._registry.terminate_all()
        log_event(self._logger, logging.INFO, "process.cancel_all", signalled=signalled)
        return signalled

    async def run_batch(self, spec: ProcessSpec) -> ProcessResult:
        process = await self._spawn(spec)
        try:
            stdout, stderr = await process.communicate()
        except BaseException:
            await self._abort(process)
            raise
        finally:
            self._registry.discard(process)
        result = ProcessResult(
            stdout=_decode(stdout or b""),
            stderr=_decode(stderr or b""),
            exit_code=_exit_code(process),
        )
        self._log_exit(process, result)
        return result

    async def run_streaming(
        self, spec: ProcessSpec, on_line: LineHandler
    ) -> ProcessResult:
        process = await self._spawn(spec)
        state = _StreamState()
        queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        dispatcher = asyncio.create_task(self._dispatch(queue, on_line))
        try:
            assert process.stdout is not None
            assert process.stderr is not None
            await asyncio.gather(
                self._pump(process.stdout, StreamSource.STDOUT, state, queue),
                self._pump(process.stderr, StreamSource.STDERR, state, queue),
            )
            await process.wait()
            for source in (StreamSource.STDOUT, StreamSource.STDERR):
                tail = await state.flush(source)
                if tail is not None:
                    queue.put_nowait(StreamEvent(source, tail))
        except BaseException:
            await self._abort(process)
            dispatcher.cancel()
            raise
        finally:
            self._registry.discard(process)
        queue.put_nowait(None)
        await dispatcher
        texts = await state.texts()
        result = ProcessResult(
            stdout=texts[StreamSource.STDOUT],
            stderr=texts[StreamSource.STDERR],
            exit_code=_exit_code(process),
        )
        self._log_exit(process, result)
        return result

    async def _spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        argv = spec.argv()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=spec.working_directory or None,
                env=spec.resolved_environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "process.spawn.failed",
                program=spec.program if not spec.shell else argv[0],
                exc=exc,
            )
            raise SpawnError(argv[0], exc.strerror or str(exc)) from exc
        self._registry.add(process)
        log_event(
            self._logger,
            logging.INFO,
            "process.spawned",
            pid=process.pid,
            command=spec.describe(),
            cwd=spec.working_directory,
        )
        return process

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        source: StreamSource,
        state: _StreamState,
        queue: "asyncio.Queue[Optional[StreamEvent]]",
    ) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in await state.feed(source, chunk):
                queue.put_nowait(StreamEvent(source, line))

    async def _dispatch(
        self,
        queue: "asyncio.Queue[Optional[StreamEvent]]",
        on_line: LineHandler,
    ) -> None:
        while True:
            event = await queue.get()
            if event is None:
                return
            try:
                outcome = on_line(event)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "process.line_handler.failed",
                    source=event.source.value,
                    exc=exc,
                )

    async def _abort(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=1)
        except asyncio.TimeoutError:
            pass

    def _log_exit(
        self,
        process: asyncio.subprocess.Process,
        result: ProcessResult,
    ) -> None:
        log_event(
            self._logger,
            logging.INFO if result.ok else logging.WARNING,
            "process.exited",
            pid=process.pid,
            exit_code=result.exit_code,
            stdout_chars=len(result.stdout),
            stderr_chars=len(result.stderr),
        )


def _exit_code(process: asyncio.subprocess.Process) -> int:
    return process.returncode if process.returncode is not None else -1


def failure_text(result: ProcessResult) -> str:
    """Best human-readable reason for a failed run; never empty."""
    err = result.stderr.strip()
    if err:
        return err
    out = result.stdout.strip()
    if out:
        return out
    return "(no error details)"


def clean_output(result: ProcessResult) -> str:
    out = result.stdout.strip()
    if out:
        return out
    err = result.stderr.strip()
    if err:
        return err
    return "(no output)"
