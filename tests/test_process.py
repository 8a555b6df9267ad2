import asyncio
import sys
from pathlib import Path
from typing import List

import pytest

from codex_intel.errors import SpawnError
from codex_intel.process import (
    ProcessExecutor,
    ProcessResult,
    ProcessSpec,
    StreamEvent,
    StreamSource,
    clean_output,
    failure_text,
)


def _python(code: str, **kwargs) -> ProcessSpec:
    return ProcessSpec(sys.executable, ["-c", code], **kwargs)


@pytest.mark.anyio
async def test_run_batch_captures_output_and_exit_code(tmp_path: Path) -> None:
    executor = ProcessExecutor()
    result = await executor.run_batch(
        _python(
            "import os, sys; print(os.getcwd()); sys.stderr.write('oops'); sys.exit(5)",
            working_directory=str(tmp_path),
        )
    )
    assert result.exit_code == 5
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()
    assert result.stderr == "oops"
    assert not result.ok
    assert len(executor.registry) == 0


@pytest.mark.anyio
async def test_streaming_splits_lines_and_keeps_raw_output(fake_codex) -> None:
    codex = fake_codex("partial")
    seen: List[StreamEvent] = []

    result = await ProcessExecutor().run_streaming(ProcessSpec(str(codex)), seen.append)

    assert result.exit_code == 3
    assert result.stdout == "line one\nline two\r\npartial tail"
    assert result.stderr == "warning: disk almost full\n"
    stdout_lines = [e.line for e in seen if e.source == StreamSource.STDOUT]
    stderr_lines = [e.line for e in seen if e.source == StreamSource.STDERR]
    assert stdout_lines == ["line one", "line two", "partial tail"]
    assert stderr_lines == ["warning: disk almost full"]
    assert all("\n" not in e.line for e in seen)


@pytest.mark.anyio
async def test_streaming_joins_lines_split_across_reads() -> None:
    code = (
        "import sys, time\n"
        "sys.stdout.write('x' * 200000); sys.stdout.flush(); time.sleep(0.05)\n"
        "sys.stdout.write('y\\nlast\\n')\n"
    )
    seen: List[StreamEvent] = []
    result = await ProcessExecutor().run_streaming(_python(code), seen.append)
    assert result.ok
    assert [len(e.line) for e in seen] == [200001, 4]
    assert seen[0].line.endswith("xy")


@pytest.mark.anyio
async def test_streaming_accepts_async_handler_and_survives_errors() -> None:
    code = "print('one'); print('two'); print('three')"
    seen: List[str] = []

    async def handler(event: StreamEvent) -> None:
        await asyncio.sleep(0)
        if event.line == "two":
            raise RuntimeError("handler blew up")
        seen.append(event.line)

    result = await ProcessExecutor().run_streaming(_python(code), handler)
    assert result.ok
    assert seen == ["one", "three"]


@pytest.mark.anyio
async def test_blank_trailing_data_is_not_emitted() -> None:
    code = "import sys; sys.stdout.write('done\\n   ')"
    seen: List[StreamEvent] = []
    result = await ProcessExecutor().run_streaming(_python(code), seen.append)
    assert [e.line for e in seen] == ["done"]
    assert result.stdout == "done\n   "


@pytest.mark.anyio
async def test_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    missing = tmp_path / "does-not-exist"
    with pytest.raises(SpawnError) as excinfo:
        await ProcessExecutor().run_batch(ProcessSpec(str(missing)))
    assert str(missing) in str(excinfo.value)


@pytest.mark.anyio
async def test_non_executable_file_raises_spawn_error(tmp_path: Path) -> None:
    script = tmp_path / "codex"
    script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    script.chmod(0o644)
    with pytest.raises(SpawnError):
        await ProcessExecutor().run_streaming(ProcessSpec(str(script)), lambda e: None)


@pytest.mark.anyio
async def test_shell_command_mode() -> None:
    result = await ProcessExecutor().run_batch(ProcessSpec.shell_command("echo shell-ok"))
    assert result.ok
    assert "shell-ok" in result.stdout


@pytest.mark.anyio
async def test_cancel_all_terminates_running_processes() -> None:
    executor = ProcessExecutor()
    task = asyncio.create_task(
        executor.run_streaming(
            _python("import time; print('started', flush=True); time.sleep(30)"),
            lambda e: None,
        )
    )
    for _ in range(500):
        if len(executor.registry):
            break
        await asyncio.sleep(0.01)
    assert len(executor.registry) == 1

    assert executor.cancel_all() == 1
    result = await asyncio.wait_for(task, timeout=10)
    assert result.exit_code != 0
    assert len(executor.registry) == 0


def test_spec_environment_includes_program_directory(tmp_path: Path) -> None:
    spec = ProcessSpec(str(tmp_path / "bin" / "codex"))
    path_entries = spec.resolved_environment()["PATH"].split(":")
    assert path_entries[0] == str(tmp_path / "bin")
    assert "/usr/bin" in path_entries
    assert len(path_entries) == len(set(path_entries))


def test_failure_text_prefers_stderr_then_stdout() -> None:
    assert failure_text(ProcessResult("out", "  err \n", 1)) == "err"
    assert failure_text(ProcessResult(" out\n", "  ", 1)) == "out"
    assert failure_text(ProcessResult("", "", 1)) == "(no error details)"


def test_clean_output_prefers_stdout_then_stderr() -> None:
    assert clean_output(ProcessResult(" out\n", "err", 0)) == "out"
    assert clean_output(ProcessResult("", "err", 0)) == "err"
    assert clean_output(ProcessResult("", "", 0)) == "(no output)"
