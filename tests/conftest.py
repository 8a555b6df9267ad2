"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import json
import shlex
import stat
import sys
from pathlib import Path
from typing import Callable, List

import pytest

FAKE_CODEX = Path(__file__).parent / "fixtures" / "fake_codex.py"


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeCodex:
    """Executable wrapper around the fixture agent that records its argv."""

    def __init__(self, path: Path, log_path: Path) -> None:
        self.path = path
        self.log_path = log_path

    def __str__(self) -> str:
        return str(self.path)

    def invocations(self) -> List[List[str]]:
        if not self.log_path.exists():
            return []
        return [
            json.loads(line)
            for line in self.log_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]


@pytest.fixture()
def fake_codex(tmp_path: Path) -> Callable[[str], FakeCodex]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(scenario: str) -> FakeCodex:
        script = bin_dir / f"codex-{scenario}"
        log_path = bin_dir / f"codex-{scenario}.jsonl"
        command = " ".join(
            shlex.quote(part)
            for part in (
                sys.executable,
                "-u",
                str(FAKE_CODEX),
                "--scenario",
                scenario,
                "--log",
                str(log_path),
            )
        )
        script.write_text(f'#!/bin/sh\nexec {command} "$@"\n', encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeCodex(script, log_path)

    return _make


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root

