"""Per-file and per-line summary of what a turn changed in the project.

Git is the primary source: `--numstat` for counts and a zero-context patch for
line previews. When the project has no commit yet, or git reports nothing, the
text snapshot captured before the turn is compared with the current files
using a prefix/suffix trim.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import functools
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ProcessError
from .git_utils import (
    GitError,
    git_available,
    git_diff_numstat,
    git_diff_patch,
    git_head_sha,
    git_untracked_files,
)
from .logging_utils import log_event
from .process import ProcessExecutor
from .snapshot import SnapshotLimits, TextSnapshot, capture_snapshot, read_text_file

DEFAULT_MAX_PREVIEW_LINES = 200

_INTERNAL_DIR_PREFIXES = (".codex-intel/",)

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_RENAME_BRACE_RE = re.compile(r"\{([^{}]*) => ([^{}]*)\}")

_logger = logging.getLogger(__name__)


class DiffLineKind(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclasses.dataclass(frozen=True)
class DiffFileStat:
    path: str
    added: int
    removed: int


@dataclasses.dataclass(frozen=True)
class DiffLine:
    file: str
    kind: DiffLineKind
    line_number: Optional[int]
    text: str

    @property
    def position_label(self) -> str:
        return str(self.line_number) if self.line_number is not None else "?"

    @property
    def marker(self) -> str:
        return "+" if self.kind == DiffLineKind.ADDED else "-"


@dataclasses.dataclass(frozen=True)
class ChangeReport:
    files: Tuple[DiffFileStat, ...] = ()
    lines: Tuple[DiffLine, ...] = ()
    source: str = "none"
    truncated: bool = False

    @property
    def added_total(self) -> int:
        return sum(stat.added for stat in self.files)

    @property
    def removed_total(self) -> int:
        return sum(stat.removed for stat in self.files)

    @property
    def is_empty(self) -> bool:
        return not self.files

    @classmethod
    def build(
        cls,
        stats: Iterable[DiffFileStat],
        lines: Iterable[DiffLine] = (),
        *,
        source: str,
        max_lines: int = DEFAULT_MAX_PREVIEW_LINES,
        truncated: bool = False,
    ) -> "ChangeReport":
        line_list = list(lines)
        if len(line_list) > max_lines:
            line_list = line_list[:max_lines]
            truncated = True
        return cls(
            files=tuple(merge_stats(stats)),
            lines=tuple(line_list),
            source=source,
            truncated=truncated,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": self.source,
            "added_total": self.added_total,
            "removed_total": self.removed_total,
            "truncated": self.truncated,
            "files": [dataclasses.asdict(stat) for stat in self.files],
            "lines": [
                {
                    "file": line.file,
                    "kind": line.kind.value,
                    "line_number": line.line_number,
                    "text": line.text,
                }
                for line in self.lines
            ],
        }

    def summary_text(self, max_lines: int = 20) -> str:
        if not self.files:
            return "No file changes detected."
        out = [
            f"{len(self.files)} file(s) changed, "
            f"+{self.added_total} -{self.removed_total}"
        ]
        for stat in self.files:
            out.append(f"  {stat.path} +{stat.added} -{stat.removed}")
        for line in self.lines[:max_lines]:
            out.append(f"  {line.file}:{line.position_label} {line.marker} {line.text}")
        if self.truncated or len(self.lines) > max_lines:
            out.append("  ...")
        return "\n".join(out)


def merge_stats(*groups: Iterable[DiffFileStat]) -> List[DiffFileStat]:
    """Sum added/removed per path across diff sources; sorted by path."""
    totals: Dict[str, List[int]] = {}
    for group in groups:
        for stat in group:
            entry = totals.setdefault(stat.path, [0, 0])
            entry[0] += max(stat.added, 0)
            entry[1] += max(stat.removed, 0)
    return [
        DiffFileStat(path=path, added=added, removed=removed)
        for path, (added, removed) in sorted(totals.items())
    ]


def _rename_target(path: str) -> str:
    if "{" in path and " => " in path:
        path = _RENAME_BRACE_RE.sub(lambda m: m.group(2), path)
        return re.sub(r"/{2,}", "/", path).strip("/")
    if " => " in path:
        return path.split(" => ", 1)[1]
    return path


def parse_numstat(text: str) -> List[DiffFileStat]:
    """Parse `git diff --numstat` output; binary entries (`-`) count as zero."""
    stats: List[DiffFileStat] = []
    for line in (text or "").splitlines():
        parts = line.split("\t", 2)
        if len(parts) < 3:
            continue
        added_s, removed_s, raw_path = parts
        path = _rename_target(raw_path.strip())
        if not path:
            continue
        try:
            added = int(added_s) if added_s != "-" else 0
            removed = int(removed_s) if removed_s != "-" else 0
        except ValueError:
            continue
        stats.append(DiffFileStat(path=path, added=added, removed=removed))
    return stats


@dataclasses.dataclass
class HunkCursor:
    """Line positions inside one hunk; context advances both sides."""

    old_line: int
    new_line: int
    old_remaining: int
    new_remaining: int

    @property
    def exhausted(self) -> bool:
        return self.old_remaining <= 0 and self.new_remaining <= 0

    def take_added(self) -> int:
        number = self.new_line
        self.new_line += 1
        self.new_remaining -= 1
        return number

    def take_removed(self) -> int:
        number = self.old_line
        self.old_line += 1
        self.old_remaining -= 1
        return number

    def take_context(self) -> None:
        self.old_line += 1
        self.new_line += 1
        self.old_remaining -= 1
        self.new_remaining -= 1


def parse_hunk_header(line: str) -> Optional[HunkCursor]:
    match = _HUNK_RE.match(line)
    if not match:
        return None
    old_start, old_count, new_start, new_count = match.groups()
    return HunkCursor(
        old_line=int(old_start),
        new_line=int(new_start),
        old_remaining=int(old_count) if old_count is not None else 1,
        new_remaining=int(new_count) if new_count is not None else 1,
    )


def _strip_patch_path(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def _path_from_diff_header(line: str) -> Optional[str]:
    rest = line[len("diff --git ") :]
    idx = rest.rfind(" b/")
    if idx == -1:
        return None
    return _strip_patch_path(rest[idx + 1 :])


def parse_unified_patch(
    text: str, *, limit: Optional[int] = None
) -> Tuple[List[DiffLine], bool]:
    """
    Extract added/removed lines from a unified diff.

    Returns the lines (at most `limit`) and whether any were left out.
    """
    lines: List[DiffLine] = []
    truncated = False
    current_file: Optional[str] = None
    cursor: Optional[HunkCursor] = None

    def _emit(kind: DiffLineKind, number: int, body: str) -> None:
        nonlocal truncated
        if limit is not None and len(lines) >= limit:
            truncated = True
            return
        lines.append(DiffLine(current_file or "?", kind, number, body))

    for raw in (text or "").splitlines():
        if cursor is not None and not cursor.exhausted:
            if raw.startswith("+"):
                _emit(DiffLineKind.ADDED, cursor.take_added(), raw[1:])
                continue
            if raw.startswith("-"):
                _emit(DiffLineKind.REMOVED, cursor.take_removed(), raw[1:])
                continue
            if raw.startswith(" ") or raw == "":
                cursor.take_context()
                continue
            if raw.startswith("\\"):
                continue
            cursor = None
        if raw.startswith("diff --git "):
            current_file = _path_from_diff_header(raw)
            cursor = None
            continue
        if raw.startswith("+++ "):
            path = _strip_patch_path(raw[4:])
            if path != "/dev/null":
                current_file = path
            continue
        if raw.startswith("--- "):
            path = _strip_patch_path(raw[4:])
            if path != "/dev/null" and current_file is None:
                current_file = path
            continue
        header = parse_hunk_header(raw)
        if header is not None:
            cursor = header
    return lines, truncated


@dataclasses.dataclass(frozen=True)
class TrimResult:
    removed: Tuple[Tuple[int, str], ...]
    added: Tuple[Tuple[int, str], ...]


def trim_diff(before: Sequence[str], after: Sequence[str]) -> TrimResult:
    """
    Approximate a line diff by trimming the common prefix and suffix.

    What is left of `before` is removed and what is left of `after` is added,
    each with its 1-based line number in its own version.
    """
    if list(before) == list(after):
        return TrimResult(removed=(), added=())
    shortest = min(len(before), len(after))
    prefix = 0
    while prefix < shortest and before[prefix] == after[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < shortest - prefix
        and before[len(before) - 1 - suffix] == after[len(after) - 1 - suffix]
    ):
        suffix += 1
    removed = tuple(
        (idx + 1, before[idx]) for idx in range(prefix, len(before) - suffix)
    )
    added = tuple((idx + 1, after[idx]) for idx in range(prefix, len(after) - suffix))
    return TrimResult(removed=removed, added=added)


def diff_texts(
    path: str, before: Optional[str], after: Optional[str]
) -> Tuple[Optional[DiffFileStat], List[DiffLine]]:
    """
    Line changes of one file, `None` standing for a missing file.

    Returns `(None, [])` when no line differs. That includes a new or deleted
    empty file and a change that only adds or drops the trailing newline,
    since both sides split into the same lines.
    """
    if before == after:
        return None, []
    result = trim_diff((before or "").splitlines(), (after or "").splitlines())
    if not result.removed and not result.added:
        return None, []
    lines = [
        DiffLine(path, DiffLineKind.REMOVED, number, text)
        for number, text in result.removed
    ]
    lines.extend(
        DiffLine(path, DiffLineKind.ADDED, number, text) for number, text in result.added
    )
    stat = DiffFileStat(path=path, added=len(result.added), removed=len(result.removed))
    return stat, lines


def compute_snapshot_report(
    before: TextSnapshot,
    after: TextSnapshot,
    *,
    max_lines: int = DEFAULT_MAX_PREVIEW_LINES,
) -> ChangeReport:
    stats: List[DiffFileStat] = []
    lines: List[DiffLine] = []
    truncated = False
    for path in sorted(set(before.files) | set(after.files)):
        # A file missing from one side counts only if that side looked for it.
        if path not in after.files and not after.knows_absent(path):
            continue
        if path not in before.files and not before.knows_absent(path):
            continue
        stat, file_lines = diff_texts(path, before.get(path), after.get(path))
        if stat is None:
            continue
        stats.append(stat)
        room = max_lines - len(lines)
        if len(file_lines) > room:
            truncated = True
        lines.extend(file_lines[: max(room, 0)])
    return ChangeReport.build(
        stats, lines, source="snapshot", max_lines=max_lines, truncated=truncated
    )


def _untracked_changes(
    root: Path,
    paths: Sequence[str],
    *,
    limits: SnapshotLimits,
    room: int,
) -> Tuple[List[DiffFileStat], List[DiffLine], bool]:
    stats: List[DiffFileStat] = []
    lines: List[DiffLine] = []
    truncated = False
    for rel in paths:
        text = read_text_file(root / rel, max_bytes=limits.max_file_bytes)
        file_lines = text.splitlines() if text else []
        stats.append(DiffFileStat(path=rel, added=len(file_lines), removed=0))
        for number, body in enumerate(file_lines, start=1):
            if len(lines) >= room:
                truncated = True
                break
            lines.append(DiffLine(rel, DiffLineKind.ADDED, number, body))
    return stats, lines, truncated


async def _git_report(
    executor: ProcessExecutor,
    root: Path,
    head: Optional[str],
    *,
    max_lines: int,
    limits: SnapshotLimits,
) -> ChangeReport:
    if head:
        numstats = [await git_diff_numstat(executor, root, "--relative", "HEAD")]
        patches = [await git_diff_patch(executor, root, "--relative", "HEAD")]
    else:
        numstats = [
            await git_diff_numstat(executor, root, "--relative", "--cached"),
            await git_diff_numstat(executor, root, "--relative"),
        ]
        patches = [
            await git_diff_patch(executor, root, "--relative", "--cached"),
            await git_diff_patch(executor, root, "--relative"),
        ]
    stats: List[DiffFileStat] = []
    for output in numstats:
        stats.extend(parse_numstat(output))
    lines: List[DiffLine] = []
    truncated = False
    for patch in patches:
        parsed, cut = parse_unified_patch(patch, limit=max_lines - len(lines))
        lines.extend(parsed)
        truncated = truncated or cut
    untracked = [
        path
        for path in await git_untracked_files(executor, root)
        if not path.startswith(_INTERNAL_DIR_PREFIXES)
    ]
    read_untracked = functools.partial(
        _untracked_changes,
        root,
        untracked,
        limits=limits,
        room=max_lines - len(lines),
    )
    extra_stats, extra_lines, cut = await asyncio.get_running_loop().run_in_executor(
        None, read_untracked
    )
    return ChangeReport.build(
        [*stats, *extra_stats],
        [*lines, *extra_lines],
        source="git",
        max_lines=max_lines,
        truncated=truncated or cut,
    )


async def compute_change_report(
    project_path: Path,
    prior_snapshot: Optional[TextSnapshot] = None,
    *,
    executor: Optional[ProcessExecutor] = None,
    max_preview_lines: int = DEFAULT_MAX_PREVIEW_LINES,
    snapshot_limits: Optional[SnapshotLimits] = None,
    logger: Optional[logging.Logger] = None,
) -> ChangeReport:
    """
    Summarize the working tree changes of `project_path`.

    Never raises for git or filesystem problems; those degrade to whatever
    partial information is available.
    """
    root = Path(project_path)
    executor = executor or ProcessExecutor()
    limits = snapshot_limits or SnapshotLimits()
    logger = logger or _logger
    report: Optional[ChangeReport] = None
    try:
        if await git_available(executor, root):
            head = await git_head_sha(executor, root)
            if head or prior_snapshot is None:
                report = await _git_report(
                    executor, root, head, max_lines=max_preview_lines, limits=limits
                )
    except (GitError, ProcessError) as exc:
        log_event(logger, logging.WARNING, "changes.git.failed", root=str(root), exc=exc)
    if report is not None and not report.is_empty:
        return report
    if prior_snapshot is not None:
        try:
            after = await asyncio.get_running_loop().run_in_executor(
                None, capture_snapshot, root, limits
            )
        except OSError as exc:
            log_event(
                logger, logging.WARNING, "changes.snapshot.failed", root=str(root), exc=exc
            )
        else:
            return compute_snapshot_report(
                prior_snapshot, after, max_lines=max_preview_lines
            )
    return report or ChangeReport(source="none")
