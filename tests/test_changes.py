import shutil
import subprocess
import threading
from pathlib import Path

import pytest

from codex_intel.changes import (
    ChangeReport,
    DiffFileStat,
    DiffLine,
    DiffLineKind,
    compute_change_report,
    compute_snapshot_report,
    diff_texts,
    merge_stats,
    parse_hunk_header,
    parse_numstat,
    parse_unified_patch,
    trim_diff,
)
from codex_intel.snapshot import SnapshotLimits, TextSnapshot, capture_snapshot

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

SAMPLE_PATCH = """diff --git a/src/app.py b/src/app.py
index 1111111..2222222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -10,2 +10,3 @@ def main():
-    old()
+    new()
+    extra()
 context
@@ -20 +21,0 @@
-gone
diff --git a/old.txt b/old.txt
deleted file mode 100644
index 3333333..0000000
--- a/old.txt
+++ /dev/null
@@ -1,2 +0,0 @@
-a
-b
\\ No newline at end of file
"""


def _git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        [
            "git",
            "-c",
            "user.email=tests@example.com",
            "-c",
            "user.name=Tests",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def _write(root: Path, rel: str, text: str) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_hunk_header_initialises_both_cursors() -> None:
    cursor = parse_hunk_header("@@ -10,3 +10,5 @@")
    assert cursor is not None
    assert (cursor.old_line, cursor.new_line) == (10, 10)
    cursor.take_added()
    cursor.take_added()
    cursor.take_context()
    assert cursor.new_line == 13
    assert cursor.old_line == 11


def test_hunk_header_counts_default_to_one() -> None:
    cursor = parse_hunk_header("@@ -3 +4 @@ def f():")
    assert (cursor.old_remaining, cursor.new_remaining) == (1, 1)
    assert parse_hunk_header("not a hunk") is None


def test_numstat_and_untracked_totals() -> None:
    tracked = parse_numstat("3\t1\tsrc/main.go\n")
    untracked = parse_numstat("5\t0\tREADME.md\n")
    report = ChangeReport.build([*tracked, *untracked], source="git")
    assert [stat.path for stat in report.files] == ["README.md", "src/main.go"]
    assert report.added_total == 8
    assert report.removed_total == 1


def test_numstat_handles_binary_and_renames() -> None:
    stats = parse_numstat(
        "-\t-\tassets/logo.png\n"
        "1\t1\tsrc/{old => new}/f.py\n"
        "2\t0\ta.txt => b.txt\n"
        "garbage line\n"
    )
    assert stats == [
        DiffFileStat("assets/logo.png", 0, 0),
        DiffFileStat("src/new/f.py", 1, 1),
        DiffFileStat("b.txt", 2, 0),
    ]


def test_merge_stats_sums_per_path() -> None:
    merged = merge_stats(
        [DiffFileStat("b.py", 1, 0), DiffFileStat("a.py", 2, 2)],
        [DiffFileStat("b.py", 3, 1)],
    )
    assert merged == [DiffFileStat("a.py", 2, 2), DiffFileStat("b.py", 4, 1)]


def test_unified_patch_line_numbers() -> None:
    lines, truncated = parse_unified_patch(SAMPLE_PATCH)
    assert not truncated
    assert lines == [
        DiffLine("src/app.py", DiffLineKind.REMOVED, 10, "    old()"),
        DiffLine("src/app.py", DiffLineKind.ADDED, 10, "    new()"),
        DiffLine("src/app.py", DiffLineKind.ADDED, 11, "    extra()"),
        DiffLine("src/app.py", DiffLineKind.REMOVED, 20, "gone"),
        DiffLine("old.txt", DiffLineKind.REMOVED, 1, "a"),
        DiffLine("old.txt", DiffLineKind.REMOVED, 2, "b"),
    ]


def test_unified_patch_respects_limit() -> None:
    lines, truncated = parse_unified_patch(SAMPLE_PATCH, limit=3)
    assert len(lines) == 3
    assert truncated


def test_trim_diff_equal_sequences_are_unchanged() -> None:
    result = trim_diff(["a", "b"], ["a", "b"])
    assert result.added == ()
    assert result.removed == ()
    assert diff_texts("f.txt", "same\n", "same\n") == (None, [])


def test_diff_texts_ignores_changes_without_line_differences() -> None:
    assert diff_texts("empty.txt", None, "") == (None, [])
    assert diff_texts("f.txt", "last", "last\n") == (None, [])
    assert diff_texts("f.txt", "last\n", "last") == (None, [])


def test_trim_diff_reports_middle_span() -> None:
    result = trim_diff(["a", "b", "c", "d"], ["a", "x", "y", "d"])
    assert result.removed == ((2, "b"), (3, "c"))
    assert result.added == ((2, "x"), (3, "y"))


@pytest.mark.parametrize(
    "before,after",
    [
        (["a"], ["b", "c", "d"]),
        (["a", "b", "c"], []),
        ([], ["x"]),
        (["a", "a", "a"], ["a", "a"]),
        (["p", "q"], ["q", "p", "q"]),
    ],
)
def test_trim_diff_line_numbers_stay_in_bounds(before, after) -> None:
    result = trim_diff(before, after)
    assert len(result.added) >= 0 and len(result.removed) >= 0
    assert all(1 <= number <= len(after) for number, _ in result.added)
    assert all(1 <= number <= len(before) for number, _ in result.removed)
    assert all(after[number - 1] == text for number, text in result.added)
    assert all(before[number - 1] == text for number, text in result.removed)
    assert len(before) - len(result.removed) == len(after) - len(result.added)


def test_snapshot_report_covers_added_removed_and_modified(tmp_path: Path) -> None:
    before = TextSnapshot(
        root=tmp_path, files={"keep.txt": "1\n2\n3\n", "gone.txt": "bye\n", "same": "s"}
    )
    after = TextSnapshot(
        root=tmp_path, files={"keep.txt": "1\ntwo\n3\n", "new.txt": "hi\nthere\n", "same": "s"}
    )
    report = compute_snapshot_report(before, after)
    assert report.source == "snapshot"
    assert report.files == (
        DiffFileStat("gone.txt", 0, 1),
        DiffFileStat("keep.txt", 1, 1),
        DiffFileStat("new.txt", 2, 0),
    )
    assert DiffLine("keep.txt", DiffLineKind.ADDED, 2, "two") in report.lines
    assert DiffLine("keep.txt", DiffLineKind.REMOVED, 2, "2") in report.lines


def test_snapshot_report_caps_preview_lines(tmp_path: Path) -> None:
    before = TextSnapshot(root=tmp_path, files={})
    after = TextSnapshot(root=tmp_path, files={"big.txt": "\n".join("x" * 10)})
    report = compute_snapshot_report(before, after, max_lines=4)
    assert len(report.lines) == 4
    assert report.truncated
    assert report.files == (DiffFileStat("big.txt", 10, 0),)


def test_summary_text_and_unknown_positions() -> None:
    assert ChangeReport().summary_text() == "No file changes detected."
    line = DiffLine("a.py", DiffLineKind.ADDED, None, "print()")
    assert line.position_label == "?"
    report = ChangeReport.build([DiffFileStat("a.py", 1, 0)], [line], source="git")
    text = report.summary_text()
    assert text.splitlines()[0] == "1 file(s) changed, +1 -0"
    assert "a.py:? + print()" in text
    assert report.to_dict()["lines"][0]["kind"] == "added"


def test_capture_snapshot_skips_binary_ignored_and_large_files(tmp_path: Path) -> None:
    _write(tmp_path, "src/main.py", "print('hi')\n")
    _write(tmp_path, "node_modules/pkg/index.js", "x")
    _write(tmp_path, ".env", "SECRET=1")
    _write(tmp_path, "big.txt", "y" * 50)
    (tmp_path / "blob.bin").write_bytes(b"\x00\x01\x02")
    snapshot = capture_snapshot(tmp_path, SnapshotLimits(max_file_bytes=20, max_files=100))
    assert set(snapshot.files) == {"src/main.py"}
    assert not snapshot.truncated


def _numbered(count: int) -> str:
    return "".join(f"line {n}\n" for n in range(count))


def test_file_grown_past_size_limit_is_not_reported_deleted(tmp_path: Path) -> None:
    limits = SnapshotLimits(max_file_bytes=100, max_files=100)
    _write(tmp_path, "a.txt", _numbered(10))
    before = capture_snapshot(tmp_path, limits)
    _write(tmp_path, "a.txt", _numbered(30))
    after = capture_snapshot(tmp_path, limits)

    assert "a.txt" in after.skipped
    assert compute_snapshot_report(before, after).is_empty


def test_file_turned_binary_is_not_reported_deleted(tmp_path: Path) -> None:
    _write(tmp_path, "data.txt", "plain\n")
    before = capture_snapshot(tmp_path)
    (tmp_path / "data.txt").write_bytes(b"\x00\x01plain")
    after = capture_snapshot(tmp_path)

    assert compute_snapshot_report(before, after).is_empty


def test_file_count_cap_does_not_report_untouched_files(tmp_path: Path) -> None:
    limits = SnapshotLimits(max_file_bytes=1000, max_files=2)
    _write(tmp_path, "b.txt", "b\n")
    _write(tmp_path, "c.txt", "c\n")
    before = capture_snapshot(tmp_path, limits)
    _write(tmp_path, "a.txt", "a\n")
    after = capture_snapshot(tmp_path, limits)

    assert after.truncated
    assert after.cutoff == "b.txt"
    report = compute_snapshot_report(before, after)
    assert report.files == (DiffFileStat("a.txt", 1, 0),)


def test_file_count_cap_still_reports_real_deletions(tmp_path: Path) -> None:
    limits = SnapshotLimits(max_file_bytes=1000, max_files=2)
    for name in ("a.txt", "b.txt", "c.txt"):
        _write(tmp_path, name, name + "\n")
    before = capture_snapshot(tmp_path, limits)
    (tmp_path / "a.txt").unlink()
    after = capture_snapshot(tmp_path, limits)

    report = compute_snapshot_report(before, after)
    assert report.files == (DiffFileStat("a.txt", 0, 1),)


def test_snapshot_cutoff_follows_walk_order(tmp_path: Path) -> None:
    _write(tmp_path, "z.txt", "z\n")
    _write(tmp_path, "a/inner.txt", "i\n")
    _write(tmp_path, "b/late.txt", "l\n")
    snapshot = capture_snapshot(tmp_path, SnapshotLimits(max_files=2))

    assert set(snapshot.files) == {"z.txt", "a/inner.txt"}
    assert snapshot.cutoff == "a/inner.txt"
    assert snapshot.covers("z.txt")
    assert snapshot.covers("a/early.txt")
    assert not snapshot.covers("a/deeper/x.txt")
    assert not snapshot.covers("b/late.txt")
    assert not snapshot.knows_absent("b/late.txt")
    assert snapshot.knows_absent("a/gone.txt")


@pytest.mark.anyio
async def test_outside_git_without_snapshot_is_empty(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "hello\n")
    report = await compute_change_report(tmp_path)
    assert report.is_empty
    assert report.added_total == 0


@pytest.mark.anyio
async def test_outside_git_uses_snapshot(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "hello\n")
    prior = capture_snapshot(tmp_path)
    _write(tmp_path, "a.txt", "hello\nworld\n")
    report = await compute_change_report(tmp_path, prior)
    assert report.source == "snapshot"
    assert report.files == (DiffFileStat("a.txt", 1, 0),)
    assert report.lines == (DiffLine("a.txt", DiffLineKind.ADDED, 2, "world"),)


@needs_git
@pytest.mark.anyio
async def test_git_report_against_head(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _write(tmp_path, "a.txt", "one\ntwo\nthree\n")
    _git(tmp_path, "add", "a.txt")
    _git(tmp_path, "commit", "-q", "-m", "init")
    _write(tmp_path, "a.txt", "one\nTWO\nthree\nfour\n")
    _write(tmp_path, "new.txt", "x\ny\n")
    _write(tmp_path, ".codex-intel/codex-intel.log", "noise\n")

    report = await compute_change_report(tmp_path)

    assert report.source == "git"
    assert report.files == (
        DiffFileStat("a.txt", 2, 1),
        DiffFileStat("new.txt", 2, 0),
    )
    assert (report.added_total, report.removed_total) == (4, 1)
    assert DiffLine("a.txt", DiffLineKind.REMOVED, 2, "two") in report.lines
    assert DiffLine("a.txt", DiffLineKind.ADDED, 2, "TWO") in report.lines
    assert DiffLine("a.txt", DiffLineKind.ADDED, 4, "four") in report.lines
    assert DiffLine("new.txt", DiffLineKind.ADDED, 1, "x") in report.lines


@needs_git
@pytest.mark.anyio
async def test_git_without_head_merges_staged_and_unstaged(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _write(tmp_path, "a.txt", "1\n2\n3\n")
    _git(tmp_path, "add", "a.txt")
    _write(tmp_path, "a.txt", "1\n2\n3\n4\n")

    report = await compute_change_report(tmp_path)

    assert report.source == "git"
    assert report.files == (DiffFileStat("a.txt", 4, 0),)


@needs_git
@pytest.mark.anyio
async def test_git_without_head_prefers_snapshot(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _write(tmp_path, "a.txt", "1\n2\n")
    prior = capture_snapshot(tmp_path)
    _write(tmp_path, "a.txt", "1\nzwei\n")

    report = await compute_change_report(tmp_path, prior)

    assert report.source == "snapshot"
    assert report.files == (DiffFileStat("a.txt", 1, 1),)


@needs_git
@pytest.mark.anyio
async def test_clean_repo_reports_nothing(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    _write(tmp_path, "a.txt", "1\n")
    _git(tmp_path, "add", "a.txt")
    _git(tmp_path, "commit", "-q", "-m", "init")
    report = await compute_change_report(tmp_path, capture_snapshot(tmp_path))
    assert report.is_empty


@needs_git
@pytest.mark.anyio
async def test_untracked_files_are_read_off_the_event_loop(
    tmp_path: Path, monkeypatch
) -> None:
    import codex_intel.changes as changes

    _git(tmp_path, "init", "-q")
    _write(tmp_path, "a.txt", "1\n")
    _git(tmp_path, "add", "a.txt")
    _git(tmp_path, "commit", "-q", "-m", "init")
    _write(tmp_path, "new.txt", "x\n")
    reader_threads = []
    original = changes.read_text_file

    def recording_read(path: Path, *, max_bytes: int):
        reader_threads.append(threading.get_ident())
        return original(path, max_bytes=max_bytes)

    monkeypatch.setattr(changes, "read_text_file", recording_read)
    report = await compute_change_report(tmp_path)

    assert report.files == (DiffFileStat("new.txt", 1, 0),)
    assert reader_threads
    assert threading.get_ident() not in reader_threads
