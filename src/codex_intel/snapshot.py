import dataclasses
import logging
import os
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from .logging_utils import log_event

_logger = logging.getLogger(__name__)

_DEFAULT_IGNORED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".codex-intel",
    "node_modules",
    ".venv",
    "venv",
    "dist",
    "build",
    ".build",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".cache",
    "__pycache__",
    ".tox",
    "DerivedData",
}

_SECRET_BASENAMES = {
    ".env",
    ".env.local",
    "id_rsa",
    "id_ed25519",
    "known_hosts",
    ".npmrc",
    ".pypirc",
}

_SECRET_EXTS = {".pem", ".key", ".p12", ".pfx", ".kdbx"}


@dataclasses.dataclass(frozen=True)
class SnapshotLimits:
    max_file_bytes: int = 512_000
    max_files: int = 5000


def walk_order_key(rel_path: str) -> Tuple[Tuple[int, str], ...]:
    """Sort key matching `iter_project_files`: a directory's files precede its subdirectories."""
    parts = rel_path.split("/")
    return tuple((1, part) for part in parts[:-1]) + ((0, parts[-1]),)


@dataclasses.dataclass
class TextSnapshot:
    """
    Text of the project's files at one moment.

    `skipped` holds files that were listed but not captured (too large or
    binary). When `truncated`, `cutoff` is the last listed path and nothing
    after it in walk order was looked at.
    """

    root: Path
    files: Dict[str, str]
    truncated: bool = False
    skipped: FrozenSet[str] = frozenset()
    cutoff: Optional[str] = None

    def get(self, rel_path: str) -> Optional[str]:
        return self.files.get(rel_path)

    def covers(self, rel_path: str) -> bool:
        """True when `rel_path` was within reach of the file listing."""
        if not self.truncated or self.cutoff is None:
            return True
        return walk_order_key(rel_path) <= walk_order_key(self.cutoff)

    def knows_absent(self, rel_path: str) -> bool:
        """True only when `rel_path` was looked for and did not exist."""
        return (
            rel_path not in self.files
            and rel_path not in self.skipped
            and self.covers(rel_path)
        )

    def __len__(self) -> int:
        return len(self.files)


def _looks_like_secret_path(path: Path) -> bool:
    name = path.name
    if name in _SECRET_BASENAMES:
        return True
    if name.startswith(".env."):
        return True
    return path.suffix.lower() in _SECRET_EXTS


def is_probably_binary(blob: bytes) -> bool:
    if b"\x00" in blob:
        return True
    # Heuristic: lots of control chars.
    sample = blob[:2048]
    if not sample:
        return False
    control = sum(1 for b in sample if b < 9 or (13 < b < 32))
    return (control / len(sample)) > 0.3


def iter_project_files(root: Path, *, max_files: int = 5000) -> List[str]:
    """Repository-relative paths of regular, non-ignored files, sorted per directory."""
    out: List[str] = []
    for current, dirs, files in os.walk(root):
        rel_root = os.path.relpath(current, root)
        if rel_root == ".":
            rel_root = ""
        dirs[:] = [d for d in sorted(dirs) if d not in _DEFAULT_IGNORED_DIRS]
        for name in sorted(files):
            rel = f"{rel_root}/{name}" if rel_root else name
            rel = rel.replace(os.sep, "/")
            if _looks_like_secret_path(Path(rel)):
                continue
            full = Path(current) / name
            if full.is_symlink() or not full.is_file():
                continue
            out.append(rel)
            if len(out) >= max_files:
                return out
    return out


def read_text_file(path: Path, *, max_bytes: int) -> Optional[str]:
    """Text content of `path`, or None for oversized, binary or unreadable files."""
    try:
        if path.stat().st_size > max_bytes:
            return None
        blob = path.read_bytes()
    except OSError:
        return None
    if is_probably_binary(blob):
        return None
    return blob.decode("utf-8", errors="replace")


def capture_snapshot(
    root: Path, limits: Optional[SnapshotLimits] = None
) -> TextSnapshot:
    limits = limits or SnapshotLimits()
    root = Path(root)
    paths = iter_project_files(root, max_files=limits.max_files)
    files: Dict[str, str] = {}
    skipped = set()
    for rel in paths:
        text = read_text_file(root / rel, max_bytes=limits.max_file_bytes)
        if text is None:
            skipped.add(rel)
        else:
            files[rel] = text
    truncated = len(paths) >= limits.max_files
    snapshot = TextSnapshot(
        root=root,
        files=files,
        truncated=truncated,
        skipped=frozenset(skipped),
        cutoff=paths[-1] if truncated and paths else None,
    )
    log_event(
        _logger,
        logging.INFO,
        "snapshot.captured",
        root=str(root),
        files=len(files),
        skipped=len(skipped),
        truncated=snapshot.truncated,
    )
    return snapshot
