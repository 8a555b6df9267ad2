import os
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

_FALLBACK_PATH = "/usr/bin:/bin:/usr/sbin:/sbin"


def known_install_dirs(home: Optional[Path] = None) -> List[str]:
    """
    GUI launchers and daemons often hand child processes a minimal PATH that
    excludes app bundles and Homebrew locations.
    """
    home = home or Path.home()
    return [
        "/Applications/Codex.app/Contents/Resources",
        "/Applications/Codex.app/Contents/MacOS",
        str(home / "Applications" / "Codex.app" / "Contents" / "Resources"),
        str(home / "Applications" / "Codex.app" / "Contents" / "MacOS"),
        "/opt/homebrew/bin",  # Apple Silicon Homebrew
        "/usr/local/bin",  # Intel Homebrew + common user installs
        "/usr/bin",
        "/bin",
        "/usr/sbin",
        "/sbin",
    ]


def dedupe_path_entries(entries: Iterable[str]) -> List[str]:
    merged: List[str] = []
    seen = set()
    for entry in entries:
        cleaned = (entry or "").strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        merged.append(cleaned)
    return merged


def augmented_path(
    path: Optional[str] = None,
    *,
    extra_dirs: Sequence[str] = (),
    home: Optional[Path] = None,
) -> str:
    existing = (path or _FALLBACK_PATH).split(os.pathsep)
    merged = dedupe_path_entries(
        list(extra_dirs) + existing + known_install_dirs(home)
    )
    return os.pathsep.join(merged)


def enriched_environment(
    extra_dirs: Sequence[str] = (),
    base_env: Optional[Mapping[str, str]] = None,
    *,
    home: Optional[Path] = None,
) -> Dict[str, str]:
    env = dict(base_env) if base_env is not None else dict(os.environ)
    env["PATH"] = augmented_path(env.get("PATH"), extra_dirs=extra_dirs, home=home)
    return env


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(str(path), os.X_OK)


def resolve_executable(
    binary: str, *, env: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Resolve an executable path in a way that's resilient to minimal PATHs.
    Returns an absolute path if found, else None.
    """
    if not binary:
        return None
    if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
        candidate = Path(binary).expanduser()
        if is_executable_file(candidate):
            return str(candidate)
        return None

    resolved = shutil.which(binary)
    if resolved:
        return resolved
    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    return shutil.which(binary, path=augmented_path(path))


def shell_quote(value: str) -> str:
    if not value:
        return "''"
    escaped = value.replace("'", "'\"'\"'")
    return f"'{escaped}'"


def render_command(program: str, arguments: Sequence[str]) -> str:
    return " ".join(shell_quote(part) for part in [program, *arguments])


def command_preview(command: str, limit: int = 180) -> str:
    compact = " ".join(command.split())
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."


def clip_text(text: str, limit: int) -> str:
    normalized = " ".join((text or "").replace("\n", " ").split())
    if len(normalized) > limit:
        return normalized[:limit] + "..."
    return normalized
