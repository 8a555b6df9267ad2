import logging
import os
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from .errors import CodexNotFoundError
from .logging_utils import log_event
from .utils import dedupe_path_entries, is_executable_file, resolve_executable

SUBCOMMAND_HINTS = ("exec", "resume")
CODEX_BINARY_NAMES = (
    "codex",
    "codex-x86_64-apple-darwin",
    "codex-aarch64-apple-darwin",
)
EXEC_BASE_ARGS = ("exec", "--skip-git-repo-check", "--json")
REASONING_CONFIG_KEY = "model_reasoning_effort"

_logger = logging.getLogger(__name__)


def extract_flag_value(args: Iterable[str], flag: str) -> Optional[str]:
    args_list = [str(a) for a in args]
    for arg in args_list:
        if arg.startswith(f"{flag}="):
            return arg.split("=", 1)[1] or None
    for idx, arg in enumerate(args_list):
        if arg == flag and idx + 1 < len(args_list):
            return args_list[idx + 1]
    return None


def strip_flag(args: Iterable[str], flag: str) -> List[str]:
    cleaned: List[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        arg_str = str(arg)
        if arg_str == flag:
            skip_next = True
            continue
        if arg_str.startswith(f"{flag}="):
            continue
        cleaned.append(arg_str)
    return cleaned


def strip_config_override(args: Iterable[str], key: str) -> List[str]:
    """Drop `-c key=value` pairs for one config key."""
    cleaned: List[str] = []
    args_list = [str(a) for a in args]
    idx = 0
    while idx < len(args_list):
        arg = args_list[idx]
        if arg in ("-c", "--config") and idx + 1 < len(args_list):
            if args_list[idx + 1].split("=", 1)[0].strip() == key:
                idx += 2
                continue
        cleaned.append(arg)
        idx += 1
    return cleaned


def _subcommand_insert_index(
    args_list: List[str], subcommands: Iterable[str] = SUBCOMMAND_HINTS
) -> Optional[int]:
    for cmd in subcommands:
        if cmd in args_list:
            return args_list.index(cmd) + 1
    return None


def inject_flag(
    args: Iterable[str],
    flag: str,
    value: Optional[str],
    *,
    subcommands: Iterable[str] = SUBCOMMAND_HINTS,
) -> List[str]:
    """Insert `flag value` right after the first known subcommand."""
    args_list = [str(a) for a in args]
    if not value:
        return args_list
    if extract_flag_value(args_list, flag):
        return args_list
    insert_at = _subcommand_insert_index(args_list, subcommands)
    if insert_at is None:
        return [flag, value] + args_list
    return args_list[:insert_at] + [flag, value] + args_list[insert_at:]


def inject_config_override(args: Iterable[str], key: str, value: str) -> List[str]:
    """Replace any `-c key=...` with `-c key="value"` after the subcommand."""
    args_list = strip_config_override(args, key)
    override = ["-c", f'{key}="{value}"']
    insert_at = _subcommand_insert_index(args_list)
    if insert_at is None:
        return override + args_list
    return args_list[:insert_at] + override + args_list[insert_at:]


def apply_codex_options(
    args: Iterable[str],
    *,
    model: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> List[str]:
    """Force the selected model and reasoning effort onto an argument vector."""
    with_model = inject_flag(strip_flag(args, "--model"), "--model", model)
    if not reasoning:
        return with_model
    return inject_config_override(with_model, REASONING_CONFIG_KEY, reasoning)


def build_exec_arguments(
    prompt: str,
    *,
    model: Optional[str],
    reasoning: Optional[str],
    extra_args: Sequence[str] = (),
) -> List[str]:
    args = [*extra_args, *EXEC_BASE_ARGS, prompt]
    return apply_codex_options(args, model=model, reasoning=reasoning)


def build_resume_arguments(
    session_id: str,
    prompt: str,
    *,
    model: Optional[str],
    reasoning: Optional[str],
    extra_args: Sequence[str] = (),
) -> List[str]:
    args = [*extra_args, *EXEC_BASE_ARGS]
    args = apply_codex_options(args, model=model, reasoning=reasoning)
    return args + ["resume", session_id, prompt]


def _fixed_codex_dirs(home: Path) -> List[str]:
    return [
        "/Applications/Codex.app/Contents/Resources",
        "/Applications/Codex.app/Contents/MacOS",
        str(home / "Applications/Codex.app/Contents/Resources"),
        str(home / "Applications/Codex.app/Contents/MacOS"),
        "/usr/local/bin",
        "/opt/homebrew/bin",
        "/usr/bin",
        "/bin",
    ]


def _listdir(path: Path) -> List[str]:
    try:
        return sorted(os.listdir(path))
    except OSError:
        return []


def codex_candidates(
    *,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> List[str]:
    """Every location a Codex binary is commonly installed to, in lookup order."""
    env = env if env is not None else os.environ
    home = home or Path.home()
    directories = _fixed_codex_dirs(home)
    search_path = env.get("PATH") or "/usr/local/bin:/opt/homebrew/bin:/usr/bin:/bin"
    directories.extend(p for p in search_path.split(os.pathsep) if p)
    for cask_root in (Path("/usr/local/Caskroom/codex"), Path("/opt/homebrew/Caskroom/codex")):
        directories.extend(str(cask_root / version) for version in _listdir(cask_root))
    for app_base in (Path("/Applications"), home / "Applications"):
        for entry in _listdir(app_base):
            if "codex" in entry.lower() and entry.endswith(".app"):
                for sub in ("Contents/Resources", "Contents/MacOS"):
                    directories.append(str(app_base / entry / sub))
    candidates = [
        str(Path(directory) / name)
        for directory in directories
        for name in CODEX_BINARY_NAMES
    ]
    return dedupe_path_entries(candidates)


def resolve_codex_executable(
    override: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Locate the Codex binary.

    Order: explicit override path, CODEX_BINARY, then the well-known install
    locations and PATH. Raises CodexNotFoundError when nothing is executable.
    """
    logger = logger or _logger
    env = env if env is not None else os.environ
    if override and override.strip():
        resolved = resolve_executable(override.strip(), env=env)
        if resolved:
            log_event(logger, logging.INFO, "codex.resolve", source="override", path=resolved)
            return resolved
        log_event(logger, logging.WARNING, "codex.resolve.override_unusable", path=override)
    from_env = (env.get("CODEX_BINARY") or "").strip()
    if from_env and is_executable_file(Path(from_env).expanduser()):
        log_event(logger, logging.INFO, "codex.resolve", source="CODEX_BINARY", path=from_env)
        return str(Path(from_env).expanduser())
    candidates = codex_candidates(env=env, home=home)
    for candidate in candidates:
        if is_executable_file(Path(candidate)):
            log_event(logger, logging.INFO, "codex.resolve", source="search", path=candidate)
            return candidate
    log_event(logger, logging.WARNING, "codex.resolve.failed", candidates=len(candidates))
    raise CodexNotFoundError(
        "Codex CLI not found. Install it or set codex.binary / CODEX_BINARY to its path."
    )
