from pathlib import Path
from typing import List, Optional, Sequence

from .errors import CodexIntelError
from .process import ProcessExecutor, ProcessResult, ProcessSpec

GIT_BINARY = "git"


class GitError(CodexIntelError):
    def __init__(self, args: Sequence[str], result: ProcessResult) -> None:
        detail = (result.stderr or result.stdout or "").strip()
        super().__init__(
            f"git {' '.join(args)} exited {result.exit_code}: {detail or 'no output'}"
        )
        self.result = result


async def run_git(
    executor: ProcessExecutor,
    repo_root: Path,
    args: Sequence[str],
    *,
    check: bool = True,
) -> ProcessResult:
    spec = ProcessSpec(
        program=GIT_BINARY,
        arguments=["-c", "core.quotepath=off", *args],
        working_directory=str(repo_root),
    )
    result = await executor.run_batch(spec)
    if check and result.exit_code != 0:
        raise GitError(args, result)
    return result


async def git_available(executor: ProcessExecutor, repo_root: Path) -> bool:
    result = await run_git(
        executor, repo_root, ["rev-parse", "--is-inside-work-tree"], check=False
    )
    return result.exit_code == 0 and result.stdout.strip() == "true"


async def git_head_sha(executor: ProcessExecutor, repo_root: Path) -> Optional[str]:
    result = await run_git(
        executor, repo_root, ["rev-parse", "--verify", "--quiet", "HEAD"], check=False
    )
    sha = result.stdout.strip()
    return sha if result.exit_code == 0 and sha else None


async def git_diff_numstat(
    executor: ProcessExecutor, repo_root: Path, *refs: str
) -> str:
    result = await run_git(executor, repo_root, ["diff", "--numstat", *refs])
    return result.stdout


async def git_diff_patch(executor: ProcessExecutor, repo_root: Path, *refs: str) -> str:
    result = await run_git(
        executor,
        repo_root,
        ["diff", "--unified=0", "--no-color", "--no-ext-diff", *refs],
    )
    return result.stdout


async def git_untracked_files(executor: ProcessExecutor, repo_root: Path) -> List[str]:
    result = await run_git(
        executor, repo_root, ["ls-files", "--others", "--exclude-standard", "-z"]
    )
    return [entry for entry in result.stdout.split("\0") if entry]
