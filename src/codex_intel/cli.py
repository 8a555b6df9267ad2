import asyncio
import json
from pathlib import Path
from typing import NoReturn, Optional

from dotenv import load_dotenv
import typer

load_dotenv()

from .changes import compute_change_report
from .codex_cli import resolve_codex_executable
from .config import CONFIG_FILENAME, ConfigError, EngineConfig, load_config
from .engine import TurnEngine
from .errors import CodexIntelError
from .process import ProcessExecutor, ProcessSpec
from .snapshot import SnapshotLimits

app = typer.Typer(add_completion=False)


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _require_config(project: Optional[Path]) -> EngineConfig:
    try:
        return load_config(project or Path.cwd())
    except ConfigError as exc:
        _fail(str(exc))


def _project_root(project: Optional[Path]) -> Path:
    root = (project or Path.cwd()).resolve()
    if not root.is_dir():
        _fail(f"Project directory not found: {root}")
    return root


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Prompt to send to Codex"),
    project: Optional[Path] = typer.Option(
        None, "--project", help="Project directory; defaults to CWD"
    ),
    model: Optional[str] = typer.Option(None, "--model", help="Override codex.model"),
    effort: Optional[str] = typer.Option(
        None, "--effort", help="Override codex.reasoning_effort"
    ),
    codex: Optional[str] = typer.Option(
        None, "--codex", help="Path to the Codex binary"
    ),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
):
    """Run one Codex turn in the project and summarize what changed."""
    root = _project_root(project)
    config = _require_config(root)
    try:
        config = config.with_overrides(model=model, reasoning_effort=effort, binary=codex)
    except ConfigError as exc:
        _fail(str(exc))
    engine = TurnEngine(root, config)
    if not output_json:
        engine.add_activity_listener(typer.echo)
    try:
        report = asyncio.run(engine.send(prompt))
    except KeyboardInterrupt:
        engine.stop()
        raise typer.Exit(code=130)
    except CodexIntelError as exc:
        _fail(str(exc))
    finally:
        engine.close()

    if output_json:
        payload = {
            "response": report.response,
            "failed": report.failed,
            "exit_code": report.exit_code,
            "retried": report.retried,
            "session_id": report.session_id,
            "failure_message": report.failure_message,
            "changes": report.change_report.to_dict(),
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        typer.echo("")
        typer.echo(report.failure_message if report.failed else report.response)
    if report.failed:
        raise typer.Exit(code=report.exit_code or 1)


@app.command()
def changes(
    project: Optional[Path] = typer.Option(
        None, "--project", help="Project directory; defaults to CWD"
    ),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
):
    """Summarize uncommitted changes in the project."""
    root = _project_root(project)
    config = _require_config(root)
    report = asyncio.run(
        compute_change_report(
            root,
            max_preview_lines=config.changes_max_preview_lines,
            snapshot_limits=SnapshotLimits(
                max_file_bytes=config.changes_max_file_bytes,
                max_files=config.changes_max_files,
            ),
        )
    )
    if output_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    typer.echo(report.summary_text(max_lines=config.changes_max_preview_lines))


@app.command()
def doctor(
    project: Optional[Path] = typer.Option(
        None, "--project", help="Project directory; defaults to CWD"
    ),
):
    """Validate config and locate the Codex binary."""
    root = _project_root(project)
    config = _require_config(root)
    config_path = config.root / CONFIG_FILENAME
    typer.echo(f"Project: {root}")
    typer.echo(
        f"Config: {config_path if config_path.exists() else '(defaults)'}"
    )
    typer.echo(f"Model: {config.codex_model}")
    typer.echo(f"Reasoning effort: {config.codex_reasoning_effort}")
    try:
        executable = resolve_codex_executable(config.codex_binary)
        typer.echo(f"Codex: {executable}")
        result = asyncio.run(
            ProcessExecutor().run_batch(ProcessSpec(executable, ["--version"]))
        )
    except CodexIntelError as exc:
        _fail(str(exc))
    version = (result.stdout or result.stderr).strip()
    if result.exit_code != 0:
        _fail(f"Codex did not run: {version or result.exit_code}")
    typer.echo(f"Version: {version or '(unknown)'}")
    typer.echo("Doctor check passed")
