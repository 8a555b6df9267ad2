import asyncio
import collections
import dataclasses
import enum
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

from .changes import ChangeReport, compute_change_report
from .codex_cli import resolve_codex_executable
from .config import EngineConfig
from .errors import CodexIntelError, EngineError
from .events import AgentEvent
from .logging_utils import log_event, release_logger, setup_rotating_logger
from .process import ProcessExecutor
from .prompt import ChatMessage, MessageRole, build_prompt_with_history
from .session import (
    Session,
    SessionKey,
    SessionState,
    SessionStateMachine,
    TurnOutcome,
)
from .snapshot import SnapshotLimits, TextSnapshot, capture_snapshot
from .stale_session import StaleSessionDetector, build_detector

ACTIVITY_LOG_LIMIT = 500

ActivityListener = Callable[[str], None]


class EngineStatus(str, enum.Enum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    RUNNING = "running"
    DIFFING = "diffing"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class TurnReport:
    response: str
    failed: bool
    exit_code: int
    change_report: ChangeReport
    retried: bool = False
    session_id: Optional[str] = None
    failure_message: Optional[str] = None


class TurnEngine:
    """
    Runs one prompt at a time against the agent for a single project and keeps
    the conversation, activity feed and session between turns.
    """

    def __init__(
        self,
        project_path: Optional[Union[str, Path]],
        config: EngineConfig,
        *,
        executor: Optional[ProcessExecutor] = None,
        detector: Optional[StaleSessionDetector] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.project_path = Path(project_path) if project_path else None
        self.config = config
        self._logger_name = None if logger else f"codex-intel[{config.root}]"
        self._logger = logger or setup_rotating_logger(self._logger_name, config.log)
        self._executor = executor or ProcessExecutor(logger=self._logger)
        self._detector = detector or build_detector(config.session_stale_phrases)
        self._clock = clock
        self._machine: Optional[SessionStateMachine] = None
        self._history: List[ChatMessage] = []
        self._activity: Deque[str] = collections.deque(maxlen=ACTIVITY_LOG_LIMIT)
        self._activity_listeners: List[ActivityListener] = []
        self._status = EngineStatus.IDLE
        self._busy = False
        self._stop_requested = False

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def activity(self) -> List[str]:
        return list(self._activity)

    @property
    def history(self) -> List[ChatMessage]:
        return list(self._history)

    @property
    def session(self) -> Optional[Session]:
        return self._machine.session if self._machine else None

    @property
    def busy(self) -> bool:
        return self._busy

    def add_activity_listener(self, listener: ActivityListener) -> None:
        self._activity_listeners.append(listener)

    def record_activity(self, message: str, *, level: int = logging.INFO) -> str:
        line = f"[{self._clock().strftime('%H:%M:%S')}] {message}"
        self._activity.append(line)
        log_event(self._logger, level, "engine.activity", message=message)
        for listener in list(self._activity_listeners):
            try:
                listener(line)
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "engine.activity_listener.failed", exc=exc
                )
        return line

    def _set_status(self, status: EngineStatus) -> None:
        if status == self._status:
            return
        log_event(
            self._logger,
            logging.INFO,
            "engine.status",
            previous=self._status.value,
            status=status.value,
        )
        self._status = status

    def _session_key(self, executable: str) -> SessionKey:
        assert self.project_path is not None
        return SessionKey(
            project_path=str(self.project_path),
            model=self.config.codex_model,
            reasoning_effort=self.config.codex_reasoning_effort,
            executable=executable,
        )

    def _ensure_machine(self, executable: str) -> SessionStateMachine:
        key = self._session_key(executable)
        if self._machine is None:
            self._machine = SessionStateMachine(
                key,
                executor=self._executor,
                detector=self._detector,
                extra_args=self.config.codex_extra_args,
                logger=self._logger,
            )
            self._machine.add_listener(self._on_transition)
        elif self._machine.ensure_session(key):
            self.record_activity("Session settings changed; starting a new session")
        return self._machine

    def _on_transition(self, session: Session, previous: SessionState, reason: str) -> None:
        if session.state == SessionState.ACTIVE and previous != SessionState.ACTIVE:
            self.record_activity(f"Session ready: {session.session_id}")
        elif session.state == SessionState.START_FAILED:
            self.record_activity("Session failed to start", level=logging.WARNING)
        elif reason == "stale_session":
            self.record_activity(
                "Session expired; retrying with a fresh session", level=logging.WARNING
            )

    def _on_event(self, event: AgentEvent) -> None:
        if event.warning:
            log_event(
                self._logger,
                logging.WARNING,
                "agent.diagnostic",
                source=event.source.value,
                text=event.text,
            )
        if event.activity:
            self.record_activity(
                event.activity, level=logging.WARNING if event.warning else logging.INFO
            )

    def compose_prompt(self, prompt: str) -> str:
        if not self._history:
            return prompt
        return build_prompt_with_history(
            prompt,
            self._history,
            max_messages=self.config.history_max_messages,
            max_chars=self.config.history_max_chars,
        )

    def _snapshot_limits(self) -> SnapshotLimits:
        return SnapshotLimits(
            max_file_bytes=self.config.changes_max_file_bytes,
            max_files=self.config.changes_max_files,
        )

    async def _capture_snapshot(self) -> Optional[TextSnapshot]:
        assert self.project_path is not None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, capture_snapshot, self.project_path, self._snapshot_limits()
            )
        except OSError as exc:
            log_event(self._logger, logging.WARNING, "engine.snapshot.failed", exc=exc)
            return None

    async def bootstrap(self) -> Optional[TurnOutcome]:
        """Start a session ahead of the first prompt; no-op when one is active."""
        if self.project_path is None:
            raise EngineError("No project selected")
        executable = resolve_codex_executable(self.config.codex_binary, logger=self._logger)
        machine = self._ensure_machine(executable)
        if machine.session.is_active:
            return None
        self._set_status(EngineStatus.BOOTSTRAPPING)
        self.record_activity("Starting Codex session")
        outcome = await machine.bootstrap(self._on_event)
        if outcome is not None and outcome.failed:
            self.record_activity(
                f"Bootstrap failed: {outcome.failure_message}", level=logging.WARNING
            )
        return outcome

    async def send(self, prompt: str) -> TurnReport:
        if self.project_path is None:
            raise EngineError("No project selected")
        text = (prompt or "").strip()
        if not text:
            raise EngineError("Prompt is empty")
        if self._busy:
            raise EngineError("A turn is already running")
        self._busy = True
        self._stop_requested = False
        try:
            return await self._send(text)
        except CodexIntelError as exc:
            self._set_status(EngineStatus.FAILED)
            self.record_activity(f"Error: {exc}", level=logging.ERROR)
            raise
        finally:
            self._busy = False

    def _stopped_report(self, exit_code: int) -> TurnReport:
        message = "Stopped before the turn started"
        self.record_activity(message, level=logging.WARNING)
        self._set_status(EngineStatus.FAILED)
        return TurnReport(
            response="",
            failed=True,
            exit_code=exit_code,
            change_report=ChangeReport(),
            session_id=self.session.session_id if self.session else None,
            failure_message=message,
        )

    async def _send(self, prompt: str) -> TurnReport:
        boot_exit = -1
        if self.config.session_bootstrap:
            boot = await self.bootstrap()
            if boot is not None:
                boot_exit = boot.result.exit_code
        if self._stop_requested:
            return self._stopped_report(boot_exit)
        executable = resolve_codex_executable(self.config.codex_binary, logger=self._logger)
        machine = self._ensure_machine(executable)
        composed = self.compose_prompt(prompt)

        prior = await self._capture_snapshot()
        if self._stop_requested:
            return self._stopped_report(boot_exit)
        self._history.append(ChatMessage(MessageRole.USER, prompt))
        self._set_status(EngineStatus.RUNNING)
        self.record_activity("Running Codex")
        outcome = await machine.run_turn(composed, self._on_event)
        if outcome.retried:
            log_event(
                self._logger,
                logging.INFO,
                "engine.turn.retried",
                failed=outcome.failed,
                session_id=outcome.session_id,
            )

        self._set_status(EngineStatus.DIFFING)
        report = await compute_change_report(
            self.project_path,
            prior,
            executor=self._executor,
            max_preview_lines=self.config.changes_max_preview_lines,
            snapshot_limits=self._snapshot_limits(),
            logger=self._logger,
        )
        if not report.is_empty:
            self.record_activity(report.summary_text())

        if outcome.failed:
            message = outcome.failure_message or "(no error details)"
            self._history.append(ChatMessage(MessageRole.SYSTEM, message))
            self.record_activity(
                f"Codex exited with code {outcome.result.exit_code}: {message}",
                level=logging.WARNING,
            )
            self._set_status(EngineStatus.FAILED)
        else:
            self._history.append(ChatMessage(MessageRole.ASSISTANT, outcome.response))
            self.record_activity("Turn completed")
            self._set_status(EngineStatus.IDLE)

        return TurnReport(
            response=outcome.response,
            failed=outcome.failed,
            exit_code=outcome.result.exit_code,
            change_report=report,
            retried=outcome.retried,
            session_id=machine.session.session_id,
            failure_message=outcome.failure_message,
        )

    def stop(self) -> int:
        """Terminate running processes; a turn in flight starts no new ones."""
        if self._busy:
            self._stop_requested = True
            if self._machine is not None:
                self._machine.cancel()
        signalled = self._executor.cancel_all()
        if signalled:
            self.record_activity(f"Stopped {signalled} running process(es)")
        return signalled

    def reset_session(self) -> None:
        if self._machine is not None:
            self._machine.reset("user")
        self._history.clear()

    def close(self) -> None:
        if self._logger_name:
            release_logger(self._logger_name)
