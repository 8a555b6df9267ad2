"""Resumable agent session and the turn retry policy.

A session is identified by the thread id the agent reports in its
`thread.started` event. Turns resume that thread when it exists; otherwise a
fresh execution is started and whatever thread it reports becomes the
session. A turn that fails because the agent no longer knows the thread is
retried exactly once as a fresh execution.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from .codex_cli import build_exec_arguments, build_resume_arguments
from .errors import EngineError
from .events import AgentEvent, ResponseAccumulator, classify
from .logging_utils import log_event
from .process import (
    ProcessExecutor,
    ProcessResult,
    ProcessSpec,
    StreamEvent,
    clean_output,
    failure_text,
)
from .prompt import BOOTSTRAP_PROMPT
from .stale_session import DEFAULT_DETECTOR, StaleSessionDetector

_logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    ACTIVE = "active"
    START_FAILED = "start_failed"


_ALLOWED_TRANSITIONS = {
    SessionState.NOT_STARTED: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.ACTIVE, SessionState.START_FAILED},
    SessionState.ACTIVE: {SessionState.ACTIVE},
    SessionState.START_FAILED: {SessionState.STARTING},
}


@dataclasses.dataclass(frozen=True)
class SessionKey:
    project_path: str
    model: str
    reasoning_effort: str
    executable: str


@dataclasses.dataclass
class Session:
    key: SessionKey
    session_id: Optional[str] = None
    state: SessionState = SessionState.NOT_STARTED

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE and bool(self.session_id)


TransitionListener = Callable[[Session, SessionState, str], None]
EventHandler = Callable[[AgentEvent], Union[None, Awaitable[None]]]


@dataclasses.dataclass(frozen=True)
class TurnOutcome:
    result: ProcessResult
    response: str
    session_id: Optional[str]
    stale_session: bool
    retried: bool = False

    @property
    def failed(self) -> bool:
        return self.result.exit_code != 0

    @property
    def failure_message(self) -> Optional[str]:
        if not self.failed:
            return None
        return failure_text(self.result)


class SessionStateMachine:
    def __init__(
        self,
        key: SessionKey,
        *,
        executor: ProcessExecutor,
        detector: StaleSessionDetector = DEFAULT_DETECTOR,
        extra_args: Sequence[str] = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = Session(key=key)
        self._executor = executor
        self._detector = detector
        self._extra_args = list(extra_args)
        self._logger = logger or _logger
        self._listeners: List[TransitionListener] = []
        self._boot_in_progress = False
        self._boot_done: Optional[asyncio.Event] = None
        self._last_bootstrap: Optional[TurnOutcome] = None
        self._turn_in_progress = False
        self._retry_used = False
        self._cancel_requested = False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def detector(self) -> StaleSessionDetector:
        return self._detector

    @property
    def boot_in_progress(self) -> bool:
        return self._boot_in_progress

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Forbid further runs in the current turn; the next turn clears it."""
        self._cancel_requested = True

    def ensure_session(self, key: SessionKey) -> bool:
        """Adopt `key`; a different model, effort, executable or project resets."""
        if key == self._session.key:
            return False
        changed = [
            field.name
            for field in dataclasses.fields(key)
            if getattr(key, field.name) != getattr(self._session.key, field.name)
        ]
        self._session.key = key
        self.reset(f"changed:{','.join(changed)}")
        return True

    def reset(self, reason: str) -> None:
        previous = self._session.state
        self._session.session_id = None
        self._session.state = SessionState.NOT_STARTED
        log_event(
            self._logger,
            logging.INFO,
            "session.reset",
            reason=reason,
            previous=previous.value,
        )
        self._notify(previous, reason)

    def _transition(self, new_state: SessionState, reason: str) -> None:
        previous = self._session.state
        if new_state not in _ALLOWED_TRANSITIONS[previous]:
            raise EngineError(
                f"Invalid session transition {previous.value} -> {new_state.value}"
            )
        self._session.state = new_state
        log_event(
            self._logger,
            logging.INFO,
            "session.transition",
            previous=previous.value,
            state=new_state.value,
            reason=reason,
            session_id=self._session.session_id,
        )
        self._notify(previous, reason)

    def _activate(self, session_id: str, reason: str) -> None:
        if not session_id:
            raise EngineError("Cannot activate a session without an identity")
        self._session.session_id = session_id
        self._transition(SessionState.ACTIVE, reason)

    def _notify(self, previous: SessionState, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._session, previous, reason)
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "session.listener.failed", exc=exc
                )

    def build_arguments(self, prompt: str) -> List[str]:
        key = self._session.key
        if self._session.session_id:
            return build_resume_arguments(
                self._session.session_id,
                prompt,
                model=key.model,
                reasoning=key.reasoning_effort,
                extra_args=self._extra_args,
            )
        return build_exec_arguments(
            prompt,
            model=key.model,
            reasoning=key.reasoning_effort,
            extra_args=self._extra_args,
        )

    def process_spec(self, arguments: Sequence[str]) -> ProcessSpec:
        key = self._session.key
        return ProcessSpec(
            program=key.executable,
            arguments=arguments,
            working_directory=key.project_path,
        )

    async def bootstrap(
        self, on_event: Optional[EventHandler] = None
    ) -> Optional[TurnOutcome]:
        """
        Start a session with a prompt that must not touch the workspace.

        Returns None when a session is already active. A caller arriving while
        another bootstrap is running waits for it and shares its outcome.
        """
        if self._boot_in_progress and self._boot_done is not None:
            log_event(self._logger, logging.INFO, "session.bootstrap.waiting")
            await self._boot_done.wait()
            return self._last_bootstrap
        if self._session.is_active:
            return None
        self._boot_in_progress = True
        self._boot_done = asyncio.Event()
        try:
            self._transition(SessionState.STARTING, "bootstrap")
            outcome = await self._run(BOOTSTRAP_PROMPT, on_event, resume=False)
            if outcome.failed:
                self._session.session_id = None
                self._transition(SessionState.START_FAILED, "bootstrap_exit")
            elif outcome.session_id:
                self._activate(outcome.session_id, "bootstrap")
            else:
                self.reset("bootstrap_no_thread")
            self._last_bootstrap = outcome
            return outcome
        except BaseException:
            if self._session.state == SessionState.STARTING:
                self._transition(SessionState.START_FAILED, "bootstrap_error")
            raise
        finally:
            self._boot_in_progress = False
            self._boot_done.set()

    def should_retry_with_fresh_session(
        self, result: ProcessResult, observed: bool = False
    ) -> bool:
        """True at most once per turn, for a failed run with a stale-session signature."""
        if self._retry_used or result.exit_code == 0:
            return False
        if not (observed or self._detector.matches(result.combined_text)):
            return False
        self._retry_used = True
        return True

    async def run_turn(
        self, prompt: str, on_event: Optional[EventHandler] = None
    ) -> TurnOutcome:
        if self._turn_in_progress:
            raise EngineError("A turn is already running for this session")
        if self._boot_in_progress and self._boot_done is not None:
            await self._boot_done.wait()
        self._turn_in_progress = True
        self._retry_used = False
        self._cancel_requested = False
        try:
            outcome = await self._run_with_session(prompt, on_event)
            if self._cancel_requested:
                log_event(
                    self._logger,
                    logging.INFO,
                    "session.turn.cancelled",
                    exit_code=outcome.result.exit_code,
                )
                return outcome
            if self.should_retry_with_fresh_session(
                outcome.result, outcome.stale_session
            ):
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session.stale.retry",
                    session_id=self._session.session_id,
                    exit_code=outcome.result.exit_code,
                )
                self.reset("stale_session")
                retry = await self._run_with_session(prompt, on_event)
                outcome = dataclasses.replace(retry, retried=True)
            return outcome
        finally:
            self._turn_in_progress = False

    async def _run_with_session(
        self, prompt: str, on_event: Optional[EventHandler]
    ) -> TurnOutcome:
        resume = bool(self._session.session_id)
        if not resume:
            self._transition(SessionState.STARTING, "turn")
        try:
            outcome = await self._run(prompt, on_event, resume=resume)
        except BaseException:
            if self._session.state == SessionState.STARTING:
                self._transition(SessionState.START_FAILED, "turn_error")
            raise
        if self._session.state == SessionState.STARTING:
            if outcome.session_id:
                self._activate(outcome.session_id, "turn")
            elif outcome.failed:
                self._transition(SessionState.START_FAILED, "turn_exit")
            else:
                self.reset("turn_no_thread")
        elif outcome.session_id and outcome.session_id != self._session.session_id:
            self._activate(outcome.session_id, "thread_changed")
        return outcome

    async def _run(
        self, prompt: str, on_event: Optional[EventHandler], *, resume: bool
    ) -> TurnOutcome:
        if resume:
            arguments = self.build_arguments(prompt)
        else:
            key = self._session.key
            arguments = build_exec_arguments(
                prompt,
                model=key.model,
                reasoning=key.reasoning_effort,
                extra_args=self._extra_args,
            )
        accumulator = ResponseAccumulator()

        async def _on_line(stream_event: StreamEvent) -> None:
            event = classify(
                stream_event.line, stream_event.source, detector=self._detector
            )
            if event is None:
                return
            accumulator.feed(event)
            if on_event is not None:
                outcome = on_event(event)
                if asyncio.iscoroutine(outcome):
                    await outcome

        log_event(
            self._logger,
            logging.INFO,
            "session.run",
            mode="resume" if resume else "exec",
            session_id=self._session.session_id if resume else None,
            prompt_chars=len(prompt),
        )
        result = await self._executor.run_streaming(
            self.process_spec(arguments), _on_line
        )
        return TurnOutcome(
            result=result,
            response=accumulator.resolve(clean_output(result)),
            session_id=accumulator.session_id,
            stale_session=accumulator.stale_session_seen,
        )
