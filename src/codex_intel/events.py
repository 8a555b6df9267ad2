"""Decoding of the agent's newline-delimited JSON event stream."""

from __future__ import annotations

import dataclasses
import enum
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from .process import StreamSource
from .stale_session import DEFAULT_DETECTOR, StaleSessionDetector

TEXT_KEYS: Sequence[str] = (
    "text",
    "content",
    "message",
    "summary",
    "output",
    "aggregated_output",
    "delta",
    "value",
)

TOOL_ITEM_TYPES = {
    "command_execution",
    "mcp_tool_call",
    "file_change",
    "web_search",
    "function_call",
    "tool_call",
}

_WARNING_RE = re.compile(
    r"\b(error|errors|warn|warning|fail|failed|failure|denied|fatal|panic)\b|not found",
    re.IGNORECASE,
)


class AgentEventKind(str, enum.Enum):
    THREAD_STARTED = "thread_started"
    TURN_STARTED = "turn_started"
    TURN_COMPLETED = "turn_completed"
    TURN_FAILED = "turn_failed"
    OUTPUT_TEXT_DELTA = "output_text_delta"
    MESSAGE = "message"
    TOOL_EVENT = "tool_event"
    ERROR_EVENT = "error_event"
    OTHER = "other"
    DIAGNOSTIC = "diagnostic"


@dataclasses.dataclass(frozen=True)
class AgentEvent:
    kind: AgentEventKind
    source: StreamSource
    raw: str
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    text: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    message: Optional[str] = None
    activity: Optional[str] = None
    stale_session: bool = False
    warning: bool = False


def flatten_strings(value: Any, *, keys: Optional[Sequence[str]] = TEXT_KEYS) -> List[str]:
    """
    Collect every non-blank string reachable from a decoded JSON value.

    Objects are walked through `keys` in order (all values when `keys` is
    None); lists are walked in order; null, booleans and numbers carry no text.
    """
    if value is None or isinstance(value, bool) or isinstance(value, (int, float)):
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        out: List[str] = []
        for item in value:
            out.extend(flatten_strings(item, keys=keys))
        return out
    if isinstance(value, dict):
        out = []
        children = (
            list(value.values())
            if keys is None
            else [value[key] for key in keys if key in value]
        )
        for child in children:
            out.extend(flatten_strings(child, keys=keys))
        return out
    return []


def joined_text(value: Any) -> str:
    return "\n".join(part.strip("\n") for part in flatten_strings(value)).strip()


def decode_json_object(line: str) -> Optional[Dict[str, Any]]:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def is_warning_text(line: str) -> bool:
    return bool(line) and _WARNING_RE.search(line) is not None


def _str_field(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _item_payload(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    item = payload.get("item")
    return item if isinstance(item, dict) else None


def _is_assistant_message(item: Dict[str, Any]) -> bool:
    role = item.get("role")
    if isinstance(role, str) and role:
        return role == "assistant"
    return item.get("type") in ("message", "agent_message")


def _error_message(payload: Dict[str, Any]) -> Optional[str]:
    error = payload.get("error")
    if isinstance(error, dict):
        message = _str_field(error, "message")
        if message:
            return message
    if isinstance(error, str) and error.strip():
        return error.strip()
    return _str_field(payload, "message")


def _tool_name(item: Optional[Dict[str, Any]]) -> Optional[str]:
    if not item:
        return None
    name = _str_field(item, "tool_name") or _str_field(item, "tool")
    if name:
        return name
    if item.get("type") in TOOL_ITEM_TYPES:
        return str(item.get("type"))
    return None


def summarize_payload(payload: Dict[str, Any]) -> Optional[str]:
    """First human-readable description of a generic event."""
    message = _str_field(payload, "message")
    if message:
        return message
    item = _item_payload(payload)
    command = _str_field(payload, "command") or (item and _str_field(item, "command"))
    if command:
        return f"Running: {command}"
    if item:
        tool = _str_field(item, "tool_name")
        if tool:
            return f"Tool: {tool}"
    for candidate in flatten_strings(item if item is not None else payload):
        cleaned = " ".join(candidate.split())
        if cleaned:
            return cleaned
    return None


def classify(
    line: str,
    source: StreamSource = StreamSource.STDOUT,
    *,
    detector: StaleSessionDetector = DEFAULT_DETECTOR,
) -> Optional[AgentEvent]:
    """Turn one output line into an AgentEvent; blank lines yield None."""
    if not line or not line.strip():
        return None
    payload = decode_json_object(line)
    if payload is None:
        return _diagnostic(line, source, detector)

    event_type = payload.get("type")
    event_type = event_type if isinstance(event_type, str) else ""
    common = {"source": source, "raw": line, "event_type": event_type or None}

    if event_type == "thread.started":
        thread_id = _str_field(payload, "thread_id")
        return AgentEvent(
            AgentEventKind.THREAD_STARTED,
            session_id=thread_id,
            activity=f"Session started: {thread_id}" if thread_id else "Session started",
            **common,
        )
    if event_type == "turn.started":
        return AgentEvent(AgentEventKind.TURN_STARTED, activity="Turn started", **common)
    if event_type == "turn.completed":
        return AgentEvent(
            AgentEventKind.TURN_COMPLETED, activity="Turn completed", **common
        )
    if event_type == "turn.failed":
        message = _error_message(payload)
        return AgentEvent(
            AgentEventKind.TURN_FAILED,
            message=message,
            activity=f"Turn failed: {message}" if message else "Turn failed",
            stale_session=bool(message) and detector.matches(message or ""),
            warning=True,
            **common,
        )
    if event_type == "error":
        message = _error_message(payload) or "unknown error"
        return AgentEvent(
            AgentEventKind.ERROR_EVENT,
            message=message,
            activity=f"Error: {message}",
            stale_session=detector.matches(message),
            warning=True,
            **common,
        )
    if "delta" in event_type:
        delta = payload.get("delta")
        text = delta if isinstance(delta, str) else joined_text(delta or payload.get("text"))
        return AgentEvent(AgentEventKind.OUTPUT_TEXT_DELTA, text=text or "", **common)

    item = _item_payload(payload)
    activity = summarize_payload(payload) or event_type or None
    if item is not None and _is_assistant_message(item):
        text = joined_text(item.get("content")) or joined_text(item.get("text"))
        if text:
            return AgentEvent(
                AgentEventKind.MESSAGE,
                role=str(item.get("role") or "assistant"),
                text=text,
                activity=activity,
                **common,
            )
    tool = _tool_name(item)
    if tool:
        return AgentEvent(AgentEventKind.TOOL_EVENT, name=tool, activity=activity, **common)
    return AgentEvent(AgentEventKind.OTHER, activity=activity, **common)


def _diagnostic(
    line: str, source: StreamSource, detector: StaleSessionDetector
) -> AgentEvent:
    text = line.rstrip()
    prefix = "stderr: " if source == StreamSource.STDERR else ""
    return AgentEvent(
        AgentEventKind.DIAGNOSTIC,
        source=source,
        raw=line,
        text=text,
        activity=f"{prefix}{text.strip()}",
        stale_session=detector.matches(text),
        warning=is_warning_text(text),
    )


class ResponseAccumulator:
    """Collects assistant text over a turn and resolves the final reply."""

    def __init__(self) -> None:
        self._delta: str = ""
        self._messages: List[str] = []
        self._stale_session_seen = False
        self._session_id: Optional[str] = None

    @property
    def delta_text(self) -> str:
        return self._delta

    @property
    def messages(self) -> List[str]:
        return list(self._messages)

    @property
    def stale_session_seen(self) -> bool:
        return self._stale_session_seen

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def feed(self, event: AgentEvent) -> None:
        if event.stale_session:
            self._stale_session_seen = True
        if event.kind == AgentEventKind.THREAD_STARTED and event.session_id:
            self._session_id = event.session_id
        elif event.kind == AgentEventKind.OUTPUT_TEXT_DELTA and event.text:
            self._delta += event.text
        elif event.kind == AgentEventKind.MESSAGE and event.text:
            if (event.role or "assistant") == "assistant":
                self._messages.append(event.text)

    def resolve(self, fallback: str = "") -> str:
        if self._messages:
            last = self._messages[-1].strip()
            if last:
                return last
        delta = self._delta.strip()
        if delta:
            return delta
        return fallback

    def reset(self) -> None:
        self._delta = ""
        self._messages.clear()
        self._stale_session_seen = False
        self._session_id = None
