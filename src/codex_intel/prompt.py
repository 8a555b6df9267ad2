import dataclasses
import enum
from datetime import datetime, timezone
from typing import Sequence

from .utils import clip_text

BOOTSTRAP_ACK = "READY"

BOOTSTRAP_PROMPT = (
    "You are being connected to a project workspace for an ongoing coding "
    "session. Do not modify, create or delete any files and do not run any "
    f"commands. Reply with exactly {BOOTSTRAP_ACK} and nothing else."
)

HISTORY_PROMPT_TEMPLATE = """Continue this coding conversation. Keep the response concise and action-focused.
Recent conversation:
{history}

Latest user request:
{prompt}"""


class MessageRole(str, enum.Enum):
    USER = "User"
    ASSISTANT = "Codex"
    SYSTEM = "System"


@dataclasses.dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str
    timestamp: datetime = dataclasses.field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


def build_prompt_with_history(
    prompt: str,
    history: Sequence[ChatMessage],
    *,
    max_messages: int = 8,
    max_chars: int = 700,
) -> str:
    recent = list(history)[-max_messages:] if max_messages > 0 else []
    lines = [
        f"{message.role.value}: {clip_text(message.content, max_chars)}"
        for message in recent
    ]
    return HISTORY_PROMPT_TEMPLATE.format(history="\n".join(lines), prompt=prompt)
