"""Typed response variants carried by the ``<response type="...">`` envelope."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class ResponseKind(str, Enum):
    """Envelope ``type`` attribute values."""

    THOUGHT = "thought"
    TOOL = "tool"
    CHAT = "chat"
    FINAL = "final"
    OBSERVATION = "observation"
    EDIT = "edit"
    COMPOSE = "compose"
    SYNC = "sync"
    FEEDBACK = "feedback"
    ERROR = "error"


ChangeType = Literal["insert", "update", "delete"]
CHANGE_TYPES: tuple[str, ...] = ("insert", "update", "delete")


@dataclass(frozen=True)
class Thought:
    content: str
    kind: Literal[ResponseKind.THOUGHT] = field(default=ResponseKind.THOUGHT, init=False)


@dataclass(frozen=True)
class Chat:
    content: str
    kind: Literal[ResponseKind.CHAT] = field(default=ResponseKind.CHAT, init=False)


@dataclass(frozen=True)
class Final:
    content: str
    kind: Literal[ResponseKind.FINAL] = field(default=ResponseKind.FINAL, init=False)


@dataclass(frozen=True)
class Observation:
    content: str
    kind: Literal[ResponseKind.OBSERVATION] = field(default=ResponseKind.OBSERVATION, init=False)


@dataclass(frozen=True)
class Feedback:
    content: str
    kind: Literal[ResponseKind.FEEDBACK] = field(default=ResponseKind.FEEDBACK, init=False)


@dataclass(frozen=True)
class ErrorResponse:
    content: str
    kind: Literal[ResponseKind.ERROR] = field(default=ResponseKind.ERROR, init=False)


@dataclass(frozen=True)
class ToolCall:
    """Model request to run one tool."""

    tool_name: str
    arguments: dict[str, Any]
    rationale: str = ""
    kind: Literal[ResponseKind.TOOL] = field(default=ResponseKind.TOOL, init=False)


@dataclass(frozen=True)
class Change:
    """One ordered change record inside an ``edit`` response."""

    change_type: ChangeType
    location: str
    content: str


@dataclass(frozen=True)
class Edit:
    target_file: str
    changes: tuple[Change, ...]
    kind: Literal[ResponseKind.EDIT] = field(default=ResponseKind.EDIT, init=False)


@dataclass(frozen=True)
class Compose:
    path: str
    content: str
    kind: Literal[ResponseKind.COMPOSE] = field(default=ResponseKind.COMPOSE, init=False)


@dataclass(frozen=True)
class Sync:
    path: str
    content: str
    kind: Literal[ResponseKind.SYNC] = field(default=ResponseKind.SYNC, init=False)


ParsedResponse = (
    Thought
    | ToolCall
    | Chat
    | Final
    | Observation
    | Edit
    | Compose
    | Sync
    | Feedback
    | ErrorResponse
)

TextResponse = Thought | Chat | Final | Observation | Feedback | ErrorResponse

TEXT_KINDS: dict[ResponseKind, type[TextResponse]] = {
    ResponseKind.THOUGHT: Thought,
    ResponseKind.CHAT: Chat,
    ResponseKind.FINAL: Final,
    ResponseKind.OBSERVATION: Observation,
    ResponseKind.FEEDBACK: Feedback,
    ResponseKind.ERROR: ErrorResponse,
}
