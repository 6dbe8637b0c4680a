"""Session state threaded between agent loop turns.

State is immutable. Every turn receives the previous value and returns a new
one, so a turn that is abandoned part-way (cancellation) leaves the committed
state untouched.
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]
ROLES: tuple[str, ...] = ("system", "user", "assistant")


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class Status(str, Enum):
    CONTINUE = "continue"
    END = "end"


@dataclass(frozen=True)
class ConversationEntry:
    """One message in the append-only conversation."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown conversation role: {self.role}")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationEntry":
        return cls(role=data["role"], content=str(data.get("content", "")))


@dataclass(frozen=True)
class ToolAction:
    """Last tool call the loop executed."""

    tool_name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class SessionState:
    """Everything the session persists across turns."""

    thread_id: str
    conversation: tuple[ConversationEntry, ...] = ()
    iteration_count: int = 0
    status: Status = Status.CONTINUE
    last_action: ToolAction | None = None
    last_observation: str | None = None
    pending_feedback: dict[str, str] = field(default_factory=dict)
    user_confirmed: bool = False
    is_final_answer: bool = False
    created_at: str = field(default_factory=_utcnow_iso, compare=False)

    @property
    def ended(self) -> bool:
        return self.status is Status.END

    def append(self, *entries: ConversationEntry) -> "SessionState":
        """Return a copy with entries appended."""
        return replace(self, conversation=self.conversation + tuple(entries))

    def update(self, **changes: Any) -> "SessionState":
        """Return a copy with fields replaced; conversation may only grow."""
        new_conversation = changes.get("conversation")
        if new_conversation is not None:
            if tuple(new_conversation[: len(self.conversation)]) != self.conversation:
                raise ValueError("Conversation is append-only")
            changes["conversation"] = tuple(new_conversation)
        return replace(self, **changes)

    def begin_exchange(self, user_input: str) -> "SessionState":
        """Re-open the session for a new user input."""
        return replace(
            self,
            conversation=self.conversation + (ConversationEntry("user", user_input),),
            iteration_count=0,
            status=Status.CONTINUE,
            last_action=None,
            last_observation=None,
            user_confirmed=False,
            is_final_answer=False,
        )

    def last_entry(self) -> ConversationEntry | None:
        return self.conversation[-1] if self.conversation else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "thread_id": self.thread_id,
            "conversation": [entry.to_dict() for entry in self.conversation],
            "iteration_count": self.iteration_count,
            "status": self.status.value,
            "last_action": (
                {"tool_name": self.last_action.tool_name, "arguments": self.last_action.arguments}
                if self.last_action
                else None
            ),
            "last_observation": self.last_observation,
            "pending_feedback": dict(self.pending_feedback),
            "user_confirmed": self.user_confirmed,
            "is_final_answer": self.is_final_answer,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionState":
        """Create from dictionary."""
        action = data.get("last_action")
        return cls(
            thread_id=data["thread_id"],
            conversation=tuple(
                ConversationEntry.from_dict(item) for item in data.get("conversation", [])
            ),
            iteration_count=int(data.get("iteration_count", 0)),
            status=Status(data.get("status", Status.CONTINUE.value)),
            last_action=(
                ToolAction(tool_name=action["tool_name"], arguments=dict(action.get("arguments") or {}))
                if isinstance(action, dict)
                else None
            ),
            last_observation=data.get("last_observation"),
            pending_feedback=dict(data.get("pending_feedback") or {}),
            user_confirmed=bool(data.get("user_confirmed", False)),
            is_final_answer=bool(data.get("is_final_answer", False)),
            created_at=data.get("created_at") or _utcnow_iso(),
        )
