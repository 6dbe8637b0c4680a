"""Response envelope protocol spoken between the model and the agent loop."""

from xmlagent.protocol.codec import (
    DecodeFailure,
    DecodeRule,
    decode,
    decode_or_raise,
    encode,
    envelope_kind,
    looks_like_envelope,
    wrap_plain_text,
)
from xmlagent.protocol.responses import (
    Change,
    Chat,
    Compose,
    Edit,
    ErrorResponse,
    Feedback,
    Final,
    Observation,
    ParsedResponse,
    ResponseKind,
    Sync,
    Thought,
    ToolCall,
)

__all__ = [
    "Change",
    "Chat",
    "Compose",
    "DecodeFailure",
    "DecodeRule",
    "Edit",
    "ErrorResponse",
    "Feedback",
    "Final",
    "Observation",
    "ParsedResponse",
    "ResponseKind",
    "Sync",
    "Thought",
    "ToolCall",
    "decode",
    "decode_or_raise",
    "encode",
    "envelope_kind",
    "looks_like_envelope",
    "wrap_plain_text",
]
