"""Decode model text into typed responses and encode them back.

Wire form is one envelope per model turn::

    <response type="KIND"> ...kind-specific fields... </response>

Decoding is total: every input yields a ``ParsedResponse`` or a
``DecodeFailure`` naming the structural rule that failed. Text field values
are XML-escaped on encode and unescaped on decode, so ``decode(encode(r))``
returns ``r`` for canonical responses (text fields without surrounding
whitespace, file contents without surrounding newlines).

Only the first envelope in the text is decoded, and every block ends at
the first matching closing tag after it opens.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import assert_never
from xml.sax.saxutils import escape, unescape

from xmlagent.exceptions import DecodeError
from xmlagent.protocol.repair import parse_json
from xmlagent.protocol.responses import (
    CHANGE_TYPES,
    TEXT_KINDS,
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

_OPEN_RE = re.compile(r'<response\s+type\s*=\s*"([^"]*)"\s*>')
_CLOSE_TAG = "</response>"
_CHANGE_OPEN_RE = re.compile(r"<change\b")
_CHANGE_RE = re.compile(r'<change\s+type\s*=\s*"([^"]*)"\s*>(.*?)</change>', re.DOTALL)
_UNESCAPE_EXTRA = {"&quot;": '"', "&apos;": "'"}


class DecodeRule(str, Enum):
    """Structural rule a raw model output can violate."""

    MISSING_ENVELOPE = "missing_envelope"
    UNKNOWN_KIND = "unknown_kind"
    BAD_ARGUMENTS = "bad_arguments"
    MISSING_FIELD = "missing_field"
    MALFORMED_FIELD = "malformed_field"
    UNTERMINATED_BLOCK = "unterminated_block"


@dataclass(frozen=True)
class DecodeFailure:
    """Why a raw output could not be decoded."""

    rule: DecodeRule
    message: str

    def to_exception(self) -> DecodeError:
        return DecodeError(self.rule.value, self.message)


class _Violation(Exception):
    def __init__(self, rule: DecodeRule, message: str):
        super().__init__(message)
        self.rule = rule
        self.message = message


def looks_like_envelope(text: str) -> bool:
    """Whether the text contains an opening response envelope."""
    return bool(_OPEN_RE.search(text or ""))


def envelope_kind(text: str) -> str | None:
    """Kind named by the first opening envelope tag, if any."""
    match = _OPEN_RE.search(text or "")
    return match.group(1) if match else None


def wrap_plain_text(text: str) -> str:
    """Wrap non-envelope model text as a ``chat`` response."""
    if looks_like_envelope(text):
        return text
    return encode(Chat(content=(text or "").strip()))


def decode(raw_text: str, *, repair: bool = False) -> ParsedResponse | DecodeFailure:
    """Decode one raw model output.

    Args:
        raw_text: Model output text
        repair: Run the bounded JSON repair pass on tool arguments

    Returns:
        ParsedResponse on success, DecodeFailure otherwise (never raises)
    """
    if not isinstance(raw_text, str):
        return DecodeFailure(DecodeRule.MISSING_ENVELOPE, "Model output is not text")
    try:
        return _decode(raw_text, repair)
    except _Violation as violation:
        return DecodeFailure(violation.rule, violation.message)
    except Exception as e:
        return DecodeFailure(DecodeRule.MALFORMED_FIELD, f"Failed to parse model response: {e}")


def decode_or_raise(raw_text: str, *, repair: bool = False) -> ParsedResponse:
    """Decode, raising ``DecodeError`` on failure."""
    result = decode(raw_text, repair=repair)
    if isinstance(result, DecodeFailure):
        raise result.to_exception()
    return result


def _unescape(value: str) -> str:
    return unescape(value, _UNESCAPE_EXTRA)


def _slice(body: str, tag: str, kind: str, required: bool = True) -> str | None:
    """Return the raw (still escaped) inner text of ``<tag>...</tag>``."""
    open_tag = f"<{tag}>"
    close_tag = f"</{tag}>"
    start = body.find(open_tag)
    if start == -1:
        if required:
            raise _Violation(DecodeRule.MISSING_FIELD, f"{kind} response is missing <{tag}>")
        return None
    inner_start = start + len(open_tag)
    end = body.find(close_tag, inner_start)
    if end == -1:
        raise _Violation(DecodeRule.UNTERMINATED_BLOCK, f"<{tag}> block is not terminated")
    return body[inner_start:end]


def _text(body: str, tag: str, kind: str, strip_chars: str | None = None) -> str:
    raw = _slice(body, tag, kind)
    assert raw is not None
    return _unescape(raw).strip(strip_chars)


def _decode(raw_text: str, repair: bool) -> ParsedResponse:
    text = raw_text.strip()
    opening = _OPEN_RE.search(text)
    if opening is None:
        raise _Violation(DecodeRule.MISSING_ENVELOPE, 'No <response type="..."> envelope found')

    close = text.find(_CLOSE_TAG, opening.end())
    if close == -1:
        raise _Violation(DecodeRule.UNTERMINATED_BLOCK, "Response envelope is not terminated")

    kind_value = opening.group(1).strip()
    body = text[opening.end():close]
    try:
        kind = ResponseKind(kind_value)
    except ValueError:
        raise _Violation(DecodeRule.UNKNOWN_KIND, f"Unknown response type: {kind_value}") from None

    if kind in TEXT_KINDS:
        return TEXT_KINDS[kind](content=_text(body, "content", kind.value))
    if kind is ResponseKind.TOOL:
        return _decode_tool(body, repair)
    if kind is ResponseKind.EDIT:
        return _decode_edit(body)
    if kind is ResponseKind.COMPOSE:
        path, content = _decode_file_block(body, kind.value)
        return Compose(path=path, content=content)
    if kind is ResponseKind.SYNC:
        path, content = _decode_file_block(body, kind.value)
        return Sync(path=path, content=content)
    raise _Violation(DecodeRule.UNKNOWN_KIND, f"Unknown response type: {kind_value}")


def _rationale_tag(body: str) -> str:
    """Whichever of <thought> or <rationale> opens first names the rationale."""
    found = [(body.find(f"<{tag}>"), tag) for tag in ("thought", "rationale")]
    found = [item for item in found if item[0] != -1]
    return min(found)[1] if found else "rationale"


def _decode_tool(body: str, repair: bool) -> ToolCall:
    kind = ResponseKind.TOOL.value
    rationale = _text(body, _rationale_tag(body), kind)
    tool_name = _text(body, "action", kind)
    if not tool_name:
        raise _Violation(DecodeRule.MISSING_FIELD, "tool response has an empty <action>")

    raw_args = _text(body, "args", kind)
    if not raw_args:
        raise _Violation(DecodeRule.BAD_ARGUMENTS, "Tool arguments are empty")
    try:
        arguments, _ = parse_json(raw_args, repair=repair)
    except json.JSONDecodeError as e:
        raise _Violation(DecodeRule.BAD_ARGUMENTS, f"Invalid JSON in tool arguments: {e.msg}") from None
    if not isinstance(arguments, dict):
        raise _Violation(DecodeRule.BAD_ARGUMENTS, "Tool arguments must be a JSON object")

    return ToolCall(tool_name=tool_name, arguments=arguments, rationale=rationale)


def _decode_edit(body: str) -> Edit:
    kind = ResponseKind.EDIT.value
    target_file = _text(body, "file", kind)
    if not target_file:
        raise _Violation(DecodeRule.MISSING_FIELD, "edit response has an empty <file>")
    changes_body = _slice(body, "changes", kind)
    assert changes_body is not None

    matches = list(_CHANGE_RE.finditer(changes_body))
    if len(matches) != len(_CHANGE_OPEN_RE.findall(changes_body)):
        raise _Violation(DecodeRule.UNTERMINATED_BLOCK, "<change> block is not terminated")
    if not matches:
        raise _Violation(DecodeRule.MISSING_FIELD, "edit response has no <change> records")

    changes: list[Change] = []
    for match in matches:
        change_type = match.group(1).strip().lower()
        if change_type not in CHANGE_TYPES:
            raise _Violation(DecodeRule.MALFORMED_FIELD, f"Unknown change type: {change_type}")
        inner = match.group(2)
        changes.append(Change(
            change_type=change_type,  # type: ignore[arg-type]
            location=_text(inner, "location", "change"),
            content=_text(inner, "content", "change", strip_chars="\n"),
        ))
    return Edit(target_file=target_file, changes=tuple(changes))


def _decode_file_block(body: str, kind: str) -> tuple[str, str]:
    file_body = _slice(body, "file", kind)
    assert file_body is not None
    path = _text(file_body, "path", kind)
    if not path:
        raise _Violation(DecodeRule.MISSING_FIELD, f"{kind} response has an empty <path>")
    return path, _text(file_body, "content", kind, strip_chars="\n")


def encode(response: ParsedResponse) -> str:
    """Serialize a response to its wire form."""
    match response:
        case Thought() | Chat() | Final() | Observation() | Feedback() | ErrorResponse():
            return (
                f'<response type="{response.kind.value}">'
                f"<content>{escape(response.content)}</content>"
                "</response>"
            )
        case ToolCall():
            args = json.dumps(response.arguments, ensure_ascii=False)
            return (
                '<response type="tool">\n'
                f"  <thought>{escape(response.rationale)}</thought>\n"
                f"  <action>{escape(response.tool_name)}</action>\n"
                f"  <args>{escape(args)}</args>\n"
                "</response>"
            )
        case Edit():
            changes = "".join(
                f'    <change type="{change.change_type}">\n'
                f"      <location>{escape(change.location)}</location>\n"
                f"      <content>{escape(change.content)}</content>\n"
                "    </change>\n"
                for change in response.changes
            )
            return (
                '<response type="edit">\n'
                f"  <file>{escape(response.target_file)}</file>\n"
                "  <changes>\n"
                f"{changes}"
                "  </changes>\n"
                "</response>"
            )
        case Compose() | Sync():
            return (
                f'<response type="{response.kind.value}">\n'
                "  <file>\n"
                f"    <path>{escape(response.path)}</path>\n"
                f"    <content>{escape(response.content)}</content>\n"
                "  </file>\n"
                "</response>"
            )
        case _:
            assert_never(response)
