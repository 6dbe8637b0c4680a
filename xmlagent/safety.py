"""Safety gate evaluated before every tool call.

``check`` is a pure function of (tool name, arguments, policy): no I/O, no
mutation, no caching. Evaluation order is fixed:

1. input length of the serialized arguments
2. dangerous patterns against the tool name and the serialized arguments
3. custom rules, in order, first failure wins
4. pass, carrying warnings from rules that warned without blocking
"""

import copy
import json
import os
import re
import shlex
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable

from xmlagent.config import SafetyConfig

REGEX_PREFIX = "re:"

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}


@dataclass(frozen=True)
class RuleResult:
    """Outcome of a single custom rule."""

    passed: bool = True
    reason: str | None = None
    warning: str | None = None


@dataclass(frozen=True)
class SafetyRule:
    """Named predicate over a tool call."""

    name: str
    check: Callable[[str, dict[str, Any]], RuleResult]
    description: str = ""


@dataclass(frozen=True)
class SafetyVerdict:
    """Result of running the gate."""

    passed: bool
    reason: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class SafetyPolicy:
    """Policy the gate evaluates against."""

    require_confirmation: bool = True
    require_feedback: bool = False
    max_input_length: int | None = 1000
    dangerous_patterns: tuple[str, ...] = ()
    custom_rules: tuple[SafetyRule, ...] = ()

    @classmethod
    def from_config(
        cls,
        config: SafetyConfig,
        rules: Iterable[SafetyRule] = (),
    ) -> "SafetyPolicy":
        """Build a policy from config, prepending the shell blocklist rule."""
        built: list[SafetyRule] = []
        if config.blocked_shell_commands:
            built.append(shell_blocklist_rule(config.blocked_shell_commands))
        built.extend(rules)
        return cls(
            require_confirmation=config.require_confirmation,
            require_feedback=config.require_feedback,
            max_input_length=config.max_input_length,
            dangerous_patterns=tuple(config.dangerous_patterns),
            custom_rules=tuple(built),
        )


def serialize_arguments(arguments: dict[str, Any]) -> str:
    """Canonical JSON form used for length and pattern checks."""
    return json.dumps(arguments, sort_keys=True, ensure_ascii=False, default=str)


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a policy pattern; literal unless prefixed with ``re:``."""
    if pattern.startswith(REGEX_PREFIX):
        try:
            return re.compile(pattern[len(REGEX_PREFIX):], re.IGNORECASE)
        except re.error:
            return re.compile(re.escape(pattern[len(REGEX_PREFIX):]), re.IGNORECASE)
    return re.compile(re.escape(pattern), re.IGNORECASE)


def match_dangerous_pattern(text: str, patterns: Iterable[str]) -> tuple[str, str] | None:
    """Return (pattern, matched text) for the first pattern found in text."""
    for raw_pattern in patterns:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        found = _compile_pattern(pattern).search(text)
        if found:
            return pattern, found.group(0)
    return None


def _reject(reason: str, warnings: Iterable[str] = ()) -> SafetyVerdict:
    return SafetyVerdict(passed=False, reason=reason, warnings=tuple(warnings))


def check(tool_name: str, arguments: dict[str, Any], policy: SafetyPolicy) -> SafetyVerdict:
    """Evaluate a requested tool call against the policy."""
    name = str(tool_name or "").strip()
    if not name:
        return _reject("Tool name is required")
    if not isinstance(arguments, dict):
        return _reject("Tool arguments must be a JSON object")

    serialized = serialize_arguments(arguments)
    limit = policy.max_input_length
    if limit is not None and len(serialized) > limit:
        return _reject(f"Input length ({len(serialized)}) exceeds maximum length ({limit})")

    for target in (name, serialized):
        hit = match_dangerous_pattern(target, policy.dangerous_patterns)
        if hit is not None:
            pattern, matched = hit
            return _reject(f"Input contains dangerous pattern: {pattern} (matched {matched!r})")

    warnings: list[str] = []
    for rule in policy.custom_rules:
        try:
            result = rule.check(name, copy.deepcopy(arguments))
        except Exception as e:
            return _reject(f"Safety rule '{rule.name}' errored: {e}", warnings)
        if not result.passed:
            return _reject(result.reason or f"Blocked by safety rule: {rule.name}", warnings)
        if result.warning:
            warnings.append(result.warning)

    return SafetyVerdict(passed=True, warnings=tuple(warnings))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize_shell_command(command):
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_base_command(tokens: list[str]) -> str:
    """Executable token of a segment, skipping wrappers and env assignments."""
    for token in tokens:
        token = token.strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return os.path.basename(token)
    return ""


def shell_base_commands(command: str) -> list[str]:
    """Base command of each segment, e.g. ``["echo", "rm"]`` for ``echo a && rm b``."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    return [base for segment in segments if (base := _segment_base_command(segment))]


def shell_blocklist_rule(blocked: Iterable[str], tool_names: Iterable[str] = ("shell",)) -> SafetyRule:
    """Block shell calls whose parsed base commands hit the blocklist.

    Matching is on parsed executables, so ``grep reboot notes.txt`` passes
    while ``echo ok; reboot`` is blocked.
    """
    blocked_set = frozenset(str(item).strip().lower() for item in blocked if str(item).strip())
    names = frozenset(str(item).strip().lower() for item in tool_names)

    def _check(tool_name: str, arguments: dict[str, Any]) -> RuleResult:
        if tool_name.lower() not in names:
            return RuleResult()
        command = str(arguments.get("command", "") or "").strip()
        if not command:
            return RuleResult(passed=False, reason="Command is empty")
        bases = shell_base_commands(command)
        if not bases:
            return RuleResult(passed=False, reason="Command is not parseable")
        for base in bases:
            if base.lower() in blocked_set:
                return RuleResult(passed=False, reason=f"Command matches blocked command: {base}")
        return RuleResult()

    return SafetyRule(
        name="shell_blocklist",
        check=_check,
        description="Reject shell commands whose executables are blocklisted",
    )


def workspace_path_rule(root: str, keys: Iterable[str] = ("path", "file")) -> SafetyRule:
    """Warn (without blocking) when a path argument points outside ``root``."""
    root_norm = os.path.normpath(os.path.abspath(root))
    key_list = tuple(keys)

    def _check(tool_name: str, arguments: dict[str, Any]) -> RuleResult:
        for key in key_list:
            value = arguments.get(key)
            if not isinstance(value, str) or not value.strip():
                continue
            candidate = os.path.normpath(os.path.join(root_norm, os.path.expanduser(value)))
            if candidate != root_norm and not candidate.startswith(root_norm + os.sep):
                return RuleResult(warning=f"Path argument '{key}' points outside workspace: {value}")
        return RuleResult()

    return SafetyRule(
        name="workspace_path",
        check=_check,
        description="Warn when file arguments leave the workspace",
    )
