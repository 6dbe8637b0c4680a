"""Human confirmation and feedback with bounded, cancellable waits.

The interaction manager is the only place the agent loop suspends on
external input. Every wait goes through ``_wait_for_answer``, which races
the channel against the configured timeout and an optional cancel event.
Timeouts and cancellation resolve to the configured fallbacks instead of
hanging the session.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, Protocol, TypeVar

from xmlagent.config import InteractionConfig
from xmlagent.logging import get_logger
from xmlagent.protocol import Feedback, encode
from xmlagent.safety import SafetyVerdict
from xmlagent.state import ConversationEntry
from xmlagent.tools.registry import ToolOutcome

log = get_logger(__name__)

T = TypeVar("T")
WaitOutcome = Literal["answered", "timeout", "cancelled", "error"]

CONFIRM_ANSWERS = {"y", "yes", "ok", "approve", "approved", "confirm"}


class InteractionChannel(Protocol):
    """Where prompts go and answers come from.

    ``ask`` is awaited at most once per prompt and may be cancelled when the
    wait expires; an answer meant for a cancelled prompt must never be
    returned for a later one.
    """

    def ask(self, prompt: str) -> Awaitable[str]: ...


class ConsoleChannel:
    """Ask on stdout, read the answer from stdin in a worker thread.

    A blocked ``input`` call cannot be cancelled, so one reader outlives a
    timed-out prompt. A line it returns while no prompt is open is dropped.
    """

    def __init__(self):
        self._reader: asyncio.Future[str] | None = None

    def _drop_stale_line(self) -> None:
        reader = self._reader
        if reader is None or not reader.done():
            return
        self._reader = None
        if reader.cancelled():
            return
        if reader.exception() is None:
            log.info("Discarding console input typed after the prompt expired")

    async def ask(self, prompt: str) -> str:
        self._drop_stale_line()
        if self._reader is None:
            self._reader = asyncio.ensure_future(asyncio.to_thread(input, f"{prompt}\n> "))
        else:
            print(f"{prompt}\n> ", end="", flush=True)
        reader = self._reader
        line = await asyncio.shield(reader)
        if self._reader is reader:
            self._reader = None
        return line


class QueueChannel:
    """Answers supplied programmatically, e.g. by a transport layer.

    Only the newest prompt can be answered. ``answer`` called while no
    prompt is open is dropped, and ``prompts`` holds at most the open one.
    """

    def __init__(self):
        self.prompts: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._pending: asyncio.Future[str] | None = None

    def answer(self, text: str) -> bool:
        """Resolve the open prompt; returns False when nothing is waiting."""
        pending = self._pending
        if pending is None or pending.done():
            log.warning("Dropping answer with no open prompt")
            return False
        pending.set_result(text)
        return True

    def _close(self, future: asyncio.Future[str]) -> None:
        if self._pending is future:
            self._pending = None
            while not self.prompts.empty():
                self.prompts.get_nowait()

    def ask(self, prompt: str) -> asyncio.Future[str]:
        # Opened synchronously, before the caller first yields.
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        while not self.prompts.empty():
            self.prompts.get_nowait()
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending = future
        future.add_done_callback(self._close)
        self.prompts.put_nowait(prompt)
        return future


class AutoChannel:
    """Always answers with the same text."""

    def __init__(self, answer: str = "yes"):
        self.answer = answer
        self.prompts: list[str] = []

    async def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answer


@dataclass(frozen=True)
class InteractionSettings:
    timeout_seconds: float = 30.0
    confirm_on_timeout: bool = False
    no_feedback: str | None = None

    @classmethod
    def from_config(cls, config: InteractionConfig) -> "InteractionSettings":
        return cls(
            timeout_seconds=config.timeout_seconds,
            confirm_on_timeout=config.confirm_on_timeout,
        )


@dataclass(frozen=True)
class InteractionResult(Generic[T]):
    """Entries the interaction produced plus the resolved value."""

    value: T
    entries: tuple[ConversationEntry, ...] = ()
    outcome: WaitOutcome = "answered"


def _assistant(text: str) -> ConversationEntry:
    return ConversationEntry("assistant", encode(Feedback(content=text)))


class InteractionManager:
    """Suspends a turn to ask a human, with deterministic fallbacks."""

    def __init__(self, channel: InteractionChannel, settings: InteractionSettings | None = None):
        self.channel = channel
        self.settings = settings or InteractionSettings()

    async def _wait_for_answer(
        self,
        prompt: str,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[str | None, WaitOutcome]:
        """Race the channel against timeout and cancellation."""
        if cancel_event is not None and cancel_event.is_set():
            return None, "cancelled"

        ask_task = asyncio.ensure_future(self.channel.ask(prompt))
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        wait_tasks: set[asyncio.Future[Any]] = {ask_task}
        if cancel_task is not None:
            wait_tasks.add(cancel_task)
        try:
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=self.settings.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if ask_task in done and ask_task.cancelled():
                log.warning("Prompt superseded before it was answered")
                return None, "error"
            if ask_task in done:
                try:
                    return str(ask_task.result()), "answered"
                except Exception as e:
                    log.error("Interaction channel failed", error=str(e))
                    return None, "error"
            if cancel_task is not None and cancel_task in done:
                log.info("Interaction cancelled")
                return None, "cancelled"
            log.info("Interaction timed out", timeout=self.settings.timeout_seconds)
            return None, "timeout"
        finally:
            for task in (ask_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

    def _fallback_note(self, outcome: WaitOutcome, action: str) -> str:
        if outcome == "timeout":
            return f"No answer within {self.settings.timeout_seconds}s; {action}"
        if outcome == "cancelled":
            return f"Interaction cancelled; {action}"
        return f"Interaction failed; {action}"

    async def request_confirmation(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        cancel_event: asyncio.Event | None = None,
        announce: Callable[[ConversationEntry], None] | None = None,
    ) -> InteractionResult[bool]:
        """Ask whether a tool call may run."""
        prompt = (
            f"Do you want to execute tool {tool_name} with args "
            f"{json.dumps(arguments, ensure_ascii=False)}? (yes/no)"
        )
        entries = [_assistant(prompt)]
        if announce:
            announce(entries[0])
        log.info("Requesting tool confirmation", tool=tool_name)

        answer, outcome = await self._wait_for_answer(prompt, cancel_event)
        if answer is not None:
            confirmed = answer.strip().lower() in CONFIRM_ANSWERS
            entries.append(ConversationEntry("user", answer))
            entries.append(_assistant("Tool execution confirmed" if confirmed else "Tool execution rejected"))
        else:
            confirmed = self.settings.confirm_on_timeout if outcome == "timeout" else False
            entries.append(_assistant(self._fallback_note(
                outcome, "confirmation granted" if confirmed else "confirmation denied"
            )))

        if announce:
            for entry in entries[1:]:
                announce(entry)
        return InteractionResult(value=confirmed, entries=tuple(entries), outcome=outcome)

    async def request_feedback(
        self,
        tool_name: str,
        outcome: ToolOutcome,
        verdict: SafetyVerdict | None = None,
        cancel_event: asyncio.Event | None = None,
        announce: Callable[[ConversationEntry], None] | None = None,
    ) -> InteractionResult[str | None]:
        """Ask for free-form feedback on a finished tool call."""
        entries: list[ConversationEntry] = []
        if verdict is not None and verdict.warnings:
            entries.append(_assistant("Safety warnings:\n" + "\n".join(verdict.warnings)))
        status = "succeeded" if outcome.success else "failed"
        prompt = f"Tool {tool_name} {status}. Please provide feedback (leave empty to skip):"
        entries.append(_assistant(prompt))
        if announce:
            for entry in entries:
                announce(entry)
        log.info("Requesting tool feedback", tool=tool_name, success=outcome.success)

        already_announced = len(entries)
        answer, wait_outcome = await self._wait_for_answer(prompt, cancel_event)
        feedback = self.settings.no_feedback
        if answer is not None:
            entries.append(ConversationEntry("user", answer))
            feedback = answer.strip() or self.settings.no_feedback
        else:
            entries.append(_assistant(self._fallback_note(wait_outcome, "no feedback recorded")))

        if announce:
            for entry in entries[already_announced:]:
                announce(entry)
        return InteractionResult(value=feedback, entries=tuple(entries), outcome=wait_outcome)


def create_channel(config: InteractionConfig) -> InteractionChannel:
    """Build the channel named in config."""
    if config.channel == "auto":
        return AutoChannel(config.auto_answer)
    return ConsoleChannel()
