"""Agent loop: one model call plus its consequences per turn.

``run_turn`` is a functional update. It receives the committed state and
returns a new one; the conversation only grows. Every failure inside a
turn becomes an ``error`` envelope plus ``status=end``. Only task
cancellation escapes, so a cancelled turn leaves nothing behind.
"""

import asyncio
from typing import Any, Iterable, assert_never

from xmlagent.config import Config
from xmlagent.events import AgentEvent, NotificationSink, NullSink
from xmlagent.exceptions import (
    InteractionTimeoutError,
    SafetyRejectedError,
    ToolExecutionError,
    ToolNotFoundError,
    UserRejectedError,
    XmlAgentError,
)
from xmlagent.instructions import InstructionLoader
from xmlagent.interaction import InteractionManager
from xmlagent.llm import LLMProvider, Message
from xmlagent.logging import get_logger
from xmlagent.protocol import (
    Chat,
    Compose,
    DecodeFailure,
    Edit,
    ErrorResponse,
    Feedback,
    Final,
    Observation,
    Sync,
    Thought,
    ToolCall,
    decode,
    encode,
    envelope_kind,
    wrap_plain_text,
)
from xmlagent.safety import SafetyPolicy, SafetyRule, check
from xmlagent.state import ConversationEntry, SessionState, Status, ToolAction
from xmlagent.tools.registry import ToolOutcome, ToolRegistry

log = get_logger(__name__)


def entry_event(thread_id: str, entry: ConversationEntry, final: bool = False) -> AgentEvent:
    """Build the stream event for a conversation entry."""
    if entry.role == "assistant":
        kind = envelope_kind(entry.content) or "chat"
    else:
        kind = entry.role
    return AgentEvent(thread_id=thread_id, kind=kind, text=entry.content, final=final)


def error_entry(message: str) -> ConversationEntry:
    return ConversationEntry("assistant", encode(ErrorResponse(content=message.strip())))


class _Turn:
    """Entries produced by one turn, published as they are produced."""

    def __init__(self, thread_id: str, sink: NotificationSink):
        self.thread_id = thread_id
        self.sink = sink
        self.entries: list[ConversationEntry] = []

    def announce(self, entry: ConversationEntry) -> None:
        try:
            self.sink.publish(entry_event(self.thread_id, entry))
        except Exception as e:
            log.warning("Notification sink failed", thread_id=self.thread_id, error=str(e))

    def add(self, entry: ConversationEntry) -> None:
        self.entries.append(entry)
        self.announce(entry)

    def extend(self, entries: Iterable[ConversationEntry]) -> None:
        """Record entries that were already announced."""
        self.entries.extend(entries)


class AgentLoop:
    """Runs single turns of the ReAct loop."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        policy: SafetyPolicy,
        interaction: InteractionManager,
        sink: NotificationSink | None = None,
        *,
        model_timeout_seconds: float | None = 120.0,
        repair_arguments: bool = False,
        instructions: InstructionLoader | None = None,
        system_prompt_template: str = "system_prompt.md",
    ):
        self.provider = provider
        self.registry = registry
        self.policy = policy
        self.interaction = interaction
        self.sink: NotificationSink = sink or NullSink()
        self.model_timeout_seconds = model_timeout_seconds
        self.repair_arguments = repair_arguments
        self.instructions = instructions or InstructionLoader()
        self.system_prompt_template = system_prompt_template

    @classmethod
    def from_config(
        cls,
        config: Config,
        provider: LLMProvider,
        registry: ToolRegistry,
        interaction: InteractionManager,
        sink: NotificationSink | None = None,
        rules: Iterable[SafetyRule] = (),
    ) -> "AgentLoop":
        return cls(
            provider=provider,
            registry=registry,
            policy=SafetyPolicy.from_config(config.safety, rules),
            interaction=interaction,
            sink=sink,
            model_timeout_seconds=config.agent.model_timeout_seconds,
            repair_arguments=config.protocol.repair_arguments,
            system_prompt_template=config.agent.system_prompt_template,
        )

    def system_prompt(self) -> str:
        return self.instructions.render(self.system_prompt_template, tools=self.registry.describe())

    def build_messages(self, state: SessionState) -> list[Message]:
        """System prompt followed by the full conversation."""
        messages = [Message(role="system", content=self.system_prompt())]
        messages.extend(Message(role=entry.role, content=entry.content) for entry in state.conversation)
        return messages

    async def _call_model(self, state: SessionState) -> str:
        messages = self.build_messages(state)
        log.debug("Calling model", thread_id=state.thread_id, msg_count=len(messages))
        try:
            response = await asyncio.wait_for(
                self.provider.complete(messages),
                timeout=self.model_timeout_seconds,
            )
        except TimeoutError:
            raise InteractionTimeoutError("Model call", self.model_timeout_seconds or 0)
        return response.content

    async def run_turn(
        self,
        state: SessionState,
        cancel_event: asyncio.Event | None = None,
        sink: NotificationSink | None = None,
    ) -> SessionState:
        """Run one turn and return the next state.

        Args:
            state: Last committed state
            cancel_event: Set to abort interaction waits and running tools
            sink: Overrides the loop's notification sink for this turn

        Returns:
            New state; never raises except ``asyncio.CancelledError``
        """
        turn = _Turn(state.thread_id, sink or self.sink)
        try:
            return await self._run(state, turn, cancel_event)
        except asyncio.CancelledError:
            raise
        except XmlAgentError as e:
            log.warning("Turn ended with error", thread_id=state.thread_id, error=str(e))
            return self._fail(state, turn, str(e))
        except Exception as e:
            log.error("Agent turn failed", thread_id=state.thread_id, error=str(e), exc_info=True)
            return self._fail(state, turn, f"Agent execution error: {e}")

    def _fail(self, state: SessionState, turn: _Turn, message: str) -> SessionState:
        turn.add(error_entry(message))
        return state.append(*turn.entries).update(status=Status.END, is_final_answer=False)

    def _commit(self, state: SessionState, turn: _Turn, **changes: Any) -> SessionState:
        return state.append(*turn.entries).update(**changes)

    async def _run(self, state: SessionState, turn: _Turn, cancel_event: asyncio.Event | None) -> SessionState:
        raw = await self._call_model(state)
        text = wrap_plain_text(raw)

        parsed = decode(text, repair=self.repair_arguments)
        if isinstance(parsed, DecodeFailure):
            log.warning("Failed to decode model response", thread_id=state.thread_id, rule=parsed.rule.value)
            raise parsed.to_exception()
        log.debug("Decoded model response", thread_id=state.thread_id, kind=parsed.kind.value)

        assistant = ConversationEntry("assistant", text)
        match parsed:
            case Final() | Chat():
                turn.add(assistant)
                return self._commit(state, turn, status=Status.END, is_final_answer=True)
            case ToolCall():
                return await self._run_tool(state, turn, assistant, parsed, cancel_event)
            case Thought() | Observation() | Feedback():
                turn.add(assistant)
                return self._commit(state, turn, status=Status.CONTINUE, is_final_answer=False)
            case Edit() | Compose() | Sync():
                turn.add(assistant)
                return self._commit(state, turn, status=Status.END, is_final_answer=True)
            case ErrorResponse():
                turn.add(assistant)
                return self._commit(state, turn, status=Status.END, is_final_answer=False)
            case _:
                assert_never(parsed)

    async def _run_tool(
        self,
        state: SessionState,
        turn: _Turn,
        assistant: ConversationEntry,
        call: ToolCall,
        cancel_event: asyncio.Event | None,
    ) -> SessionState:
        name = call.tool_name
        turn.add(assistant)
        if not self.registry.has_tool(name):
            raise ToolNotFoundError(name)

        verdict = check(name, call.arguments, self.policy)
        if not verdict.passed:
            log.warning("Safety check failed", thread_id=state.thread_id, tool=name, reason=verdict.reason)
            raise SafetyRejectedError(name, verdict.reason or "Safety check failed")

        confirmed = False
        if self.policy.require_confirmation:
            confirmation = await self.interaction.request_confirmation(
                name, call.arguments, cancel_event, announce=turn.announce
            )
            turn.extend(confirmation.entries)
            if not confirmation.value:
                raise UserRejectedError(name)
            confirmed = True

        outcome = await self.registry.dispatch(
            name, call.arguments, session_id=state.thread_id, abort_event=cancel_event
        )
        observation = outcome.observation_text().strip()
        turn.add(ConversationEntry("assistant", encode(Observation(content=observation))))

        pending = dict(state.pending_feedback)
        if self.policy.require_feedback:
            feedback = await self.interaction.request_feedback(
                name, outcome, verdict, cancel_event, announce=turn.announce
            )
            turn.extend(feedback.entries)
            if feedback.value is not None:
                pending[name] = feedback.value

        if not outcome.success:
            turn.add(error_entry(self._failure_message(name, outcome)))

        return self._commit(
            state,
            turn,
            iteration_count=state.iteration_count + 1,
            status=Status.CONTINUE if outcome.success else Status.END,
            last_action=ToolAction(tool_name=name, arguments=dict(call.arguments)),
            last_observation=observation,
            pending_feedback=pending,
            user_confirmed=confirmed,
            is_final_answer=False,
        )

    @staticmethod
    def _failure_message(name: str, outcome: ToolOutcome) -> str:
        detail = outcome.error or "Tool execution failed"
        if detail.startswith(f"Tool '{name}' failed") or detail.startswith("Tool not found"):
            return detail
        return str(ToolExecutionError(name, detail))
