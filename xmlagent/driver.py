"""Session driver: runs agent turns for one user input at a time.

The driver owns the session state. It loads the checkpoint, opens a new
exchange, runs turns until the state ends or a limit is hit, and saves
after every committed turn. A turn interrupted by cancellation or the wall
clock budget is discarded whole.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator

from xmlagent.agent import AgentLoop, entry_event, error_entry
from xmlagent.config import Config
from xmlagent.events import AgentEvent, FanoutSink, NotificationSink, QueueSink
from xmlagent.exceptions import (
    CheckpointStoreError,
    InteractionTimeoutError,
    IterationLimitReachedError,
    SessionBusyError,
    XmlAgentError,
)
from xmlagent.logging import get_logger
from xmlagent.protocol import ErrorResponse, encode
from xmlagent.session import CheckpointStore
from xmlagent.state import ConversationEntry, SessionState, Status

log = get_logger(__name__)

_CANCELLED = object()
_TIMED_OUT = object()


@dataclass(frozen=True)
class DriverSettings:
    max_iterations: int = 10
    max_turns: int = 30
    max_wall_seconds: float | None = None

    @classmethod
    def from_config(cls, config: Config) -> "DriverSettings":
        return cls(
            max_iterations=config.agent.max_iterations,
            max_turns=config.agent.max_turns,
            max_wall_seconds=config.session.max_wall_seconds,
        )


class SessionDriver:
    """Runs exchanges against checkpointed sessions."""

    def __init__(self, loop: AgentLoop, store: CheckpointStore, settings: DriverSettings | None = None):
        self.loop = loop
        self.store = store
        self.settings = settings or DriverSettings()
        self._locks: dict[str, asyncio.Lock] = {}

    def is_running(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return bool(lock and lock.locked())

    async def _load(self, thread_id: str) -> SessionState:
        try:
            state = await self.store.load(thread_id)
        except CheckpointStoreError:
            raise
        except Exception as e:
            raise CheckpointStoreError(thread_id, str(e)) from e
        return state or SessionState(thread_id=thread_id)

    async def _save(self, state: SessionState) -> None:
        try:
            await self.store.save(state.thread_id, state)
        except CheckpointStoreError:
            raise
        except Exception as e:
            raise CheckpointStoreError(state.thread_id, str(e)) from e

    @staticmethod
    def _publish(sink: NotificationSink, thread_id: str, entry: ConversationEntry) -> None:
        try:
            sink.publish(entry_event(thread_id, entry))
        except Exception as e:
            log.warning("Notification sink failed", thread_id=thread_id, error=str(e))

    async def run(
        self,
        thread_id: str,
        user_input: str,
        cancel_event: asyncio.Event | None = None,
        sink: NotificationSink | None = None,
    ) -> SessionState:
        """Run one exchange and return the last committed state.

        Raises:
            SessionBusyError: another exchange is running for thread_id
            CheckpointStoreError: the store failed to load or save
        """
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        if lock.locked():
            raise SessionBusyError(thread_id)
        try:
            async with lock:
                publish = FanoutSink(self.loop.sink, sink) if sink is not None else self.loop.sink
                return await self._run_exchange(thread_id, user_input, cancel_event, publish)
        finally:
            if self._locks.get(thread_id) is lock and not lock.locked():
                del self._locks[thread_id]

    async def _run_exchange(
        self,
        thread_id: str,
        user_input: str,
        cancel_event: asyncio.Event | None,
        publish: NotificationSink,
    ) -> SessionState:
        state = (await self._load(thread_id)).begin_exchange(user_input)
        self._publish(publish, thread_id, state.conversation[-1])
        await self._save(state)
        log.info("Exchange started", thread_id=thread_id, entries=len(state.conversation))

        clock = asyncio.get_running_loop()
        max_wall = self.settings.max_wall_seconds
        deadline = clock.time() + max_wall if max_wall else None
        turns = 0

        while not state.ended:
            remaining = None
            if deadline is not None:
                remaining = deadline - clock.time()
                if remaining <= 0:
                    return await self._stop(state, InteractionTimeoutError("Session", max_wall or 0), publish)

            result = await self._run_turn(state, cancel_event, publish, remaining)
            if result is _CANCELLED:
                log.info("Exchange cancelled", thread_id=thread_id, iteration=state.iteration_count)
                return state
            if result is _TIMED_OUT:
                return await self._stop(state, InteractionTimeoutError("Session", max_wall or 0), publish)

            assert isinstance(result, SessionState)
            state = result
            turns += 1
            limit = self._limit_error(state, turns)
            if limit is not None:
                return await self._stop(state, limit, publish)
            await self._save(state)
            log.debug(
                "Turn committed",
                thread_id=thread_id,
                turn=turns,
                iteration=state.iteration_count,
                status=state.status.value,
            )

        log.info("Exchange finished", thread_id=thread_id, final=state.is_final_answer, turns=turns)
        return state

    async def _run_turn(
        self,
        state: SessionState,
        cancel_event: asyncio.Event | None,
        publish: NotificationSink,
        timeout: float | None,
    ) -> SessionState | object:
        """Run one turn, racing it against cancellation and the deadline."""
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED

        turn_task = asyncio.create_task(self.loop.run_turn(state, cancel_event, sink=publish))
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        try:
            wait_tasks: set[asyncio.Task] = {turn_task}
            if cancel_task is not None:
                wait_tasks.add(cancel_task)
            done, _ = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if turn_task in done and not (cancel_event is not None and cancel_event.is_set()):
                return turn_task.result()
            if turn_task in done or (cancel_task is not None and cancel_task in done):
                return _CANCELLED
            return _TIMED_OUT
        finally:
            for task in (turn_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

    def _limit_error(self, state: SessionState, turns: int) -> IterationLimitReachedError | None:
        """Cap hit by a turn that would otherwise continue; checked before it is saved."""
        if state.ended:
            return None
        if state.iteration_count >= self.settings.max_iterations:
            return IterationLimitReachedError(self.settings.max_iterations)
        if turns >= self.settings.max_turns:
            return IterationLimitReachedError(self.settings.max_turns, "Turn")
        return None

    async def _stop(self, state: SessionState, error: XmlAgentError, publish: NotificationSink) -> SessionState:
        log.warning("Exchange stopped", thread_id=state.thread_id, reason=str(error))
        entry = error_entry(str(error))
        self._publish(publish, state.thread_id, entry)
        state = state.append(entry).update(status=Status.END, is_final_answer=False)
        await self._save(state)
        return state

    async def stream(
        self,
        thread_id: str,
        user_input: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Yield events as the exchange runs; the last one has ``final=True``."""
        sink = QueueSink()
        run_task = asyncio.create_task(self.run(thread_id, user_input, cancel_event, sink=sink))
        try:
            while True:
                getter = asyncio.create_task(sink.queue.get())
                done, _ = await asyncio.wait({getter, run_task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                try:
                    await getter
                except asyncio.CancelledError:
                    pass
                break

            while not sink.queue.empty():
                yield sink.queue.get_nowait()

            try:
                state = run_task.result()
            except XmlAgentError as e:
                yield AgentEvent(
                    thread_id=thread_id,
                    kind="error",
                    text=encode(ErrorResponse(content=str(e))),
                    final=True,
                )
                return
            yield self._final_event(state)
        finally:
            if not run_task.done():
                run_task.cancel()
                try:
                    await run_task
                except asyncio.CancelledError:
                    pass

    @staticmethod
    def _final_event(state: SessionState) -> AgentEvent:
        last = state.last_entry()
        if state.ended and last is not None and last.role == "assistant":
            return entry_event(state.thread_id, last, final=True)
        return AgentEvent(
            thread_id=state.thread_id,
            kind="error",
            text=encode(ErrorResponse(content="Exchange cancelled")),
            final=True,
        )


def create_driver(
    config: Config,
    provider=None,
    channel=None,
    store: CheckpointStore | None = None,
    sink: NotificationSink | None = None,
    registry=None,
    rules=(),
) -> SessionDriver:
    """Wire a driver from config, filling unspecified collaborators with defaults."""
    from xmlagent.interaction import InteractionManager, InteractionSettings, create_channel
    from xmlagent.llm import get_provider
    from xmlagent.session import create_store
    from xmlagent.tools import create_default_registry

    interaction = InteractionManager(
        channel or create_channel(config.interaction),
        InteractionSettings.from_config(config.interaction),
    )
    loop = AgentLoop.from_config(
        config,
        provider=provider or get_provider(),
        registry=registry or create_default_registry(
            config.tools.enabled,
            base_path=config.resolved_workspace_path(),
            shell_config=config.tools.shell,
        ),
        interaction=interaction,
        sink=sink,
        rules=rules,
    )
    return SessionDriver(loop, store or create_store(config.session), DriverSettings.from_config(config))
