import asyncio

import pytest

from xmlagent.agent import AgentLoop
from xmlagent.config import Config
from xmlagent.driver import DriverSettings, SessionDriver, create_driver
from xmlagent.events import CollectingSink
from xmlagent.exceptions import CheckpointStoreError, SessionBusyError
from xmlagent.instructions import InstructionLoader
from xmlagent.interaction import AutoChannel, InteractionManager, InteractionSettings, QueueChannel
from xmlagent.llm import LLMProvider, LLMResponse
from xmlagent.protocol import ErrorResponse, Final, ToolCall, decode, encode
from xmlagent.safety import SafetyPolicy
from xmlagent.session import MemoryCheckpointStore, SqliteCheckpointStore
from xmlagent.state import Status
from xmlagent.tools.registry import Tool, ToolOutcome, ToolRegistry

FINAL = '<response type="final"><content>4</content></response>'
THOUGHT = '<response type="thought"><content>hmm</content></response>'


class ScriptedProvider(LLMProvider):
    def __init__(self, *outputs, delay: float = 0.0, repeat: str | None = None):
        self.outputs = list(outputs)
        self.delay = delay
        self.repeat = repeat
        self.started = asyncio.Event()
        self.calls = 0

    async def complete(self, messages, temperature=None, max_tokens=None):
        self.calls += 1
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outputs:
            return LLMResponse(content=self.outputs.pop(0))
        if self.repeat is not None:
            return LLMResponse(content=self.repeat)
        raise AssertionError("provider called more often than scripted")


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back."
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    async def execute(self, text: str, **kwargs):
        return ToolOutcome(success=True, output=text)


class BrokenStore(MemoryCheckpointStore):
    def __init__(self, fail_on_save: int):
        super().__init__()
        self.saves = 0
        self.fail_on_save = fail_on_save

    async def save(self, thread_id, state):
        self.saves += 1
        if self.saves >= self.fail_on_save:
            raise OSError("disk full")
        await super().save(thread_id, state)


def echo_call(text: str = "hi") -> str:
    return encode(ToolCall(tool_name="echo", arguments={"text": text}, rationale="echo it"))


def make_driver(provider, store=None, channel=None, settings=None, policy=None, sink=None, tmp_path=None):
    registry = ToolRegistry(base_path=tmp_path)
    registry.register(EchoTool())
    loop = AgentLoop(
        provider=provider,
        registry=registry,
        policy=policy or SafetyPolicy(require_confirmation=False),
        interaction=InteractionManager(channel or AutoChannel("yes"), InteractionSettings(timeout_seconds=5.0)),
        sink=sink,
        instructions=InstructionLoader(personal_dir=tmp_path),
    )
    return SessionDriver(loop, store or MemoryCheckpointStore(), settings or DriverSettings(max_iterations=3))


@pytest.mark.asyncio
async def test_run_until_final_answer_and_checkpoint(tmp_path):
    store = MemoryCheckpointStore()
    driver = make_driver(ScriptedProvider(echo_call(), FINAL), store=store, tmp_path=tmp_path)

    state = await driver.run("t-1", "what is 2 + 2?")

    assert state.status is Status.END
    assert state.is_final_answer
    assert decode(state.conversation[-1].content) == Final(content="4")
    assert await store.load("t-1") == state


@pytest.mark.asyncio
async def test_iteration_cap_forces_error(tmp_path):
    provider = ScriptedProvider(repeat=echo_call())
    driver = make_driver(provider, settings=DriverSettings(max_iterations=3), tmp_path=tmp_path)

    state = await driver.run("t-1", "loop forever")

    assert state.status is Status.END
    assert state.iteration_count == 3
    assert provider.calls == 3
    assert decode(state.conversation[-1].content) == ErrorResponse(content="Iteration limit reached (3)")


@pytest.mark.asyncio
async def test_turn_cap_bounds_thought_chains(tmp_path):
    provider = ScriptedProvider(repeat=THOUGHT)
    driver = make_driver(provider, settings=DriverSettings(max_iterations=3, max_turns=4), tmp_path=tmp_path)

    state = await driver.run("t-1", "think")

    assert provider.calls == 4
    assert state.iteration_count == 0
    assert decode(state.conversation[-1].content) == ErrorResponse(content="Turn limit reached (4)")


@pytest.mark.asyncio
async def test_no_turn_runs_after_end(tmp_path):
    provider = ScriptedProvider(FINAL)
    driver = make_driver(provider, tmp_path=tmp_path)

    state = await driver.run("t-1", "q")

    assert provider.calls == 1
    assert sum(1 for entry in state.conversation if entry.role == "assistant") == 1


@pytest.mark.asyncio
async def test_next_exchange_continues_the_conversation(tmp_path):
    store = MemoryCheckpointStore()
    driver = make_driver(ScriptedProvider(FINAL, FINAL), store=store, tmp_path=tmp_path)

    first = await driver.run("t-1", "one")
    second = await driver.run("t-1", "two")

    assert second.conversation[: len(first.conversation)] == first.conversation
    assert [entry.content for entry in second.conversation if entry.role == "user"] == ["one", "two"]


@pytest.mark.asyncio
async def test_wall_clock_budget_discards_turn_and_records_timeout(tmp_path):
    provider = ScriptedProvider("never", delay=5.0)
    driver = make_driver(
        provider,
        settings=DriverSettings(max_iterations=3, max_wall_seconds=0.1),
        tmp_path=tmp_path,
    )

    state = await driver.run("t-1", "slow")

    assert state.status is Status.END
    assert [entry.role for entry in state.conversation] == ["user", "assistant"]
    assert decode(state.conversation[-1].content) == ErrorResponse(content="Session timed out after 0.1s")


@pytest.mark.asyncio
async def test_cancel_event_discards_in_flight_turn(tmp_path):
    store = MemoryCheckpointStore()
    provider = ScriptedProvider("never", delay=5.0)
    driver = make_driver(provider, store=store, tmp_path=tmp_path)
    cancel_event = asyncio.Event()

    task = asyncio.create_task(driver.run("t-1", "go", cancel_event))
    await asyncio.wait_for(provider.started.wait(), timeout=1.0)
    cancel_event.set()
    state = await asyncio.wait_for(task, timeout=1.0)

    assert [entry.role for entry in state.conversation] == ["user"]
    assert state.status is Status.CONTINUE
    assert await store.load("t-1") == state


@pytest.mark.asyncio
async def test_cancel_during_confirmation_discards_turn(tmp_path):
    channel = QueueChannel()
    driver = make_driver(
        ScriptedProvider(echo_call()),
        channel=channel,
        policy=SafetyPolicy(require_confirmation=True),
        tmp_path=tmp_path,
    )
    cancel_event = asyncio.Event()

    task = asyncio.create_task(driver.run("t-1", "go", cancel_event))
    await asyncio.wait_for(channel.prompts.get(), timeout=1.0)
    cancel_event.set()
    state = await asyncio.wait_for(task, timeout=1.0)

    assert len(state.conversation) == 1
    assert state.iteration_count == 0


@pytest.mark.asyncio
async def test_concurrent_run_on_same_thread_is_busy(tmp_path):
    provider = ScriptedProvider(FINAL, delay=0.2)
    driver = make_driver(provider, tmp_path=tmp_path)

    first = asyncio.create_task(driver.run("t-1", "one"))
    await asyncio.wait_for(provider.started.wait(), timeout=1.0)

    assert driver.is_running("t-1")
    with pytest.raises(SessionBusyError):
        await driver.run("t-1", "two")
    state = await first
    assert state.is_final_answer
    assert not driver.is_running("t-1")


@pytest.mark.asyncio
async def test_distinct_threads_run_concurrently(tmp_path):
    provider = ScriptedProvider(FINAL, FINAL, delay=0.1)
    driver = make_driver(provider, tmp_path=tmp_path)

    a, b = await asyncio.gather(driver.run("a", "one"), driver.run("b", "two"))

    assert a.thread_id == "a" and b.thread_id == "b"
    assert a.is_final_answer and b.is_final_answer


@pytest.mark.asyncio
async def test_store_failure_is_fatal(tmp_path):
    driver = make_driver(ScriptedProvider(echo_call(), FINAL), store=BrokenStore(fail_on_save=2), tmp_path=tmp_path)

    with pytest.raises(CheckpointStoreError) as exc_info:
        await driver.run("t-1", "go")

    assert "disk full" in str(exc_info.value)
    assert not driver.is_running("t-1")


@pytest.mark.asyncio
async def test_sqlite_backed_driver(tmp_path):
    store = SqliteCheckpointStore(db_path=tmp_path / "checkpoints.db")
    try:
        driver = make_driver(ScriptedProvider(FINAL), store=store, tmp_path=tmp_path)
        state = await driver.run("t-1", "q")
        assert await store.load("t-1") == state
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_run_publishes_user_and_driver_entries(tmp_path):
    sink = CollectingSink()
    driver = make_driver(ScriptedProvider(repeat=echo_call()), sink=sink, settings=DriverSettings(max_iterations=1), tmp_path=tmp_path)

    state = await driver.run("t-1", "go")

    assert [event.text for event in sink.events] == [entry.content for entry in state.conversation]
    assert sink.events[0].kind == "user"
    assert sink.events[-1].kind == "error"


@pytest.mark.asyncio
async def test_stream_ends_with_final_event(tmp_path):
    driver = make_driver(ScriptedProvider(echo_call(), FINAL), tmp_path=tmp_path)

    events = [event async for event in driver.stream("t-1", "go")]

    assert [event.kind for event in events] == ["user", "tool", "observation", "final", "final"]
    assert [event.final for event in events] == [False, False, False, False, True]
    assert events[-1].text == FINAL


@pytest.mark.asyncio
async def test_stream_reports_store_failure_as_final_error(tmp_path):
    driver = make_driver(ScriptedProvider(FINAL), store=BrokenStore(fail_on_save=1), tmp_path=tmp_path)

    events = [event async for event in driver.stream("t-1", "go")]

    assert events[-1].final
    assert events[-1].kind == "error"
    assert "disk full" in decode(events[-1].text).content


@pytest.mark.asyncio
async def test_stream_lets_a_consumer_answer_confirmation(tmp_path):
    channel = QueueChannel()
    driver = make_driver(
        ScriptedProvider(echo_call(), FINAL),
        channel=channel,
        policy=SafetyPolicy(require_confirmation=True),
        tmp_path=tmp_path,
    )

    kinds = []
    async for event in driver.stream("t-1", "go"):
        kinds.append(event.kind)
        if event.kind == "feedback" and "(yes/no)" in event.text:
            channel.answer("yes")

    assert "observation" in kinds
    assert kinds[-1] == "final"


@pytest.mark.asyncio
async def test_stream_cancelled_exchange_ends_with_error_event(tmp_path):
    provider = ScriptedProvider("never", delay=5.0)
    driver = make_driver(provider, tmp_path=tmp_path)
    cancel_event = asyncio.Event()

    async def _cancel_soon():
        await provider.started.wait()
        cancel_event.set()

    canceller = asyncio.create_task(_cancel_soon())
    events = [event async for event in driver.stream("t-1", "go", cancel_event)]
    await canceller

    assert events[-1].final
    assert decode(events[-1].text) == ErrorResponse(content="Exchange cancelled")


def test_create_driver_wires_config(tmp_path):
    config = Config()
    config.agent.max_iterations = 7
    config.session.storage = "memory"
    config.interaction.channel = "auto"
    config.workspace.path = str(tmp_path)

    driver = create_driver(config, provider=ScriptedProvider())

    assert driver.settings == DriverSettings(max_iterations=7, max_turns=30, max_wall_seconds=None)
    assert isinstance(driver.store, MemoryCheckpointStore)
    assert isinstance(driver.loop.interaction.channel, AutoChannel)
    assert driver.loop.registry.list_tools() == ["shell", "read", "write", "search"]
    assert driver.loop.registry.runtime_base_path == tmp_path.resolve()


class RecordingStore(MemoryCheckpointStore):
    def __init__(self):
        super().__init__()
        self.saved = []

    async def save(self, thread_id, state):
        self.saved.append((state.status, state.iteration_count))
        await super().save(thread_id, state)


@pytest.mark.asyncio
async def test_iteration_cap_is_applied_before_the_checkpoint(tmp_path):
    store = RecordingStore()
    driver = make_driver(
        ScriptedProvider(repeat=echo_call()),
        store=store,
        settings=DriverSettings(max_iterations=2),
        tmp_path=tmp_path,
    )

    state = await driver.run("t-1", "loop forever")

    assert store.saved[-1] == (Status.END, 2)
    assert all(count < 2 for status, count in store.saved if status is Status.CONTINUE)
    assert decode(state.conversation[-1].content) == ErrorResponse(content="Iteration limit reached (2)")


@pytest.mark.asyncio
async def test_turn_cap_is_applied_before_the_checkpoint(tmp_path):
    store = RecordingStore()
    driver = make_driver(
        ScriptedProvider(repeat=THOUGHT),
        store=store,
        settings=DriverSettings(max_iterations=3, max_turns=2),
        tmp_path=tmp_path,
    )

    await driver.run("t-1", "think")

    # exchange start, one continuing turn, then the capped turn
    assert [status for status, _ in store.saved] == [Status.CONTINUE, Status.CONTINUE, Status.END]


@pytest.mark.asyncio
async def test_thread_lock_is_released_after_the_exchange(tmp_path):
    driver = make_driver(ScriptedProvider(FINAL, FINAL), tmp_path=tmp_path)

    await driver.run("t-1", "q")
    await driver.run("t-2", "q")

    assert not driver.is_running("t-1")
    assert driver._locks == {}
