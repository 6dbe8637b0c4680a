import asyncio

import pytest

from xmlagent.tools.registry import Tool, ToolOutcome, ToolRegistry, dispatch


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back."
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.calls: list[dict] = []

    async def execute(self, **kwargs):
        self.calls.append(kwargs)
        return ToolOutcome(success=True, output=kwargs["text"])


class BrokenTool(Tool):
    name = "broken"
    description = "Always raises."
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise RuntimeError("disk on fire")


class BadPayloadTool(Tool):
    name = "bad_payload"
    description = "Returns the wrong type."
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return "not an outcome"


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolOutcome(success=True, output="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False
        self.started = asyncio.Event()

    async def execute(self, **kwargs):
        self.started.set()
        try:
            await asyncio.sleep(10.0)
            return ToolOutcome(success=True, output="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_failed_outcome_always_has_error():
    assert ToolOutcome(success=False).error == "Tool execution failed"
    assert ToolOutcome(success=False, output="partial").error == "partial"
    assert ToolOutcome(success=True).error is None


def test_observation_text():
    assert ToolOutcome(success=True, output="  hi \n").observation_text() == "hi"
    assert ToolOutcome(success=True).observation_text() == "No output from tool"
    assert ToolOutcome(success=False, error="boom").observation_text() == "Error: boom"


def test_describe_lists_tools_with_arguments():
    registry = ToolRegistry()
    assert registry.describe() == "(no tools available)"

    registry.register(EchoTool())

    assert registry.describe() == "echo: Echo text back. Arguments: text"
    assert registry.list_tools() == ["echo"]
    assert registry.get_definitions()[0]["name"] == "echo"


def test_register_requires_a_name():
    tool = EchoTool()
    tool.name = ""

    with pytest.raises(ValueError):
        ToolRegistry().register(tool)


@pytest.mark.asyncio
async def test_dispatch_passes_arguments_and_runtime_context(tmp_path):
    registry = ToolRegistry(base_path=tmp_path)
    tool = EchoTool()
    registry.register(tool)

    outcome = await registry.dispatch("echo", {"text": "hi"}, session_id="t-1")

    assert outcome == ToolOutcome(success=True, output="hi")
    call = tool.calls[0]
    assert call["_runtime_base_path"] == tmp_path.resolve()
    assert call["_session_id"] == "t-1"
    assert isinstance(call["_abort_event"], asyncio.Event)


@pytest.mark.asyncio
async def test_dispatch_unknown_tool_is_a_failed_outcome():
    outcome = await dispatch("foo", {}, ToolRegistry())

    assert not outcome.success
    assert outcome.error == "Tool not found: foo"


@pytest.mark.asyncio
async def test_dispatch_normalizes_exceptions():
    registry = ToolRegistry()
    registry.register(BrokenTool())

    outcome = await registry.dispatch("broken", {})

    assert not outcome.success
    assert outcome.error == "Tool 'broken' failed: disk on fire"


@pytest.mark.asyncio
async def test_dispatch_rejects_invalid_payload():
    registry = ToolRegistry()
    registry.register(BadPayloadTool())

    outcome = await registry.dispatch("bad_payload", {})

    assert not outcome.success
    assert "invalid result payload" in outcome.error


@pytest.mark.asyncio
async def test_dispatch_reports_missing_required_argument():
    registry = ToolRegistry()
    registry.register(EchoTool())

    outcome = await registry.dispatch("echo", {})

    assert not outcome.success
    assert "Missing required argument: text" in outcome.error


@pytest.mark.asyncio
async def test_dispatch_times_out():
    registry = ToolRegistry()
    registry.register(SlowTool())

    outcome = await registry.dispatch("slow", {})

    assert not outcome.success
    assert "Execution timed out after 1s" in outcome.error


@pytest.mark.asyncio
async def test_dispatch_abort_event_cancels_tool():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)
    abort_event = asyncio.Event()

    task = asyncio.create_task(registry.dispatch("cancellable", {}, abort_event=abort_event))
    await asyncio.wait_for(tool.started.wait(), timeout=1.0)
    abort_event.set()
    outcome = await asyncio.wait_for(task, timeout=2.0)

    assert not outcome.success
    assert "Execution aborted" in outcome.error
    assert tool.cancelled


@pytest.mark.asyncio
async def test_dispatch_propagates_cancellation():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    task = asyncio.create_task(registry.dispatch("cancellable", {}))
    await asyncio.wait_for(tool.started.wait(), timeout=1.0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert tool.cancelled
