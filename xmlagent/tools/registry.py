"""Tool registry, base tool class and dispatch."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from xmlagent.exceptions import ToolExecutionError, ToolNotFoundError
from xmlagent.logging import get_logger

log = get_logger(__name__)


class ToolOutcome(BaseModel):
    """Normalized result of one tool invocation."""

    success: bool = True
    output: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolOutcome":
        """Ensure failed outcomes always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def observation_text(self) -> str:
        """Text folded into the conversation as the observation."""
        if self.success:
            return self.output.strip() or "No output from tool"
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolOutcome:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments plus ``_``-prefixed runtime context

        Returns:
            ToolOutcome with success status and output
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition (name, description, JSON schema)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments are present.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        for field in self.parameters.get("required", []):
            if field not in arguments:
                raise ToolExecutionError(self.name, f"Missing required argument: {field}")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, base_path: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._runtime_base_path = Path.cwd()
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set the workspace root handed to tools."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        return self._runtime_base_path

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if not tool.name:
            raise ValueError("Tool must have a name")
        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.get_definition() for tool in self._tools.values()]

    def describe(self) -> str:
        """One line per tool, used as the catalogue in the system prompt."""
        if not self._tools:
            return "(no tools available)"
        lines = []
        for tool in self._tools.values():
            params = ", ".join(tool.parameters.get("properties", {}).keys())
            lines.append(f"{tool.name}: {tool.description} Arguments: {params or 'none'}")
        return "\n".join(lines)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any],
        session_id: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolOutcome:
        """Run a tool and normalize every failure into a failed outcome.

        Only ``asyncio.CancelledError`` propagates, so cancelling the caller
        still cancels the tool.
        """
        try:
            return await self._execute(name, arguments, session_id, abort_event)
        except asyncio.CancelledError:
            raise
        except ToolNotFoundError as e:
            log.warning("Tool not found", tool=name)
            return ToolOutcome(success=False, error=str(e))
        except ToolExecutionError as e:
            log.warning("Tool execution failed", tool=name, error=str(e))
            return ToolOutcome(success=False, error=str(e))
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolOutcome(success=False, error=str(ToolExecutionError(name, str(e))))

    async def _execute(
        self,
        name: str,
        arguments: dict[str, Any],
        session_id: str | None,
        abort_event: asyncio.Event | None,
    ) -> ToolOutcome:
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolOutcome] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    **arguments,
                    _runtime_base_path=self.runtime_base_path,
                    _session_id=(session_id or "").strip(),
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolOutcome):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)


async def dispatch(
    tool_name: str,
    arguments: dict[str, Any],
    registry: ToolRegistry,
    abort_event: asyncio.Event | None = None,
) -> ToolOutcome:
    """Resolve ``tool_name`` in ``registry`` and run it; never raises on failure."""
    return await registry.dispatch(tool_name, arguments, abort_event=abort_event)
