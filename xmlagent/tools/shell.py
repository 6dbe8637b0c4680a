"""Shell tool for executing commands in the workspace."""

import asyncio
import os
from typing import Any

from xmlagent.config import ShellToolConfig, get_config
from xmlagent.logging import get_logger
from xmlagent.tools.paths import workspace_root
from xmlagent.tools.registry import Tool, ToolOutcome

log = get_logger(__name__)


class ShellTool(Tool):
    """Execute shell commands.

    Command vetting happens in the safety gate before dispatch; this tool
    only runs what it is given, with a timeout and abort support.
    """

    name = "shell"
    description = "Execute a shell command in the workspace and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
        },
        "required": ["command"],
    }

    def __init__(self, config: ShellToolConfig | None = None):
        self.config = config or get_config().tools.shell
        self.timeout_seconds = float(self.config.timeout or 30)

    async def execute(self, command: str, **kwargs: Any) -> ToolOutcome:
        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolOutcome(success=False, error="Command aborted")

        cwd = workspace_root(kwargs)
        cwd.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, cwd=str(cwd))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
        )

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if isinstance(abort_event, asyncio.Event):
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(wait_tasks, return_when=asyncio.FIRST_COMPLETED)

            if communicate_task not in done:
                await self._kill(process, communicate_task)
                return ToolOutcome(success=False, error="Command aborted")
            stdout, stderr = await communicate_task
        except asyncio.CancelledError:
            await self._kill(process, communicate_task)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        output = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"

        max_length = self.config.max_output_chars
        if len(output) > max_length:
            output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode != 0:
            return ToolOutcome(
                success=False,
                output=output,
                error=f"Command exited with code {process.returncode}: {output or '[no output]'}",
            )
        return ToolOutcome(success=True, output=output or "[no output]")

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass
