"""Write tool for creating or appending to workspace files."""

from typing import Any

from xmlagent.logging import get_logger
from xmlagent.tools.paths import resolve_in_workspace, workspace_root
from xmlagent.tools.registry import Tool, ToolOutcome

log = get_logger(__name__)


class WriteTool(Tool):
    """Write content to files inside the workspace."""

    name = "write"
    description = "Create or overwrite a file in the workspace."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the workspace",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolOutcome:
        root = workspace_root(kwargs)
        file_path = resolve_in_workspace(path, root)
        if file_path is None:
            return ToolOutcome(success=False, error=f"Path is outside the workspace: {path}")

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "a" if append else "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolOutcome(success=False, error=str(e))

        verb = "Appended" if append else "Written"
        return ToolOutcome(
            success=True,
            output=f"{verb} {len(content)} chars to {file_path.relative_to(root)}",
        )
