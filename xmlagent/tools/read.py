"""Read tool for reading file contents."""

from typing import Any

from xmlagent.logging import get_logger
from xmlagent.tools.paths import resolve_in_workspace, workspace_root
from xmlagent.tools.registry import Tool, ToolOutcome

log = get_logger(__name__)

MAX_READ_BYTES = 100_000


class ReadTool(Tool):
    """Read file contents from the workspace."""

    name = "read"
    description = "Read the contents of a file in the workspace."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the workspace",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        offset: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolOutcome:
        root = workspace_root(kwargs)
        file_path = resolve_in_workspace(path, root)
        if file_path is None:
            return ToolOutcome(success=False, error=f"Path is outside the workspace: {path}")
        if not file_path.exists():
            return ToolOutcome(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolOutcome(success=False, error=f"Not a file: {path}")

        size = file_path.stat().st_size
        if size > MAX_READ_BYTES:
            return ToolOutcome(
                success=False,
                error=f"File too large: {size} bytes (max {MAX_READ_BYTES})",
            )

        try:
            lines = file_path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolOutcome(success=False, error=str(e))

        start = max(1, int(offset or 1))
        selected = lines[start - 1:]
        if limit:
            selected = selected[: int(limit)]

        header = f"[{file_path.relative_to(root)} lines {start}-{start + len(selected) - 1}]"
        return ToolOutcome(success=True, output=header + "\n" + "\n".join(selected))
