"""Search tool: find files and matching lines in the workspace."""

import asyncio
import fnmatch
import re
from pathlib import Path
from typing import Any

from xmlagent.logging import get_logger
from xmlagent.tools.paths import workspace_root
from xmlagent.tools.registry import Tool, ToolOutcome

log = get_logger(__name__)

_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv"}


class SearchTool(Tool):
    """Search workspace files by name pattern and optional text query."""

    name = "search"
    description = "Search workspace files by glob pattern and optional text or regex query."
    timeout_seconds = 20.0
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Text or regular expression to look for (optional)",
            },
            "pattern": {
                "type": "string",
                "description": "Glob pattern for file names (default: '*')",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of results (default: 50)",
            },
        },
        "required": [],
    }

    async def execute(
        self,
        query: str | None = None,
        pattern: str = "*",
        limit: int = 50,
        **kwargs: Any,
    ) -> ToolOutcome:
        root = workspace_root(kwargs)
        if query:
            try:
                matcher = re.compile(query, re.IGNORECASE)
            except re.error:
                matcher = re.compile(re.escape(query), re.IGNORECASE)
        else:
            matcher = None

        results = await asyncio.to_thread(self._scan, root, pattern or "*", matcher, max(1, int(limit)))
        if not results:
            return ToolOutcome(success=True, output="No matches found")
        return ToolOutcome(success=True, output=f"Found {len(results)} match(es):\n" + "\n".join(results))

    @staticmethod
    def _scan(root: Path, pattern: str, matcher: re.Pattern[str] | None, limit: int) -> list[str]:
        results: list[str] = []
        if not root.is_dir():
            return results
        for path in sorted(root.rglob("*")):
            if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
                continue
            if not path.is_file() or not fnmatch.fnmatch(path.name, pattern):
                continue
            relative = path.relative_to(root)
            if matcher is None:
                results.append(str(relative))
            else:
                try:
                    lines = path.read_text(encoding="utf-8").splitlines()
                except (OSError, UnicodeDecodeError):
                    continue
                for number, line in enumerate(lines, start=1):
                    if matcher.search(line):
                        results.append(f"{relative}:{number}: {line.strip()}")
                        if len(results) >= limit:
                            return results
            if len(results) >= limit:
                break
        return results
