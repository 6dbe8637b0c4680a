"""Tools package for xmlagent."""

from xmlagent.config import ShellToolConfig
from xmlagent.tools.read import ReadTool
from xmlagent.tools.registry import Tool, ToolOutcome, ToolRegistry, dispatch
from xmlagent.tools.search import SearchTool
from xmlagent.tools.shell import ShellTool
from xmlagent.tools.write import WriteTool

BUILTIN_TOOLS: dict[str, type[Tool]] = {
    "shell": ShellTool,
    "read": ReadTool,
    "write": WriteTool,
    "search": SearchTool,
}


def create_default_registry(
    enabled: list[str],
    base_path=None,
    shell_config: ShellToolConfig | None = None,
) -> ToolRegistry:
    """Build a registry with the enabled built-in tools."""
    registry = ToolRegistry(base_path=base_path)
    for name in enabled:
        tool_cls = BUILTIN_TOOLS.get(name)
        if tool_cls is ShellTool:
            registry.register(ShellTool(shell_config))
        elif tool_cls is not None:
            registry.register(tool_cls())
    return registry


__all__ = [
    "BUILTIN_TOOLS",
    "ReadTool",
    "SearchTool",
    "ShellTool",
    "Tool",
    "ToolOutcome",
    "ToolRegistry",
    "WriteTool",
    "create_default_registry",
    "dispatch",
]
