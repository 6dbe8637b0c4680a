"""Workspace path resolution shared by file tools."""

from pathlib import Path
from typing import Any


def workspace_root(kwargs: dict[str, Any]) -> Path:
    """Workspace root injected by the registry, or the current directory."""
    raw = kwargs.get("_runtime_base_path")
    return Path(raw).expanduser().resolve() if raw is not None else Path.cwd().resolve()


def resolve_in_workspace(path: str, root: Path) -> Path | None:
    """Resolve ``path`` against ``root``; ``None`` if it escapes the root."""
    requested = Path(path).expanduser()
    candidate = (requested if requested.is_absolute() else root / requested).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate
