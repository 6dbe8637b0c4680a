"""Prompt templates shipped with xmlagent.

A template is looked up in the personal directory (``~/.xmlagent/instructions``)
before the packaged one. ``XMLAGENT_INSTRUCTIONS_DIR`` points the packaged
lookup somewhere else. Placeholders use ``str.format`` syntax; unknown ones
are left in place so literal braces in a template survive.
"""

import os
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
PERSONAL_DIR = Path("~/.xmlagent/instructions").expanduser()


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Finds, caches and renders prompt templates."""

    def __init__(self, base_dir: Path | str | None = None, personal_dir: Path | str | None = None):
        if base_dir is None:
            base_dir = os.getenv("XMLAGENT_INSTRUCTIONS_DIR") or PACKAGE_DIR
        self.search_path = [
            Path(personal_dir if personal_dir is not None else PERSONAL_DIR).expanduser(),
            Path(base_dir).expanduser(),
        ]
        self._templates: dict[str, str] = {}

    def load(self, name: str) -> str:
        """Template text, stripped.

        Raises:
            FileNotFoundError: no directory on the search path has ``name``
        """
        if name not in self._templates:
            for directory in self.search_path:
                candidate = directory / name
                if candidate.is_file():
                    self._templates[name] = candidate.read_text(encoding="utf-8").strip()
                    break
            else:
                searched = ", ".join(str(directory) for directory in self.search_path)
                raise FileNotFoundError(f"Prompt template {name!r} not found in: {searched}")
        return self._templates[name]

    def render(self, name: str, **variables: object) -> str:
        return self.load(name).format_map(_KeepMissing({key: str(value) for key, value in variables.items()}))
