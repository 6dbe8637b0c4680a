"""xmlagent - a ReAct agent core speaking an XML response envelope."""

__version__ = "0.1.0"

from xmlagent.config import Config

__all__ = ["Config", "__version__"]
