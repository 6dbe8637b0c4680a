"""Custom exceptions for xmlagent."""


class XmlAgentError(Exception):
    """Base exception for xmlagent."""

    pass


class ConfigurationError(XmlAgentError):
    """Configuration-related errors."""

    pass


class LLMError(XmlAgentError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(XmlAgentError):
    """Model output violated the response envelope protocol."""

    def __init__(self, rule: str, message: str):
        super().__init__(f"{rule}: {message}")
        self.rule = rule
        self.detail = message


class ToolError(XmlAgentError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class SafetyRejectedError(ToolError):
    """Tool call rejected by the safety gate."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool execution blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class UserRejectedError(ToolError):
    """Tool call refused by the user."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool execution rejected by user: {tool_name}")
        self.tool_name = tool_name


class InteractionTimeoutError(XmlAgentError):
    """A bounded wait (model call or user interaction) expired."""

    def __init__(self, what: str, seconds: float):
        label = int(seconds) if float(seconds).is_integer() else seconds
        super().__init__(f"{what} timed out after {label}s")
        self.what = what
        self.seconds = seconds


class IterationLimitReachedError(XmlAgentError):
    """Session hit its tool-call iteration cap."""

    def __init__(self, max_iterations: int, unit: str = "Iteration"):
        super().__init__(f"{unit} limit reached ({max_iterations})")
        self.max_iterations = max_iterations


class SessionError(XmlAgentError):
    """Session-related errors."""

    pass


class CheckpointStoreError(SessionError):
    """Checkpoint store could not load or save a session."""

    def __init__(self, thread_id: str, message: str):
        super().__init__(f"Checkpoint store failure for '{thread_id}': {message}")
        self.thread_id = thread_id


class SessionBusyError(SessionError):
    """Another exchange is already running for the same thread id."""

    def __init__(self, thread_id: str):
        super().__init__(f"Session already running: {thread_id}")
        self.thread_id = thread_id
