"""
Error taxonomy for Browser-Pilot.

Tool-side failures degrade gracefully: the orchestrator turns them into
results the model can read. Model-service failures propagate to the caller.
"""


class BrowserPilotError(Exception):
    """Base class for all Browser-Pilot errors."""


class ToolError(BrowserPilotError):
    """Base class for failures talking to a tool provider."""


class ToolConnectionError(ToolError):
    """The tool endpoint could not be reached, or the client is not connected."""

    def __init__(self, message: str, endpoint: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.endpoint = endpoint
        self.attempts = attempts


class ToolTimeoutError(ToolError):
    """A tool call exceeded its timeout. The remote action may still have run."""

    def __init__(self, tool_name: str, timeout: float | None = None):
        detail = f" after {timeout:g} seconds" if timeout is not None else ""
        super().__init__(f"Tool {tool_name} timed out{detail}")
        self.tool_name = tool_name
        self.timeout = timeout


class ToolExecutionError(ToolError):
    """The remote tool reported a failure that is not a timeout."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ModelAPIError(BrowserPilotError):
    """The model service returned an error response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
