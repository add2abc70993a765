"""Error taxonomy for the agent core.

Tool- and action-level errors are recovered locally and turned into transcript
entries. Only transport failures and approval denials end a turn early.
"""

from __future__ import annotations


class CorexError(Exception):
    """Base class for all agent-core errors."""


class ConcurrentRequestError(CorexError):
    """A second stream or turn was started while one is already in flight."""


class SessionBusyError(ConcurrentRequestError):
    """A user message arrived while the session is not idle."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Session is busy ({state}); wait for the current response to finish")
        self.state = state


class ToolExecutionError(CorexError):
    """A tool executor failed. Captured into a ToolResult, never raised past the registry."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message


class ApprovalDenied(CorexError):
    """A tool call was refused by the user or by policy."""

    def __init__(self, tool_name: str, reason: str = "denied by user") -> None:
        super().__init__(f"Tool '{tool_name}' was not executed: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class PatchTargetMismatch(CorexError):
    """The search text of a patch action is not present in the live file."""

    def __init__(self, file_path: str) -> None:
        super().__init__(f"Search text not found verbatim in {file_path}")
        self.file_path = file_path


class MalformedPatch(CorexError):
    """A block carries patch markers that do not form a SEARCH/REPLACE pair."""

    def __init__(self, file_path: str) -> None:
        super().__init__(f"Malformed SEARCH/REPLACE block for {file_path}; file left unchanged")
        self.file_path = file_path


class IterationCapExceeded(CorexError):
    """The tool-calling loop hit its iteration cap."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Tool loop stopped after {max_iterations} iterations")
        self.max_iterations = max_iterations


class TransportError(CorexError):
    """The model call itself failed. Fatal for the current turn."""

    def __init__(self, message: str, code: str = "", retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    @property
    def user_message(self) -> str:
        if self.retryable:
            return f"AI request failed: {self.message}. You can retry the message."
        return f"AI request failed: {self.message}"


class FileAccessError(CorexError):
    """A file collaborator operation failed. The message is safe to show to users."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message
