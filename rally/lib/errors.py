"""
Error types for rally.

Every failure of a reviewer/reviewee invocation is an AgentError subclass and
is fatal to the run. Collaborator failures (GitHub, prompts) have their own
types and are only swallowed at best-effort call sites.
"""


class RallyError(Exception):
    """Base class for all rally errors."""
    pass


class UnsupportedAgent(RallyError):
    """Raised when an agent selector string names no known adapter."""

    def __init__(self, name: str, supported: list[str] | None = None):
        self.name = name
        self.supported = supported or []
        message = f"Unsupported agent: {name}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message)


class TimeoutExceeded(RallyError):
    """An agent call did not finish within timeout_secs."""

    def __init__(self, role: str, seconds: int):
        self.role = role
        self.seconds = seconds
        super().__init__(f"{role.capitalize()} timeout after {seconds} seconds")


class ConfigError(RallyError):
    """Configuration file has a value of the wrong type."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Invalid config value for '{key}': {message}")


class AgentError(RallyError):
    """Base class for failures of a single agent call."""

    def __init__(self, agent: str, message: str):
        self.agent = agent
        super().__init__(message)


class SpawnFailure(AgentError):
    def __init__(self, agent: str, reason: str):
        self.reason = reason
        super().__init__(agent, f"Failed to spawn {agent} process: {reason}")


class ProcessExitFailure(AgentError):
    """The agent CLI exited non-zero. Carries the tail of its stderr."""

    def __init__(self, agent: str, returncode: int, stderr: str):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(agent, f"{agent} process failed with status {returncode}: {stderr}")


class MissingResult(AgentError):
    def __init__(self, agent: str):
        super().__init__(agent, f"No result received from {agent}")


class UnknownEnumValue(AgentError):
    """Agent returned an action/status outside the allowed set."""

    def __init__(self, agent: str, field: str, value: str):
        self.field = field
        self.value = value
        label = {"action": "review action", "status": "reviewee status"}.get(field, field)
        super().__init__(agent, f"Unknown {label}: {value}")


class StructuredOutputError(AgentError):
    """Structured result is not valid JSON or fails schema validation."""

    def __init__(self, agent: str, detail: str):
        self.detail = detail
        super().__init__(agent, f"Invalid structured output from {agent}: {detail}")


class AuthenticationFailure(AgentError):
    def __init__(self, agent: str, hint: str = ""):
        message = f"{agent} authentication failed"
        if hint:
            message += f". {hint}"
        super().__init__(agent, message)


class TurnFailed(AgentError):
    """Agent reported a failed turn inside its event stream."""

    def __init__(self, agent: str, reason: str):
        self.reason = reason
        super().__init__(agent, f"{agent} turn failed: {reason}")


class StreamReadError(AgentError):
    def __init__(self, agent: str, stream: str, reason: str):
        self.stream = stream
        super().__init__(agent, f"Error reading {stream} from {agent}: {reason}")


class NoActiveSession(AgentError):
    """A continuation was requested before any session was recorded."""

    def __init__(self, agent: str, role: str):
        self.role = role
        super().__init__(agent, f"No active {role} session for {agent}")
