from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the deliberation pipeline."""


class InvalidTransitionError(PipelineError):
    """A status change outside the allowed edge set for its hierarchy level."""

    def __init__(self, level: str, entity_path: str, current: str, requested: str, allowed: list[str]) -> None:
        self.level = level
        self.entity_path = entity_path
        self.current = current
        self.requested = requested
        self.allowed = allowed
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Invalid {level} transition: {current} -> {requested} ({entity_path}). Allowed: {allowed_text}"
        )


class EntityNotFoundError(PipelineError, KeyError):
    """Unknown milestone, phase or task identifier."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class SchemaValidationError(PipelineError, ValueError):
    """Agent output that cannot be decoded into a trusted, typed payload."""


class AgentCallError(PipelineError):
    """An external agent call failed. Nothing was written for that call."""

    def __init__(self, agent: str, message: str) -> None:
        self.agent = agent
        super().__init__(f"{agent}: {message}")


class AgentTimeoutError(AgentCallError):
    """The agent call exceeded its deadline."""

    def __init__(self, agent: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(agent, f"timed out after {timeout_seconds:g}s")


class AgentProcessError(AgentCallError):
    """The agent process exited non-zero or produced unusable output."""

    def __init__(self, agent: str, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(agent, message)


class StateFileError(PipelineError, OSError):
    """An existing state file is unreadable or corrupt."""


class PipelineSetupError(PipelineError):
    """A command precondition is not met (missing master plan, existing state, and so on)."""
