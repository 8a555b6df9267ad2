class CodexIntelError(Exception):
    """Base error for the turn engine."""


class ConfigError(CodexIntelError):
    """Raised when configuration is invalid."""


class ProcessError(CodexIntelError):
    """Base error for subprocess execution failures."""


class SpawnError(ProcessError):
    """Raised when a subprocess cannot be started at all."""

    def __init__(self, program: str, reason: str) -> None:
        super().__init__(f"Failed to start {program}: {reason}")
        self.program = program
        self.reason = reason


class CodexNotFoundError(CodexIntelError):
    """Raised when no usable Codex executable can be located."""


class EngineError(CodexIntelError):
    """Raised when a turn is requested with invalid input."""
