"""Bridgenet exception hierarchy."""

from pathlib import Path
from typing import Any


class BridgenetError(Exception):
    """Base exception for all bridgenet errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(BridgenetError):
    """Error in harness configuration or misuse of a configured object."""

    pass


class DependencyError(BridgenetError):
    """A required external tool is missing or not running."""

    def __init__(self, message: str, tool: str, hint: str = "") -> None:
        super().__init__(message, {"tool": tool})
        self.tool = tool
        self.hint = hint


class CommandError(BridgenetError):
    """An external command exited with a non-zero status."""

    def __init__(self, message: str, command: list[str], exit_code: int | None, stderr: str = "") -> None:
        super().__init__(message, {"command": " ".join(command), "exit_code": exit_code})
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class UniquenessConflictError(BridgenetError):
    """A resource for the requested environment id already exists."""

    def __init__(self, message: str, env_id: str, resource: str, remediation: str) -> None:
        super().__init__(message, {"env_id": env_id, "resource": resource})
        self.env_id = env_id
        self.resource = resource
        self.remediation = remediation


class StageFailureError(BridgenetError):
    """A launch stage failed; the pipeline rolled back what it had started."""

    def __init__(
        self,
        message: str,
        env_id: str,
        stage: str,
        error: BaseException | None,
        rollback_complete: bool,
    ) -> None:
        super().__init__(
            message,
            {"env_id": env_id, "stage": stage, "rollback_complete": rollback_complete},
        )
        self.env_id = env_id
        self.stage = stage
        self.error = error
        self.rollback_complete = rollback_complete


class LockTimeoutError(BridgenetError):
    """A reuse-lock follower could not attach before its deadline."""

    def __init__(self, message: str, lock_path: Path, deadline_seconds: float) -> None:
        super().__init__(message, {"lock_path": str(lock_path), "deadline_seconds": deadline_seconds})
        self.lock_path = lock_path
        self.deadline_seconds = deadline_seconds


class WaitTimeoutError(BridgenetError):
    """A wait finished without a matching value."""

    def __init__(self, message: str, source: str, timeout_seconds: float) -> None:
        super().__init__(message, {"source": source, "timeout_seconds": timeout_seconds})
        self.source = source
        self.timeout_seconds = timeout_seconds


class EventTimeoutError(WaitTimeoutError):
    """No matching chain event arrived in time."""

    pass


class StorageTimeoutError(WaitTimeoutError):
    """No matching storage value arrived in time."""

    pass


class SubscriptionSetupError(BridgenetError):
    """The event or storage subscription could not be established."""

    def __init__(self, message: str, source: str) -> None:
        super().__init__(message, {"source": source})
        self.source = source


class ProcessTerminationError(BridgenetError):
    """A tracked process could not be terminated."""

    def __init__(self, message: str, pid: int) -> None:
        super().__init__(message, {"pid": pid})
        self.pid = pid
