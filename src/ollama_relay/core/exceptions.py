"""Custom exceptions for ollama-relay."""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay session errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(RelayError):
    """Configuration error."""
    pass


class DependencyMissingError(RelayError):
    """A required external tool is not installed."""

    def __init__(self, binary: str, message: Optional[str] = None):
        super().__init__(message or f"{binary} not found. Please install it first.", code="dependency_missing")
        self.binary = binary


class StageError(RelayError):
    """A stage of the tunnel chain failed."""

    def __init__(self, message: str, stage: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.stage = stage


class StartupError(StageError):
    """A stage's process did not spawn or died immediately."""
    pass


class HealthCheckError(StageError):
    """A stage spawned but its readiness probe never succeeded."""
    pass


class ConnectivityError(StageError):
    """The end-to-end path probe failed."""
    pass


class ProcessDiedError(RelayError):
    """A previously healthy process died while the session was running."""

    def __init__(self, role: str, pid: Optional[int] = None, exit_code: Optional[int] = None):
        super().__init__(f"{role} process died", code="process_died")
        self.role = role
        self.pid = pid
        self.exit_code = exit_code


class SessionStateError(RelayError):
    """Illegal session state transition."""
    pass


class SessionCancelled(Exception):
    """Raised by cancellation-aware waits once the session is cancelled."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason
