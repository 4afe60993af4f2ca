from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for task relay failures."""


class TaskValidationError(RelayError):
    """Raised when a submitted task is missing fields required by its kind."""


class TaskNotFoundError(RelayError):
    """Raised when a task id is unknown to the broker or has already expired."""


class UnknownTaskError(TaskNotFoundError):
    """Raised when a worker reports a result for a task the broker does not hold."""


class ExecutionTimeoutError(RelayError):
    """Raised when a task execution exceeds its wall-clock deadline."""

    def __init__(self, message: str = "Timeout", *, stdout: str = "", metadata: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.metadata = dict(metadata or {})


class CollaboratorError(RelayError):
    """Raised when a shell, filesystem or backend collaborator call fails."""


class BackendSessionNotFound(CollaboratorError):
    """Raised when the backend refuses to resume a session it no longer knows."""


class DeliveryError(RelayError):
    """Raised when a notification could not be delivered."""


class BrokerUnavailableError(RelayError):
    """Raised by the worker when the broker cannot be reached."""


class BrokerAuthError(BrokerUnavailableError):
    """Raised by the worker when the broker rejects its bearer token."""


__all__ = [
    "BackendSessionNotFound",
    "BrokerAuthError",
    "BrokerUnavailableError",
    "CollaboratorError",
    "DeliveryError",
    "ExecutionTimeoutError",
    "RelayError",
    "TaskNotFoundError",
    "TaskValidationError",
    "UnknownTaskError",
]
