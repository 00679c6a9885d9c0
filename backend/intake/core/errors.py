from __future__ import annotations


class IntakeError(RuntimeError):
    """Base error for the intake layer."""

    def __init__(self, code: str, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


class StorageFault(IntakeError):
    """Raised by a state backend when its I/O fails.

    The state store swallows these; callers of the store never see one.
    """

    def __init__(self, message: str, backend: str) -> None:
        super().__init__("STORAGE_FAULT", message)
        self.backend = backend


class TransportError(IntakeError):
    """Raised when an HTTP call fails after its retry budget is spent."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(code, message, retryable=retryable)
        self.status_code = status_code
        self.attempts = attempts


class ShutdownRejected(IntakeError):
    """Raised when a new outbound attempt is refused because shutdown began."""

    def __init__(self, message: str = "http client is shutting down") -> None:
        super().__init__("SHUTTING_DOWN", message)


class ConcurrencyRejected(IntakeError):
    """Raised when dispatch admission is refused because shutdown began."""

    def __init__(self, message: str = "dispatch controller is shutting down") -> None:
        super().__init__("DISPATCH_REJECTED", message)
