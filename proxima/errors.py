"""Project-specific exception types."""

from __future__ import annotations

from typing import Any


class ProximaError(RuntimeError):
    """Base error for domain-level proxima failures."""

    def __init__(
        self,
        message: str = '',
        *,
        status_code: int | None = None,
        command: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.command = command


class TransportError(ProximaError):
    """Raised when a backend cannot be reached (network or process spawn)."""


class AuthenticationError(ProximaError):
    """Raised when credentials are rejected. Never retried automatically."""


class NotFoundError(ProximaError):
    """Raised when no matching VM or template exists."""


class ProvisioningError(ProximaError):
    """Raised when a remote create, clone, or configure step is rejected."""


class OperationTimeoutError(ProximaError, TimeoutError):
    """Raised when a bounded wait ends without reaching the target state."""


class NoAuthMethodError(ProximaError):
    """Raised when the guest SSH executor has no usable credential."""


class UnsupportedError(ProximaError, NotImplementedError):
    """Raised for operations the chosen backend does not implement."""


class CommandFailedError(ProximaError):
    """Raised when a remote guest command finishes unsuccessfully."""


class CommandStateError(ProximaError):
    """Raised on an illegal RemoteCommand status transition."""


class ConfigError(ProximaError):
    """Raised when the configuration file is missing or invalid."""


def rewrap(ex: ProximaError, context: str) -> ProximaError:
    """Return a copy of ``ex`` with ``context`` prefixed to its message."""
    new = type(ex)(f'{context}: {ex}')
    new.__dict__.update(ex.__dict__)
    return new
