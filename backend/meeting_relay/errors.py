from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for errors raised by the transcript relay."""


class ConflictError(RelayError):
    """The user already owns an active bot or upload session."""

    def __init__(self, message: str, session: Optional[object] = None) -> None:
        super().__init__(message)
        self.session = session


class NotFoundError(RelayError):
    pass


class ProviderError(RelayError):
    """Upstream provider answered with a non-2xx status or was unreachable."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} (status {self.status})" if self.status else self.message


class ChannelError(RelayError):
    """A transcript delivery channel could not be established or was lost."""


class PersistenceError(RelayError):
    pass


class ConfigurationError(RelayError):
    pass
