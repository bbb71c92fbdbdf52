"""Error taxonomy and result type for IdP calls."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure classes of an IdP call."""

    TRANSPORT = "transport"  # no response
    TIMEOUT = "timeout"
    CLIENT = "client"  # HTTP 4xx
    SERVER = "server"  # HTTP 5xx
    DECODE = "decode"  # malformed JSON body
    AUTH = "auth"  # token exchange failed
    CONFIG = "config"  # missing credentials, bad URL

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT

    @property
    def fatal(self) -> bool:
        return self is ErrorKind.CONFIG


_TRANSIENT = frozenset(
    {ErrorKind.TRANSPORT, ErrorKind.TIMEOUT, ErrorKind.SERVER, ErrorKind.AUTH}
)


class IdpError(Exception):
    """Normalized IdP failure.

    Carried as a value inside IdpResult; only IdpResult.unwrap() raises it.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.response = response

    @property
    def transient(self) -> bool:
        return self.kind.transient

    def __repr__(self) -> str:
        return (
            f"IdpError(kind={self.kind.value!r}, status_code={self.status_code!r}, "
            f"message={self.message!r})"
        )


@dataclass(frozen=True)
class IdpResult(Generic[T]):
    """Outcome of an IdP call: data on success, error otherwise."""

    data: T | None = None
    error: IdpError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T | None = None) -> "IdpResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, error: IdpError) -> "IdpResult[T]":
        return cls(error=error)

    def unwrap(self) -> T | None:
        """Return data or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.data


class RetryableSyncError(Exception):
    """Raised by message handlers to request redelivery of a message."""

    def __init__(self, error: IdpError):
        super().__init__(f"Transient IdP failure ({error.kind.value}): {error.message}")
        self.error = error
