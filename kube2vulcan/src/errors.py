from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigError(BridgeError):
    """Raised when the process configuration is missing or invalid."""


class StreamOpenError(BridgeError):
    """Raised when a watch stream cannot be opened. Fatal for the process."""


class StreamError(BridgeError):
    """Raised when an open watch stream ends or fails while reading."""


class DecodeError(BridgeError):
    """Raised when a watch message cannot be decoded into an event."""


class StoreError(BridgeError):
    """Raised when etcd answers a request with an error.

    ``error_code`` carries etcd's ``errorCode`` when the response body had one.
    """

    def __init__(self, message: str, error_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class StoreUnavailableError(StoreError):
    """Raised when no configured etcd endpoint could be reached."""
