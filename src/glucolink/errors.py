"""Errores del driver."""

from __future__ import annotations

from typing import Any


class DriverError(Exception):
    """Base class for failures that end a driver run."""

    retryable = False


class UnsupportedDeviceError(DriverError):
    """The connected device is not part of the supported product family."""


class TransportError(DriverError):
    """The transport failed to connect, fetch or report device info."""


class ConnectionTimeoutError(TransportError):
    """The transport did not connect within the configured timeout."""


class NoDataToUploadError(DriverError):
    """Normalization produced no records."""


class UploadError(DriverError):
    """The upload client rejected the submission.

    The run payload is kept unchanged so the host can log or retry it.
    """

    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class RecordValidationError(ValueError):
    """A canonical record could not be constructed from the given fields."""
