#!/usr/bin/python3
"""Exceptions raised by the auto-login modules."""

from __future__ import annotations

import enum


class AutoLoginError(Exception):
    """Base class for every auto-login failure."""


class ConfigurationError(AutoLoginError):
    """No credentials are stored."""


class ValidationError(AutoLoginError):
    pass


class KeyDerivationError(AutoLoginError):
    pass


class StorageError(AutoLoginError):
    pass


class TokenExtractionError(AutoLoginError):
    """The login page did not contain a magic token."""


class DecryptionFailure(enum.Enum):
    CORRUPTED_DATA = "corrupted_data"
    AUTH_FAILURE = "auth_failure"


class NetworkFailure(enum.Enum):
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    CONNECTION_FAILURE = "connection_failure"


class PortalFailure(enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    AMBIGUOUS_RESPONSE = "ambiguous_response"


class DecryptionError(AutoLoginError):
    def __init__(self, kind: DecryptionFailure, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class NetworkError(AutoLoginError):
    def __init__(self, kind: NetworkFailure, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class PortalError(AutoLoginError):
    def __init__(self, kind: PortalFailure, message: str) -> None:
        super().__init__(message)
        self.kind = kind
