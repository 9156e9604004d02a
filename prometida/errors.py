"""Error taxonomy shared by the gateway, the store and the views."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AuthError(Exception):
    """Raised when credentials are rejected or the session has expired."""

    message: str
    status_code: int = 401

    def __str__(self) -> str:  # pragma: no cover - dataclass convenience
        return self.message


@dataclass
class RemoteError(Exception):
    """Raised when a backend call fails (network, permission, constraint)."""

    message: str
    status_code: int = 502

    def __str__(self) -> str:  # pragma: no cover - dataclass convenience
        return self.message


@dataclass
class ValidationError(Exception):
    """Raised for input rejected locally, before any network call."""

    message: str
    status_code: int = 400

    def __str__(self) -> str:  # pragma: no cover - dataclass convenience
        return self.message
