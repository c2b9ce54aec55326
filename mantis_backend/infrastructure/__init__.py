"""Infrastructure layer exports."""

from .mantis import (
    AuthenticationError,
    ExportError,
    MantisError,
    MantisSession,
    authenticate,
    export_csv,
)

__all__ = [
    "AuthenticationError",
    "ExportError",
    "MantisError",
    "MantisSession",
    "authenticate",
    "export_csv",
]
