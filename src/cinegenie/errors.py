"""Exceptions shared across the CineGenie layers."""


class CineGenieError(Exception):
    """Base class for every error the application reports to the user."""


class ConfigurationError(CineGenieError):
    """Raised when required configuration, such as the API key, is missing."""


class StoreError(CineGenieError):
    """Raised when a read, write or delete against a persisted store fails."""


class GenerationError(CineGenieError):
    """Raised when the external generator fails to produce a payload."""


class ScriptImportError(CineGenieError):
    """Raised when an import batch is rejected before any insertion."""

    UNREADABLE = "unreadable"
    INVALID_SHAPE = "invalid_shape"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
