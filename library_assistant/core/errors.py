"""
Library Assistant — Error Taxonomy

Fatal categories (provider, transport) end in the FAILED state;
the rest are reported and the session carries on.
"""

from __future__ import annotations


class LibraryAssistantError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(LibraryAssistantError):
    """Required credentials are missing. Raised before anything is allocated."""


class ProviderError(LibraryAssistantError):
    """The hosted-conversation API failed (create / get / end / delete)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportError(LibraryAssistantError):
    """Joining, leaving or messaging on the realtime channel failed."""


class ParseError(LibraryAssistantError):
    """A raw event could not be read as a tool call."""


class DispatchError(LibraryAssistantError):
    """A known tool call carried malformed arguments."""


class UnknownActionError(DispatchError):
    """The tool call named an action outside the supported set."""

    def __init__(self, function_name: str) -> None:
        super().__init__(f"Unknown action: {function_name}")
        self.function_name = function_name
