"""Error taxonomy shared by every component.

Provider and timeout failures are normally absorbed close to where they
happen and turned into structured results; only configuration errors,
caller-contract violations and exhausted embedding retries escape.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(AssistantError):
    """Missing credentials or inconsistent component wiring."""


class InvalidInputError(AssistantError, ValueError):
    """The caller passed malformed input (bad vector, bad document, ...)."""


class ProviderError(AssistantError):
    """A completion or embedding provider failed or returned garbage."""


class ProviderTimeoutError(ProviderError, TimeoutError):
    """An external call exceeded its time budget."""


class ResponseFormatError(ProviderError):
    """The provider answered, but not in the requested structured format."""


class PermissionDeniedError(AssistantError, PermissionError):
    """The user lacks the permission or relationship needed for an action."""


class NotFoundError(AssistantError, KeyError):
    """A named entity (tool, trace, ingestion task) does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep plain messages readable.
        return str(self.args[0]) if self.args else ""


class SafetyBlockedError(AssistantError):
    """Content was blocked by a high-severity safety violation."""
