"""
Error types raised by the discovery engine, dispatcher and destination resolver.
"""

from typing import Optional


class ODataHubError(Exception):
    """Base class for all hub errors. Carries an optional corrective suggestion."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def __str__(self) -> str:
        return self.message

    @property
    def error_type(self) -> str:
        return type(self).__name__


class ValidationError(ODataHubError, ValueError):
    """Bad operation, category or limit shape."""


class NotFoundError(ODataHubError, LookupError):
    """Unknown service or entity."""


class CapabilityError(ODataHubError):
    """Operation forbidden by the entity's metadata."""


class MissingKeyPropertyError(ODataHubError, KeyError):
    """A required key property was not supplied."""

    def __init__(self, key_name: str, required_keys, suggestion: Optional[str] = None):
        self.key_name = key_name
        self.required_keys = list(required_keys)
        message = f"Missing required key property: {key_name}. Required keys: {', '.join(self.required_keys)}"
        super().__init__(message, suggestion)


class DestinationError(ODataHubError):
    """Endpoint or credential resolution failed."""

    def __init__(self, destination_name: str, message: Optional[str] = None):
        self.destination_name = destination_name
        super().__init__(
            message or f"Destination '{destination_name}' not found in environment variables or destination service"
        )


class UpstreamError(ODataHubError):
    """The remote service call failed. The original message is passed through."""
