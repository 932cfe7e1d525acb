"""SafeRoute Backend: Error taxonomy

Ingestion and provider errors are logged and absorbed by their callers.
Authentication and validation errors are the only ones surfaced to clients.
"""


class SafeRouteError(Exception):
    """Base class for every error raised by the backend core."""


class DataIngestionError(SafeRouteError):
    """Bulk incident source is missing, malformed or empty."""


class EmptyInputError(DataIngestionError):
    """Index build was handed no records."""


class ProviderUnavailableError(SafeRouteError):
    """Routing or geocoding provider timed out, failed, or returned nothing."""


class AuthenticationError(SafeRouteError):
    """Bearer credential missing or invalid. Terminal for a connection."""


class ValidationError(SafeRouteError):
    """Operation rejected because required input is missing or malformed."""
