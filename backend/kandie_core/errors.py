from __future__ import annotations


class RegistrationError(Exception):
    """Base class for failures surfaced by the registration API."""

    kind = "internal"
    status_code = 500


class Unauthorized(RegistrationError):
    kind = "unauthorized"
    status_code = 401


class ValidationError(RegistrationError):
    kind = "validation_error"
    status_code = 400


class NotFound(RegistrationError):
    kind = "not_found"
    status_code = 404


class RateLimited(RegistrationError):
    kind = "rate_limited"
    status_code = 429


class ConfigurationError(RegistrationError):
    kind = "configuration_error"
    status_code = 500


class Internal(RegistrationError):
    kind = "internal"
    status_code = 500


class UpstreamUnavailable(RegistrationError):
    """Content source, auth service or email provider failed or timed out."""

    kind = "upstream_unavailable"
    status_code = 502
