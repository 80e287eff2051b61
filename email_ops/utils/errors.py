"""
Error Types Module
Typed failures raised by the email service

PATTERN RECOGNITION: Every public operation either returns a domain value
or raises one of these. Front-ends map them onto their own output shape
(exit codes, JSON error payloads) without having to inspect messages.
"""

from typing import Any, Optional


class EmailServiceError(Exception):
    """
    Base class for all email service failures

    Args:
        message: Human readable description
        code: Stable machine readable error code (e.g. "INVALID_EMAIL_ADDRESS")
        details: Optional structured context for the caller
    """

    default_code = "EMAIL_SERVICE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def __str__(self) -> str:
        return self.message


class ConfigurationError(EmailServiceError):
    """A required setting is missing or invalid. Raised before any connection attempt."""

    default_code = "INVALID_CONFIG"


class AuthenticationError(EmailServiceError):
    """The SMTP or IMAP server rejected the credentials."""

    default_code = "AUTH_FAILED"


class EmailConnectionError(EmailServiceError):
    """Network, timeout or TLS failure while talking to a mail server."""

    default_code = "CONNECTION_FAILED"


class ValidationError(EmailServiceError):
    """Malformed input: bad address, missing field, non-positive page/limit."""

    default_code = "VALIDATION_FAILED"


class NotFoundError(EmailServiceError):
    """The referenced email, contact or scheduled record does not exist."""

    default_code = "NOT_FOUND"


class ProtocolError(EmailServiceError):
    """The server answered with something we did not expect."""

    default_code = "PROTOCOL_ERROR"
