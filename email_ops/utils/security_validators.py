"""
Security Validators Module
Centralizes security limits and TLS setup shared by the IMAP and SMTP sessions

SECURITY STORY: These validators protect against various attacks:
- MAX_SUBJECT_LENGTH: Prevents DoS from extremely long subjects
- MAX_MIME_PARTS: Prevents MIME bomb attacks (deeply nested MIME structures)
- sanitize_filename: Prevents path traversal through attachment names
- create_secure_ssl_context: Enforces TLS 1.2+ for every mail connection
"""

import logging
import re
import ssl
from typing import Callable, Optional

# Security limits to prevent various attacks
MAX_SUBJECT_LENGTH = 1024  # Prevents subject line DoS attacks
MAX_MIME_PARTS = 100  # Limits MIME bomb attacks (CWE-674: Uncontrolled Recursion)

# Whitelist approach - only allow safe characters in filenames (CWE-22)
FILENAME_SANITIZE_PATTERN = re.compile(r"[^\w\s\-_\.]")
FILENAME_COLLAPSE_DOTS_PATTERN = re.compile(r"\.{2,}")

WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    """
    Sanitize an attachment filename taken from a received message

    SECURITY STORY: A malicious message can name its attachment
    "../../etc/passwd". Front-ends may save attachments to disk using the
    name we report, so we only ever report a flat, whitelisted name.

    Args:
        filename: Original filename from the MIME part

    Returns:
        Sanitized filename safe for filesystem operations

    Example:
        >>> sanitize_filename("../../etc/passwd")
        'passwd'
        >>> sanitize_filename("report.pdf")
        'report.pdf'
    """
    if not filename:
        return "unnamed_attachment"

    # Strip any path components first
    filename = filename.split("/")[-1].split("\\")[-1]

    sanitized = FILENAME_SANITIZE_PATTERN.sub("", filename)
    sanitized = FILENAME_COLLAPSE_DOTS_PATTERN.sub(".", sanitized)
    sanitized = sanitized.strip(". ")

    if not sanitized:
        return "unnamed_attachment"

    base_name = sanitized.split('.')[0].strip().upper()
    if base_name in WINDOWS_RESERVED_NAMES:
        sanitized = "_" + sanitized

    return sanitized[:255]


def create_secure_ssl_context(
    verify: bool = True,
    log_warning: Optional[Callable[[str], None]] = None
) -> ssl.SSLContext:
    """
    Create an SSL context with modern TLS settings

    SECURITY STORY: This enforces TLS 1.2+ to protect against attacks on
    older protocols like SSLv3 (POODLE) and TLS 1.0/1.1 (BEAST). With
    verify=False (SMTP_REJECT_UNAUTHORIZED / IMAP_REJECT_UNAUTHORIZED set to
    false) certificate and hostname checks are disabled, which is only meant
    for self-signed test servers such as a local Proton Bridge.

    Args:
        verify: Validate the server certificate and hostname
        log_warning: Callable used to emit a warning when verification is disabled

    Returns:
        Configured SSL context
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_default_certs()

    if verify:
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        # check_hostname must be cleared before verify_mode can be relaxed
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        (log_warning or logger.warning)(
            "TLS certificate verification disabled - use only for testing!"
        )

    return context


def contains_header_injection(value: str) -> bool:
    """Return True when a value would break out of a single header line."""
    return bool(value) and ("\r" in value or "\n" in value)
