"""
Sanitization Utility Module
Makes untrusted mail data safe to write into log files and terminals.
"""

import re
import unicodedata

# ANSI escape sequences (colors, cursor movement)
_ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def sanitize_for_logging(text: str, max_length: int = 255) -> str:
    """
    Sanitize text for safe logging to prevent log injection (CRLF) and
    terminal manipulation.

    Subjects, addresses and folder names all come from remote servers or
    from the caller, so anything user-controlled goes through here before
    it reaches a log record.

    Args:
        text: The input string to sanitize.
        max_length: Maximum allowed length for the log entry (truncates if longer).

    Returns:
        Sanitized string safe for logging.
    """
    if not text:
        return ""

    text = unicodedata.normalize('NFKC', str(text))

    # Escape line breaks so one record stays on one line
    text = text.replace('\n', '\\n').replace('\r', '\\r')

    text = _ANSI_ESCAPE.sub('', text)

    # Drop the remaining C0 control characters (tab is allowed)
    text = "".join(ch for ch in text if ch == '\t' or ord(ch) >= 32)

    if len(text) > max_length:
        text = text[:max_length] + "..."

    return text


def redact_email(address: str) -> str:
    """
    Mask the local part of an address for log output.

    Example:
        >>> redact_email("jane.doe@example.com")
        'j***@example.com'
    """
    if not address:
        return ""

    address = sanitize_for_logging(address)
    local, sep, domain = address.rpartition("@")
    if not sep or not local:
        # Not an address; keep only the first character
        return address[:1] + "***"

    return f"{local[0]}***@{domain}"
