"""
Input Validators
Address, paging and schedule-time checks shared by the service modules,
plus the placeholder-credential check run on configuration.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from .errors import ValidationError

if TYPE_CHECKING:
    from .config import ServiceConfig

# Basic local@domain.tld shape; no whitespace, exactly one "@"
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RELATIVE_TIME_PATTERN = re.compile(r"^\+(\d+)([mhd])$")
_RELATIVE_UNITS = {"m": "minutes", "h": "hours", "d": "days"}

# Values shipped in .env.example
DEFAULT_EMAILS = [
    "your-email@gmail.com",
    "your-email@outlook.com",
    "your-email@example.com",
]
DEFAULT_PASSWORDS = [
    "your-app-password-here",
    "your-app-password",
    "your-password-here",
]


def is_valid_email(address: str) -> bool:
    """Return True if the address has a basic local@domain shape."""
    if not isinstance(address, str):
        return False
    return bool(EMAIL_PATTERN.match(address.strip()))


def normalize_recipients(recipients: Union[str, Iterable[str], None]) -> List[str]:
    """
    Turn a recipient argument into a clean list.

    Accepts a single address, a comma separated string or any iterable of
    addresses. Blank entries are dropped, order is preserved.
    """
    if recipients is None:
        return []
    if isinstance(recipients, str):
        recipients = recipients.split(",")
    return [
        r.strip() if isinstance(r, str) else r
        for r in recipients
        if r is not None and str(r).strip()
    ]


def validate_recipients(recipients: Union[str, Iterable[str], None], field: str = "to") -> List[str]:
    """
    Validate a recipient list and return it normalized.

    Raises:
        ValidationError: If the list is empty or any address is malformed
    """
    addresses = normalize_recipients(recipients)
    if not addresses:
        raise ValidationError(
            f"At least one '{field}' recipient is required",
            "NO_RECIPIENTS",
        )

    invalid = [a for a in addresses if not is_valid_email(a)]
    if invalid:
        raise ValidationError(
            f"Invalid email address(es): {', '.join(map(str, invalid))}",
            "INVALID_EMAIL_ADDRESS",
            {"invalid_emails": invalid},
        )
    return addresses


def validate_pagination(page: int, limit: int) -> None:
    """Page and limit are 1-based positive integers."""
    for name, value in (("page", page), ("limit", limit)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer, got {value!r}", "INVALID_PAGINATION")
        if value < 1:
            raise ValidationError(f"{name} must be >= 1, got {value}", "INVALID_PAGINATION")


def parse_schedule_time(value: Union[datetime, str], now: Optional[datetime] = None) -> datetime:
    """
    Resolve a schedule time to an aware UTC datetime.

    Accepts a datetime (naive values are taken as UTC), an ISO-8601 string
    ("2024-12-25T09:00:00Z") or a relative offset ("+30m", "+2h", "+1d").

    Raises:
        ValidationError: If the value cannot be parsed
    """
    now = now or datetime.now(timezone.utc)

    if isinstance(value, datetime):
        resolved = value
    elif isinstance(value, str):
        text = value.strip()
        match = RELATIVE_TIME_PATTERN.match(text)
        if match:
            amount, unit = int(match.group(1)), match.group(2)
            return now + timedelta(**{_RELATIVE_UNITS[unit]: amount})
        try:
            # fromisoformat() only understands "Z" from Python 3.11 on
            resolved = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(
                f"Invalid schedule time: {value!r}. Use ISO-8601 or +N[m|h|d]",
                "INVALID_SCHEDULE_DATE",
            ) from e
    else:
        raise ValidationError(f"Invalid schedule time: {value!r}", "INVALID_SCHEDULE_DATE")

    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    return resolved


def check_default_credentials(config: "ServiceConfig") -> List[str]:
    """
    Check if the configuration still uses the example placeholder values.
    Returns a list of error messages.
    """
    errors = []

    for label, section in (("SMTP", config.smtp), ("IMAP", config.imap)):
        if section.user in DEFAULT_EMAILS:
            errors.append(f"{label} uses the example email address: {section.user}")
        if section.password in DEFAULT_PASSWORDS:
            errors.append(f"{label} uses the example password")

    return errors
