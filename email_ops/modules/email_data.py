"""
Email Data Model
Dataclasses exchanged between the service components and its callers
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from ..utils.errors import ValidationError

SEEN_FLAG = "\\Seen"
FLAGGED_FLAG = "\\Flagged"
DELETED_FLAG = "\\Deleted"
DRAFT_FLAG = "\\Draft"


@dataclass(frozen=True)
class FetchedMessage:
    """One FETCH response item: raw RFC 5322 bytes plus server metadata"""
    uid: str
    raw: bytes
    flags: FrozenSet[str] = frozenset()
    internal_date: Optional[datetime] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class AttachmentInfo:
    """Metadata of an attachment found on a retrieved message"""
    filename: str
    size: int
    content_type: str


@dataclass(frozen=True)
class EmailMessage:
    """
    A message hydrated from the mailbox.

    ``id`` is the IMAP UID; it stays valid for the lifetime of the mailbox
    session. Instances never change after decoding, a re-fetch returns a new
    instance carrying whatever flags the server reports at that moment.
    """
    id: str
    sender: str
    subject: str
    body: str
    date: datetime
    recipients: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    sender_name: Optional[str] = None
    html: Optional[str] = None
    flags: FrozenSet[str] = frozenset()
    attachments: List[AttachmentInfo] = field(default_factory=list)
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    size: int = 0

    @property
    def is_seen(self) -> bool:
        return SEEN_FLAG in self.flags

    @property
    def is_flagged(self) -> bool:
        return FLAGGED_FLAG in self.flags


@dataclass
class Attachment:
    """
    An outbound attachment.

    Either ``content`` or ``path`` must be given. The bytes are read when the
    message is encoded and are not kept once the send call returns.
    """
    filename: str
    content: Optional[bytes] = None
    path: Optional[Union[str, Path]] = None
    content_type: Optional[str] = None

    def __post_init__(self):
        if not self.filename:
            raise ValidationError("Attachment filename is required", "INVALID_ATTACHMENT")
        if self.content is None and self.path is None:
            raise ValidationError(
                f"Attachment {self.filename!r} needs either content or a path",
                "INVALID_ATTACHMENT",
            )


@dataclass
class OutboundEmail:
    """A send request: one message to one or more recipients"""
    to: List[str]
    subject: str
    body: str
    html: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


@dataclass(frozen=True)
class EmailFilter:
    """
    Closed search filter. Every field is optional; present fields are ANDed.

    ``since`` is inclusive and ``before`` is exclusive, both at calendar-day
    granularity because that is what IMAP SEARCH offers. Datetimes are
    truncated to their date.
    """
    sender: Optional[str] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    since: Optional[date] = None
    before: Optional[date] = None
    seen: Optional[bool] = None
    flagged: Optional[bool] = None

    # front-end key -> field name
    KEY_ALIASES = {
        "from": "sender",
        "to": "recipient",
        "sender": "sender",
        "recipient": "recipient",
        "subject": "subject",
        "since": "since",
        "before": "before",
        "seen": "seen",
        "flagged": "flagged",
    }

    def __post_init__(self):
        for name in ("sender", "recipient", "subject"):
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationError(f"Filter field '{name}' must be a string", "INVALID_FILTER")
            if "\r" in value or "\n" in value or '"' in value:
                raise ValidationError(
                    f"Filter field '{name}' contains forbidden characters", "INVALID_FILTER"
                )

        for name in ("seen", "flagged"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, bool):
                raise ValidationError(f"Filter field '{name}' must be a boolean", "INVALID_FILTER")

        for name in ("since", "before"):
            value = getattr(self, name)
            if value is None:
                continue
            # object.__setattr__ because the dataclass is frozen
            object.__setattr__(self, name, _coerce_date(name, value))

        if self.since and self.before and self.since >= self.before:
            raise ValidationError(
                "Filter 'since' must be earlier than 'before'", "INVALID_FILTER"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EmailFilter":
        """
        Build a filter from a loosely shaped mapping such as
        ``{"from": "boss@co.com", "seen": False}``.

        Raises:
            ValidationError: On unknown keys or wrongly typed values
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("Filter must be a mapping", "INVALID_FILTER")

        unknown = sorted(k for k in data if k not in cls.KEY_ALIASES)
        if unknown:
            raise ValidationError(
                f"Unknown filter field(s): {', '.join(unknown)}",
                "INVALID_FILTER",
                {"unknown_fields": unknown},
            )

        kwargs = {}
        for key, value in data.items():
            if value is None:
                continue
            kwargs[cls.KEY_ALIASES[key]] = value
        return cls(**kwargs)

    def is_empty(self) -> bool:
        return all(
            getattr(self, name) is None
            for name in ("sender", "recipient", "subject", "since", "before", "seen", "flagged")
        )


def _coerce_date(name: str, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError as e:
            raise ValidationError(
                f"Filter field '{name}' is not an ISO-8601 date: {value!r}", "INVALID_FILTER"
            ) from e
    raise ValidationError(f"Filter field '{name}' must be a date", "INVALID_FILTER")


@dataclass
class SearchResult:
    """One page of search hits; ``total`` counts all matches"""
    items: List[EmailMessage]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class SendResult:
    message_id: str
    accepted: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BulkResult:
    """Outcome of one item in a batch send"""
    target: str
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class BulkSendReport:
    """
    Per-item results of a batch send, in input order.

    ``sent`` and ``failed`` are always derived from ``results``.
    """
    results: List[BulkResult] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total(self) -> int:
        return len(self.results)


@dataclass
class BatchDeleteResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class SenderCount:
    address: str
    count: int


@dataclass
class EmailStatistics:
    """
    Mailbox counters plus the top-sender ranking.

    Counts cover the whole mailbox; ``top_senders`` covers only the
    ``scanned`` most recent messages.
    """
    total_emails: int
    unread_emails: int
    read_emails: int
    flagged_emails: int
    sent_emails: int
    top_senders: List[SenderCount]
    scanned: int
    last_check: datetime


@dataclass(frozen=True)
class Draft:
    draft_id: str
    message_id: str
    folder: str
    created_at: datetime


@dataclass
class ScheduledEmail:
    """A deferred-send record; nothing sends it until dispatch_due() runs"""
    scheduled_id: str
    request: OutboundEmail
    send_at: datetime
    created_at: datetime
    status: str = "pending"
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Contact:
    """Address book entry. Immutable; ContactStore.update stores a new instance."""
    id: str
    name: str
    email: str
    group: Optional[str] = None
    phone: Optional[str] = None
