"""
Search Engine Module
Filter translation, paging and hydration of mailbox messages
"""

import logging
from datetime import date
from typing import List

from ..utils.errors import NotFoundError, ValidationError
from ..utils.sanitization import sanitize_for_logging
from ..utils.validators import validate_pagination
from .email_data import EmailFilter, EmailMessage, SearchResult
from .imap_connection import IMAPConnection, quote_imap_string
from .message_codec import MessageCodec

# IMAP dates always use English month names, independent of locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(value: date) -> str:
    """Format a date as an IMAP SEARCH date (e.g. 05-Mar-2024)"""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def build_search_criteria(search_filter: EmailFilter) -> List[str]:
    """
    Translate a filter into IMAP SEARCH tokens.

    Example:
        >>> build_search_criteria(EmailFilter(sender="boss@co.com", seen=False))
        ['FROM', '"boss@co.com"', 'UNSEEN']
    """
    tokens: List[str] = []

    for key, value in (
        ("FROM", search_filter.sender),
        ("TO", search_filter.recipient),
        ("SUBJECT", search_filter.subject),
    ):
        if value:
            tokens += [key, quote_imap_string(value)]

    # SINCE is inclusive and BEFORE exclusive in IMAP itself
    if search_filter.since:
        tokens += ["SINCE", imap_date(search_filter.since)]
    if search_filter.before:
        tokens += ["BEFORE", imap_date(search_filter.before)]

    if search_filter.seen is not None:
        tokens.append("SEEN" if search_filter.seen else "UNSEEN")
    if search_filter.flagged is not None:
        tokens.append("FLAGGED" if search_filter.flagged else "UNFLAGGED")

    if not tokens:
        return ["ALL"]
    if not all(token.isascii() for token in tokens):
        return ["CHARSET", "UTF-8"] + tokens
    return tokens


def validate_email_id(email_id) -> str:
    """Email ids are IMAP UIDs: positive integers, passed around as strings"""
    text = str(email_id).strip() if email_id is not None else ""
    if not text.isdigit() or int(text) < 1:
        raise ValidationError(f"Invalid email id: {sanitize_for_logging(text)!r}", "INVALID_EMAIL_ID")
    return str(int(text))


class SearchEngine:
    """
    Runs filtered, paged searches against a mailbox session

    Candidates are ordered by descending UID, which is most-recent-first
    arrival order and stable for the lifetime of the session. Only the
    requested page is downloaded.
    """

    def __init__(self, codec: MessageCodec, mark_seen: bool = False):
        self.codec = codec
        self.mark_seen = mark_seen
        self.logger = logging.getLogger("SearchEngine")

    def matching_ids(self, session: IMAPConnection, search_filter: EmailFilter) -> List[str]:
        """All matching UIDs, most recent first"""
        uids = session.search(build_search_criteria(search_filter))
        return sorted(uids, key=int, reverse=True)

    def search(
        self,
        session: IMAPConnection,
        search_filter: EmailFilter,
        page: int = 1,
        limit: int = 10,
    ) -> SearchResult:
        """
        One page of messages matching the filter.

        Raises:
            ValidationError: page or limit below 1
        """
        validate_pagination(page, limit)

        ordered = self.matching_ids(session, search_filter)
        start = (page - 1) * limit
        page_ids = ordered[start:start + limit]

        items = [self.codec.decode(f) for f in session.fetch(page_ids, self.mark_seen)]
        self.logger.debug(
            f"Search matched {len(ordered)} messages, returning {len(items)} (page {page})"
        )
        return SearchResult(items=items, total=len(ordered), page=page, limit=limit)

    def read_recent(self, session: IMAPConnection, count: int = 10) -> List[EmailMessage]:
        """The ``count`` most recent messages"""
        return self.search(session, EmailFilter(), 1, count).items

    def get_by_id(self, session: IMAPConnection, email_id: str) -> EmailMessage:
        """
        Fetch one message.

        Raises:
            ValidationError: The id is not a UID
            NotFoundError: No message with that id
        """
        uid = validate_email_id(email_id)
        fetched = session.fetch([uid], self.mark_seen)
        if not fetched:
            raise NotFoundError(f"Email {uid} not found", "EMAIL_NOT_FOUND", {"id": uid})
        return self.codec.decode(fetched[0])

    def ensure_exists(self, session: IMAPConnection, email_id: str) -> str:
        """Return the normalized id, or raise NotFoundError"""
        uid = validate_email_id(email_id)
        if uid not in session.search(["UID", uid]):
            raise NotFoundError(f"Email {uid} not found", "EMAIL_NOT_FOUND", {"id": uid})
        return uid
