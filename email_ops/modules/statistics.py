"""
Statistics Module
Mailbox counters and top-sender ranking
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .email_data import EmailStatistics, SenderCount
from .imap_connection import IMAPConnection
from .message_codec import MessageCodec

# Tried in order after the configured sent folder
SENT_FOLDER_ALIASES = (
    "Sent",
    "Sent Items",
    "Sent Messages",
    "Sent Mail",
    "[Gmail]/Sent Mail",
    "INBOX.Sent",
)


class StatisticsAggregator:
    """
    Builds EmailStatistics for the configured mailbox.

    Totals come from flag-only SEARCH commands and therefore cover the whole
    mailbox. The sender ranking only looks at the ``window`` most recent
    messages, fetching just their From header.
    """

    def __init__(
        self,
        codec: MessageCodec,
        window: int = 200,
        top_senders: int = 10,
        sent_folder: str = "Sent",
    ):
        self.codec = codec
        self.window = window
        self.top_senders = top_senders
        self.sent_folder = sent_folder
        self.logger = logging.getLogger("StatisticsAggregator")

    def get_statistics(self, session: IMAPConnection) -> EmailStatistics:
        all_ids = session.search(["ALL"])
        unread = len(session.search(["UNSEEN"]))
        flagged = len(session.search(["FLAGGED"]))
        total = len(all_ids)

        recent = sorted(all_ids, key=int, reverse=True)[:self.window]
        ranking = self.rank_senders(
            self.codec.sender_address(f)
            for f in session.fetch_headers(recent, ["FROM"])
        )

        return EmailStatistics(
            total_emails=total,
            unread_emails=unread,
            read_emails=total - unread,
            flagged_emails=flagged,
            sent_emails=self._sent_count(session),
            top_senders=ranking,
            scanned=len(recent),
            last_check=datetime.now(timezone.utc),
        )

    def rank_senders(self, senders) -> List[SenderCount]:
        """
        Count senders and return the top entries.

        Missing senders (None or "") are skipped. Ties keep first-seen
        order because dicts preserve insertion order and sorted() is stable.
        """
        counts: Dict[str, int] = {}
        for sender in senders:
            if sender:
                counts[sender] = counts.get(sender, 0) + 1

        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
        return [SenderCount(address, count) for address, count in ranked[:self.top_senders]]

    def _sent_count(self, session: IMAPConnection) -> int:
        candidates = [self.sent_folder] + [
            name for name in SENT_FOLDER_ALIASES if name != self.sent_folder
        ]
        for folder in candidates:
            size: Optional[int] = session.folder_size(folder)
            if size is not None:
                return size
        self.logger.debug("No sent folder found; reporting 0 sent emails")
        return 0
