"""
Email Service Module
The facade front-ends talk to: one object, constructed once with a resolved
ServiceConfig, exposing every mail and contact operation.

PATTERN RECOGNITION: This is a Facade over the connection manager, codec,
search, dispatch, statistics and contact components. Each async operation
acquires the sessions it needs, runs the blocking protocol work in the
default executor and releases the sessions on every exit path.
"""

import asyncio
import functools
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ..utils.config import Config, ServiceConfig
from ..utils.errors import EmailServiceError
from ..utils.logging_utils import setup_logging
from ..utils.metrics import ServiceMetrics
from ..utils.sanitization import sanitize_for_logging
from ..utils.validators import normalize_recipients, validate_pagination, validate_recipients
from .connection_manager import ConnectionManager
from .contact_store import ContactStore
from .dispatch_engine import DispatchEngine
from .email_data import (
    DELETED_FLAG,
    SEEN_FLAG,
    Attachment,
    BatchDeleteResult,
    BulkSendReport,
    Contact,
    Draft,
    EmailFilter,
    EmailMessage,
    EmailStatistics,
    OutboundEmail,
    ScheduledEmail,
    SearchResult,
    SendResult,
)
from .imap_connection import IMAPConnection
from .message_codec import MessageCodec
from .search_engine import SearchEngine, validate_email_id
from .statistics import StatisticsAggregator

Recipients = Union[str, Sequence[str]]


def _instrumented(func):
    """Time an operation and count its typed failures"""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        started = time.perf_counter()
        try:
            return await func(self, *args, **kwargs)
        except EmailServiceError as e:
            self.metrics.record_error(e.code)
            self.logger.error(
                f"{func.__name__} failed: [{e.code}] {sanitize_for_logging(e.message)}"
            )
            raise
        finally:
            self.metrics.record_operation_time((time.perf_counter() - started) * 1000)
    return wrapper


class EmailService:
    """Email operations facade"""

    def __init__(
        self,
        config: ServiceConfig,
        connections: Optional[ConnectionManager] = None,
        metrics: Optional[ServiceMetrics] = None,
    ):
        """
        Args:
            config: Resolved configuration; validated here so a bad setting
                fails before any connection attempt
            connections: Session factory, replaceable in tests
            metrics: Shared metrics collector

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        config.validate()
        self.config = config
        self.sender = config.smtp.user
        self.logger = logging.getLogger("EmailService")
        self.metrics = metrics or ServiceMetrics()

        self.connections = connections or ConnectionManager(config)
        self.codec = MessageCodec(
            max_body_size=config.system.max_body_size,
            max_attachment_bytes=config.system.max_attachment_bytes,
        )
        self.search_engine = SearchEngine(self.codec, mark_seen=config.imap.mark_seen)
        self.dispatch = DispatchEngine(self.connections, self.codec, self.sender)
        self.statistics = StatisticsAggregator(
            self.codec,
            window=config.system.stats_window,
            top_senders=config.system.stats_top_senders,
            sent_folder=config.imap.sent_folder,
        )
        self.contacts = ContactStore()

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env", configure_logging: bool = True) -> "EmailService":
        """
        Build a service from the environment / a .env file.

        Raises:
            ConfigurationError: Missing or invalid settings
        """
        config = Config(env_file).to_service_config()
        if configure_logging:
            setup_logging(config.system)
        return cls(config)

    @staticmethod
    async def _run(func, *args, **kwargs):
        """Run blocking protocol work in the default executor"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    @_instrumented
    async def send_email(
        self,
        to: Recipients,
        subject: str,
        body: str,
        html: Optional[str] = None,
        cc: Optional[Recipients] = None,
        bcc: Optional[Recipients] = None,
    ) -> SendResult:
        request = self._request(to, subject, body, html, cc, bcc)
        return await self._send(request)

    @_instrumented
    async def send_email_with_attachments(
        self,
        to: Recipients,
        subject: str,
        body: str,
        attachments: Sequence[Attachment],
        html: Optional[str] = None,
        cc: Optional[Recipients] = None,
        bcc: Optional[Recipients] = None,
    ) -> SendResult:
        request = self._request(to, subject, body, html, cc, bcc, attachments)
        return await self._send(request)

    async def _send(self, request: OutboundEmail) -> SendResult:
        try:
            result = await self._run(self.dispatch.send_one, request)
        except EmailServiceError:
            self.metrics.record_send_failure()
            raise
        self.metrics.record_sent()
        return result

    @_instrumented
    async def bulk_send_emails(
        self,
        recipients: Recipients,
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> BulkSendReport:
        """
        Send the same message to each recipient separately.

        Per-recipient failures are reported in the result, not raised.
        """
        report = await self._run(self.dispatch.send_bulk, recipients, subject, body, html)
        self._record_report(report)
        return report

    @_instrumented
    async def send_batch(self, requests: Iterable[OutboundEmail]) -> BulkSendReport:
        """Send distinct messages with per-item results"""
        report = await self._run(self.dispatch.send_batch, list(requests))
        self._record_report(report)
        return report

    def _record_report(self, report: BulkSendReport):
        self.metrics.record_sent(report.sent)
        self.metrics.record_send_failure(report.failed)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @_instrumented
    async def read_recent_emails(self, count: int = 10) -> List[EmailMessage]:
        validate_pagination(1, count)
        async with self.connections.inbound() as session:
            messages = await self._run(self.search_engine.read_recent, session, count)
        self.metrics.record_fetched(len(messages))
        return messages

    @_instrumented
    async def get_email_by_id(self, email_id: str) -> EmailMessage:
        return await self._fetch_one(email_id)

    async def _fetch_one(self, email_id: str) -> EmailMessage:
        uid = validate_email_id(email_id)
        async with self.connections.inbound() as session:
            message = await self._run(self.search_engine.get_by_id, session, uid)
        self.metrics.record_fetched(1)
        return message

    @_instrumented
    async def search_emails(
        self,
        search_filter: Union[EmailFilter, Dict[str, Any], None] = None,
        page: int = 1,
        limit: int = 10,
    ) -> SearchResult:
        """
        Search the mailbox.

        ``search_filter`` may be an EmailFilter or a mapping with the keys
        from, to, subject, since, before, seen and flagged.
        """
        if not isinstance(search_filter, EmailFilter):
            search_filter = EmailFilter.from_dict(search_filter)
        validate_pagination(page, limit)

        async with self.connections.inbound() as session:
            result = await self._run(
                self.search_engine.search, session, search_filter, page, limit
            )
        self.metrics.record_fetched(len(result.items))
        return result

    @_instrumented
    async def get_email_statistics(self) -> EmailStatistics:
        async with self.connections.inbound() as session:
            return await self._run(self.statistics.get_statistics, session)

    # ------------------------------------------------------------------
    # Mailbox mutations
    # ------------------------------------------------------------------

    @_instrumented
    async def mark_email_as_read(self, email_id: str, read: bool = True) -> None:
        uid = validate_email_id(email_id)
        async with self.connections.inbound() as session:
            await self._run(self._set_seen, session, uid, read)

    def _set_seen(self, session: IMAPConnection, uid: str, read: bool):
        uid = self.search_engine.ensure_exists(session, uid)
        session.store(uid, [SEEN_FLAG], add=read)
        self.logger.info(f"Marked email {uid} as {'read' if read else 'unread'}")

    @_instrumented
    async def delete_email(self, email_id: str) -> str:
        """
        Permanently delete a message (flag \\Deleted, then expunge).

        Returns:
            The deleted id

        Raises:
            NotFoundError: No message with that id
        """
        uid = validate_email_id(email_id)
        async with self.connections.inbound() as session:
            return await self._run(self._delete_one, session, uid)

    @_instrumented
    async def delete_emails(self, email_ids: Iterable[str]) -> BatchDeleteResult:
        """Delete several messages over one session, reporting each outcome"""
        ids = list(email_ids)
        async with self.connections.inbound() as session:
            return await self._run(self._delete_many, session, ids)

    def _delete_one(self, session: IMAPConnection, uid: str) -> str:
        uid = self.search_engine.ensure_exists(session, uid)
        session.store(uid, [DELETED_FLAG], add=True)
        try:
            session.expunge(uid)
        except EmailServiceError:
            # A failed delete must not leave the message flagged
            try:
                session.store(uid, [DELETED_FLAG], add=False)
            except EmailServiceError as e:
                self.logger.error(f"Could not clear \\Deleted on email {uid}: [{e.code}]")
            raise
        self.logger.info(f"Deleted email {uid}")
        return uid

    def _delete_many(self, session: IMAPConnection, ids: List[str]) -> BatchDeleteResult:
        result = BatchDeleteResult()
        for email_id in ids:
            try:
                result.deleted.append(self._delete_one(session, validate_email_id(email_id)))
            except EmailServiceError as e:
                result.failed.append((str(email_id), e.message))
        return result

    # ------------------------------------------------------------------
    # Forward / reply / drafts
    # ------------------------------------------------------------------

    @_instrumented
    async def forward_email(self, email_id: str, to: Recipients, note: Optional[str] = None) -> SendResult:
        targets = validate_recipients(to)
        original = await self._fetch_one(email_id)
        return await self._send_derived(self.dispatch.forward, original, targets, note)

    @_instrumented
    async def reply_to_email(self, email_id: str, body: str, reply_all: bool = False) -> SendResult:
        original = await self._fetch_one(email_id)
        return await self._send_derived(self.dispatch.reply, original, body, reply_all, self.sender)

    async def _send_derived(self, func, *args) -> SendResult:
        try:
            result = await self._run(func, *args)
        except EmailServiceError:
            self.metrics.record_send_failure()
            raise
        self.metrics.record_sent()
        return result

    @_instrumented
    async def create_draft(
        self,
        to: Recipients,
        subject: str,
        body: str,
        attachments: Optional[Sequence[Attachment]] = None,
        html: Optional[str] = None,
        cc: Optional[Recipients] = None,
        bcc: Optional[Recipients] = None,
    ) -> Draft:
        request = self._request(to, subject, body, html, cc, bcc, attachments)
        async with self.connections.inbound() as session:
            return await self._run(
                self.dispatch.create_draft, session, request, self.config.imap.drafts_folder
            )

    # ------------------------------------------------------------------
    # Deferred sends
    # ------------------------------------------------------------------

    @_instrumented
    async def schedule_email(
        self,
        to: Recipients,
        subject: str,
        body: str,
        send_at: Union[datetime, str],
        attachments: Optional[Sequence[Attachment]] = None,
        html: Optional[str] = None,
    ) -> ScheduledEmail:
        """
        Record a message for later delivery; see dispatch_due_emails().

        ``send_at`` takes a datetime, an ISO-8601 string or "+30m"/"+2h"/"+1d".
        """
        request = self._request(to, subject, body, html, attachments=attachments)
        return await self._run(self.dispatch.schedule, request, send_at)

    async def list_scheduled_emails(self, status: Optional[str] = None) -> List[ScheduledEmail]:
        return self.dispatch.list_scheduled(status)

    @_instrumented
    async def cancel_scheduled_email(self, scheduled_id: str) -> ScheduledEmail:
        return self.dispatch.cancel_scheduled(scheduled_id)

    @_instrumented
    async def dispatch_due_emails(self, now: Optional[datetime] = None) -> List[ScheduledEmail]:
        """Send every scheduled message whose time has come"""
        records = await self._run(self.dispatch.dispatch_due, now)
        sent = sum(1 for r in records if r.status == "sent")
        self.metrics.record_sent(sent)
        self.metrics.record_send_failure(len(records) - sent)
        return records

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def add_contact(
        self,
        name: str,
        email: str,
        group: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        return self.contacts.add(name, email, group, phone)

    def get_contact(self, contact_id: str) -> Contact:
        return self.contacts.get(contact_id)

    def list_contacts(self, limit: Optional[int] = None) -> List[Contact]:
        return self.contacts.list(limit)

    def search_contacts(self, query: str) -> List[Contact]:
        return self.contacts.search(query)

    def get_contacts_by_group(self, group: str) -> List[Contact]:
        return self.contacts.by_group(group)

    def update_contact(self, contact_id: str, **fields) -> Contact:
        return self.contacts.update(contact_id, **fields)

    def delete_contact(self, contact_id: str) -> bool:
        return self.contacts.delete(contact_id)

    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict:
        return self.metrics.get_summary()

    @staticmethod
    def _request(
        to: Recipients,
        subject: str,
        body: str,
        html: Optional[str] = None,
        cc: Optional[Recipients] = None,
        bcc: Optional[Recipients] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> OutboundEmail:
        return OutboundEmail(
            to=normalize_recipients(to),
            subject=subject,
            body=body,
            html=html,
            cc=normalize_recipients(cc),
            bcc=normalize_recipients(bcc),
            attachments=list(attachments or []),
        )
