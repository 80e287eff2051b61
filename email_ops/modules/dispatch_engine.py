"""
Dispatch Engine Module
Sends single messages and batches, builds forwards and replies, saves drafts
and keeps deferred-send records.

SECURITY STORY: Every request goes through MessageCodec.encode() before a
connection is opened, so malformed input never reaches the SMTP server.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..utils.errors import EmailConnectionError, EmailServiceError, NotFoundError, ValidationError
from ..utils.sanitization import redact_email, sanitize_for_logging
from ..utils.validators import normalize_recipients, parse_schedule_time
from .connection_manager import ConnectionManager
from .email_data import (
    DRAFT_FLAG,
    BulkResult,
    BulkSendReport,
    Draft,
    EmailMessage,
    OutboundEmail,
    ScheduledEmail,
    SendResult,
)
from .imap_connection import IMAPConnection
from .message_codec import MessageCodec, OutboundPayload
from .smtp_connection import SMTPConnection

FORWARD_SEPARATOR = "---------- Forwarded message ----------"


class DispatchEngine:
    """
    Outbound side of the service

    All methods block; EmailService runs them in an executor.
    """

    def __init__(self, connections: ConnectionManager, codec: MessageCodec, sender: str):
        self.connections = connections
        self.codec = codec
        self.sender = sender
        self.scheduled: Dict[str, ScheduledEmail] = {}
        self.logger = logging.getLogger("DispatchEngine")

    def send_one(self, request: OutboundEmail) -> SendResult:
        """
        Submit one message in its own SMTP session.

        Raises:
            ValidationError, AuthenticationError, EmailConnectionError,
            ProtocolError: whatever stopped the message; there is no
            partial success
        """
        payload = self.codec.encode(request, self.sender)
        session = self.connections.connect_outbound()
        try:
            return self._deliver(session, payload)
        finally:
            self.connections.close(session)

    def _deliver(self, session: SMTPConnection, payload: OutboundPayload) -> SendResult:
        accepted, rejected = session.send(payload.message, payload.sender, payload.recipients)
        self.logger.info(
            f"Sent message {payload.message_id} to {len(accepted)} recipient(s)"
        )
        if rejected:
            self.logger.warning(
                f"Server refused {len(rejected)} recipient(s): "
                f"{', '.join(redact_email(r) for r in rejected)}"
            )
        return SendResult(message_id=payload.message_id, accepted=accepted, rejected=rejected)

    def send_bulk(
        self,
        recipients: Union[str, Sequence[str]],
        subject: str,
        body: str,
        html: Optional[str] = None,
    ) -> BulkSendReport:
        """
        Send the same message separately to each recipient.

        Returns one BulkResult per input recipient, in input order. Only a
        failure to open the first SMTP session aborts the whole job.

        Raises:
            ValidationError: The recipient list is empty
        """
        if isinstance(recipients, str):
            targets = normalize_recipients(recipients)
        else:
            # Every list entry gets a result, blank ones fail validation
            targets = list(recipients or [])
        if not targets:
            raise ValidationError("Recipients list cannot be empty", "NO_RECIPIENTS")

        items = [
            (_target_label(target), OutboundEmail(to=[target], subject=subject, body=body, html=html))
            for target in targets
        ]
        return self._run_batch(items)

    def send_batch(self, requests: Iterable[OutboundEmail]) -> BulkSendReport:
        """Send distinct messages over one SMTP session, with per-item results"""
        requests = list(requests)
        if not requests:
            raise ValidationError("No emails provided for bulk sending", "NO_EMAILS")

        items = [(", ".join(normalize_recipients(r.to)), r) for r in requests]
        return self._run_batch(items)

    def _run_batch(self, items: List[Tuple[str, OutboundEmail]]) -> BulkSendReport:
        """
        Deliver items sequentially over one session.

        A dropped connection is recorded against the item that hit it; the
        session is reopened for the next item.
        """
        report = BulkSendReport()
        session: Optional[SMTPConnection] = self.connections.connect_outbound()

        try:
            for target, request in items:
                try:
                    payload = self.codec.encode(request, self.sender)
                    if session is None:
                        session = self.connections.connect_outbound()
                    result = self._deliver(session, payload)
                    report.results.append(
                        BulkResult(target=target, success=True, message_id=result.message_id)
                    )
                except EmailConnectionError as e:
                    self._record_failure(report, target, e)
                    self.connections.close(session)
                    session = None
                except EmailServiceError as e:
                    self._record_failure(report, target, e)
        finally:
            self.connections.close(session)

        self.logger.info(
            f"Bulk send finished: {report.sent} sent, {report.failed} failed"
        )
        return report

    def _record_failure(self, report: BulkSendReport, target: str, error: EmailServiceError):
        self.logger.warning(
            f"Delivery failed for {redact_email(target)}: [{error.code}] "
            f"{sanitize_for_logging(error.message)}"
        )
        report.results.append(BulkResult(target=target, success=False, error=error.message))

    # ------------------------------------------------------------------
    # Forward / reply
    # ------------------------------------------------------------------

    def forward(
        self,
        original: EmailMessage,
        to: Union[str, Sequence[str]],
        note: Optional[str] = None,
    ) -> SendResult:
        """Resend an existing message to new recipients with its content quoted"""
        header_block = "\n".join([
            FORWARD_SEPARATOR,
            f"From: {_display_sender(original)}",
            f"Date: {original.date.isoformat()}",
            f"Subject: {original.subject}",
            f"To: {', '.join(original.recipients)}",
        ])
        body = f"{header_block}\n\n{original.body}"
        if note:
            body = f"{note}\n\n{body}"

        request = OutboundEmail(
            to=normalize_recipients(to),
            subject=_prefixed("Fwd:", original.subject),
            body=body,
            references=original.message_id,
        )
        return self.send_one(request)

    def reply(
        self,
        original: EmailMessage,
        body: str,
        reply_all: bool = False,
        own_address: Optional[str] = None,
    ) -> SendResult:
        """
        Answer a message.

        Recipients are the original sender, plus its To and Cc addresses
        when ``reply_all`` is set, without duplicates and without our own
        address.
        """
        recipients = reply_recipients(original, reply_all, own_address or self.sender)
        if not recipients:
            raise ValidationError(
                f"Email {original.id} has no sender to reply to", "NO_RECIPIENTS"
            )

        quoted = "\n".join(f"> {line}" for line in original.body.splitlines())
        full_body = (
            f"{body}\n\n"
            f"On {original.date.isoformat()}, {_display_sender(original)} wrote:\n{quoted}"
        )

        references = " ".join(r for r in (original.references, original.message_id) if r)
        request = OutboundEmail(
            to=recipients,
            subject=_prefixed("Re:", original.subject),
            body=full_body,
            in_reply_to=original.message_id,
            references=references or None,
        )
        return self.send_one(request)

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(self, session: IMAPConnection, request: OutboundEmail, folder: str) -> Draft:
        """
        Save a message to the drafts folder with the \\Draft flag.

        The draft id is the new UID when the server supports UIDPLUS,
        otherwise the generated Message-ID.
        """
        payload = self.codec.encode(request, self.sender)
        uid = session.append(folder, f"({DRAFT_FLAG})", payload.message.as_bytes())
        self.logger.info(f"Draft saved to {sanitize_for_logging(folder)}")
        return Draft(
            draft_id=uid or payload.message_id,
            message_id=payload.message_id,
            folder=folder,
            created_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Deferred-send records
    # ------------------------------------------------------------------

    def schedule(
        self,
        request: OutboundEmail,
        send_at: Union[datetime, str],
        now: Optional[datetime] = None,
    ) -> ScheduledEmail:
        """
        Record a message for later delivery.

        Nothing is sent until dispatch_due() is called by the application
        (cron job, worker loop or a CLI command).

        Raises:
            ValidationError: Invalid request, or send_at not in the future
        """
        now = now or datetime.now(timezone.utc)
        self.codec.encode(request, self.sender)

        when = parse_schedule_time(send_at, now)
        if when <= now:
            raise ValidationError(
                "Schedule date must be in the future",
                "INVALID_SCHEDULE_DATE",
                {"send_at": when.isoformat()},
            )

        record = ScheduledEmail(
            scheduled_id=f"scheduled_{uuid.uuid4().hex}",
            request=request,
            send_at=when,
            created_at=now,
        )
        self.scheduled[record.scheduled_id] = record
        self.logger.info(f"Email {record.scheduled_id} scheduled for {when.isoformat()}")
        return record

    def list_scheduled(self, status: Optional[str] = None) -> List[ScheduledEmail]:
        """Scheduled records ordered by send time"""
        records = [r for r in self.scheduled.values() if status is None or r.status == status]
        return sorted(records, key=lambda r: r.send_at)

    def cancel_scheduled(self, scheduled_id: str) -> ScheduledEmail:
        record = self.scheduled.get(scheduled_id)
        if record is None:
            raise NotFoundError(
                f"Scheduled email {sanitize_for_logging(str(scheduled_id))} not found",
                "SCHEDULED_NOT_FOUND",
            )
        if record.status != "pending":
            raise ValidationError(
                f"Scheduled email {scheduled_id} is already {record.status}",
                "SCHEDULE_NOT_PENDING",
            )
        record.status = "cancelled"
        record.request.attachments = []
        return record

    def dispatch_due(self, now: Optional[datetime] = None) -> List[ScheduledEmail]:
        """
        Send every pending record whose time has come.

        Returns:
            The records attempted in this run, with status updated
        """
        now = now or datetime.now(timezone.utc)
        due = [r for r in self.list_scheduled("pending") if r.send_at <= now]
        if not due:
            return []

        report = self._run_batch([(", ".join(r.request.to), r.request) for r in due])
        for record, result in zip(due, report.results):
            if result.success:
                record.status = "sent"
                record.message_id = result.message_id
            else:
                record.status = "failed"
                record.error = result.error
            # Attachment payloads are not kept once a record is settled
            record.request.attachments = []
        return due


def reply_recipients(
    original: EmailMessage,
    reply_all: bool,
    own_address: Optional[str],
) -> List[str]:
    """
    Reply targets, de-duplicated case-insensitively, excluding our own address.

    When that leaves nothing (replying to a message we sent ourselves), the
    original sender is kept.
    """
    candidates = [original.sender] if original.sender else []
    if reply_all:
        candidates += list(original.recipients) + list(original.cc)

    own = (own_address or "").lower()
    result: List[str] = []
    seen = set()
    for address in candidates:
        key = address.lower()
        if not address or key in seen or key == own:
            continue
        seen.add(key)
        result.append(address)

    if not result and original.sender:
        result.append(original.sender)
    return result


def _prefixed(prefix: str, subject: str) -> str:
    subject = subject or ""
    if subject.lower().startswith(prefix.lower()):
        return subject
    return f"{prefix} {subject}".rstrip()


def _display_sender(message: EmailMessage) -> str:
    if message.sender_name:
        return f"{message.sender_name} <{message.sender}>"
    return message.sender


def _target_label(target) -> str:
    if target is None:
        return ""
    return target.strip() if isinstance(target, str) else str(target)
