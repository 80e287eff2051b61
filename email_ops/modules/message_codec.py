"""
Message Codec Module
Converts between raw mailbox data and the domain model

PATTERN RECOGNITION: decode() is the Parser side (untrusted bytes in,
EmailMessage out); encode() is the Builder side (OutboundEmail in, a
ready-to-submit MIME message out).

SECURITY STORY: Inbound parsing caps MIME parts and body size and sanitizes
attachment filenames. Outbound encoding refuses header injection in the
subject and oversized attachments.
"""

import email
import html
import logging
import mimetypes
import quopri
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage as MIMEMessage
from email.message import Message
from email.utils import formatdate, getaddresses, make_msgid, parsedate_to_datetime
from pathlib import Path
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from ..utils.errors import ValidationError
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import (
    MAX_MIME_PARTS,
    MAX_SUBJECT_LENGTH,
    contains_header_injection,
    sanitize_filename,
)
from ..utils.validators import normalize_recipients, validate_recipients
from .email_data import AttachmentInfo, EmailMessage, FetchedMessage, OutboundEmail

logger = logging.getLogger(__name__)

_BLANK_RUNS = re.compile(r"\n\s*\n+")
_SPACE_RUNS = re.compile(r"[ \t\f\v]+")


@dataclass
class OutboundPayload:
    """A MIME message ready for SMTP submission"""
    message: MIMEMessage
    sender: str
    recipients: List[str]
    message_id: str


class MessageCodec:
    """
    Decodes fetched messages and encodes send requests

    MAINTENANCE WISDOM: No I/O besides reading attachment files, so every
    rule here is testable with literal bytes.
    """

    def __init__(
        self,
        max_body_size: int = 1024 * 1024,
        max_attachment_bytes: int = 25 * 1024 * 1024,
    ):
        self.max_body_size = max_body_size
        self.max_attachment_bytes = max_attachment_bytes
        self.logger = logging.getLogger("MessageCodec")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def decode(self, fetched: FetchedMessage) -> EmailMessage:
        """
        Build an EmailMessage from one FETCH result.

        Missing optional headers (Cc, Date, From, Message-ID) fall back to
        empty values instead of failing.
        """
        msg = email.message_from_bytes(fetched.raw)
        safe_id = sanitize_for_logging(fetched.uid)

        sender_name, sender = self._first_address(msg.get("From", ""))
        body, body_html, attachments = self._extract_content(msg, safe_id)
        if not body and body_html:
            body = self.html_to_text(body_html)

        return EmailMessage(
            id=fetched.uid,
            sender=sender,
            sender_name=sender_name or None,
            recipients=self._addresses(msg.get_all("To", [])),
            cc=self._addresses(msg.get_all("Cc", [])),
            subject=self._extract_subject(msg, safe_id),
            body=body,
            html=body_html or None,
            flags=fetched.flags,
            date=fetched.internal_date or self._extract_date(msg),
            attachments=attachments,
            message_id=self._header(msg, "Message-ID"),
            in_reply_to=self._header(msg, "In-Reply-To"),
            references=self._header(msg, "References"),
            size=fetched.size if fetched.size is not None else len(fetched.raw),
        )

    def sender_address(self, fetched: FetchedMessage) -> Optional[str]:
        """Lower-cased bare From address of a header-only fetch, None if absent"""
        msg = email.message_from_bytes(fetched.raw)
        _, address = self._first_address(msg.get("From", ""))
        return address.lower() if address else None

    def _extract_subject(self, msg: Message, safe_id: str) -> str:
        subject = self._decode_header_value(msg.get("Subject", ""))
        if len(subject) > MAX_SUBJECT_LENGTH:
            subject = subject[:MAX_SUBJECT_LENGTH]
            self.logger.warning(
                f"Subject truncated to {MAX_SUBJECT_LENGTH} chars for email {safe_id}"
            )
        return subject

    @staticmethod
    def _extract_date(msg: Message) -> datetime:
        """Date header, or now when it is missing or unparsable"""
        date_str = msg.get("Date", "")
        try:
            parsed = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError):
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _header(self, msg: Message, name: str) -> Optional[str]:
        value = msg.get(name)
        if not value:
            return None
        return " ".join(self._decode_header_value(value).split())

    def _extract_content(
        self, msg: Message, safe_id: str
    ) -> Tuple[str, str, List[AttachmentInfo]]:
        """
        Collect plain text, HTML and attachment metadata.

        SECURITY STORY: Part count is capped at MAX_MIME_PARTS and each body
        at max_body_size characters.
        """
        text_parts: List[str] = []
        html_parts: List[str] = []
        attachments: List[AttachmentInfo] = []

        for part_count, part in enumerate(msg.walk(), start=1):
            if part_count > MAX_MIME_PARTS:
                self.logger.warning(
                    f"Email {safe_id} exceeds max MIME parts ({MAX_MIME_PARTS}). "
                    f"Ignoring remaining parts."
                )
                break
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = (part.get_content_disposition() or "").lower()
            filename = part.get_filename()

            if disposition == "attachment" or (filename and disposition != "inline"):
                payload = part.get_payload(decode=True) or b""
                attachments.append(AttachmentInfo(
                    filename=sanitize_filename(self._decode_header_value(filename or "")),
                    size=len(payload),
                    content_type=content_type,
                ))
            elif content_type == "text/plain":
                text_parts.append(self._decode_part_payload(part))
            elif content_type == "text/html":
                html_parts.append(self._decode_part_payload(part))

        return (
            self._truncate("".join(text_parts), "Body text", safe_id),
            self._truncate("".join(html_parts), "Body HTML", safe_id),
            attachments,
        )

    def _truncate(self, text: str, label: str, safe_id: str) -> str:
        if len(text) > self.max_body_size:
            self.logger.warning(
                f"{label} truncated to {self.max_body_size} chars for email {safe_id}"
            )
            return text[:self.max_body_size]
        return text

    @staticmethod
    def _decode_part_payload(part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            # Unknown charset, fallback to UTF-8
            return payload.decode("utf-8", errors="replace")

    @staticmethod
    def _decode_header_value(value: str) -> str:
        """Decode an RFC 2047 encoded header value, keeping the raw value on failure"""
        if not value:
            return ""
        try:
            return str(make_header(decode_header(value)))
        except (UnicodeDecodeError, LookupError, ValueError):
            return str(value)

    @classmethod
    def _first_address(cls, header_value: str) -> Tuple[str, str]:
        for name, address in getaddresses([header_value or ""]):
            if address:
                return cls._decode_header_value(name), address
        return "", ""

    @classmethod
    def _addresses(cls, header_values: List[str]) -> List[str]:
        return [address for _, address in getaddresses(header_values) if address]

    @classmethod
    def to_display_text(cls, text: str, charset: str = "utf-8") -> str:
        """
        Render a raw, still quoted-printable body as readable plain text.

        Removes soft line breaks and decodes =XX escapes as bytes in
        ``charset``, then renders the HTML. Lossy; for display only.
        Bodies already transfer-decoded go straight to html_to_text().
        """
        if not text:
            return ""

        raw = quopri.decodestring(text.encode(charset, "replace"))
        return cls.html_to_text(raw.decode(charset, "replace"))

    @staticmethod
    def html_to_text(text: str) -> str:
        """
        Drop <style>/<script> blocks and remaining tags, decode HTML
        entities and collapse whitespace.
        """
        if not text:
            return ""

        soup = BeautifulSoup(text, "html.parser")
        for tag in soup.find_all(["style", "script", "head", "title"]):
            tag.decompose()
        for br in soup.find_all("br"):
            br.replace_with("\n")
        text = soup.get_text()

        text = html.unescape(text).replace("\xa0", " ")
        text = _SPACE_RUNS.sub(" ", text)
        text = "\n".join(line.strip() for line in text.splitlines())
        text = _BLANK_RUNS.sub("\n\n", text)
        return text.strip()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def encode(self, request: OutboundEmail, sender: str) -> OutboundPayload:
        """
        Validate a send request and build its MIME message.

        Raises:
            ValidationError: Empty or malformed recipients, a subject with
                line breaks, or an unreadable/oversized attachment
        """
        to = validate_recipients(request.to, "to")
        cc = validate_recipients(request.cc, "cc") if normalize_recipients(request.cc) else []
        bcc = validate_recipients(request.bcc, "bcc") if normalize_recipients(request.bcc) else []

        subject = request.subject or ""
        if contains_header_injection(subject):
            raise ValidationError("Subject must not contain line breaks", "INVALID_SUBJECT")
        if len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError(
                f"Subject exceeds {MAX_SUBJECT_LENGTH} characters", "INVALID_SUBJECT"
            )
        for name in ("in_reply_to", "references"):
            if contains_header_injection(getattr(request, name) or ""):
                raise ValidationError(f"{name} must not contain line breaks", "INVALID_HEADER")

        domain = sender.rpartition("@")[2] or None
        message_id = make_msgid(domain=domain)

        msg = MIMEMessage(policy=policy.SMTP)
        msg["From"] = sender
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = message_id
        if request.in_reply_to:
            msg["In-Reply-To"] = request.in_reply_to
        if request.references:
            msg["References"] = request.references

        msg.set_content(request.body or "")
        if request.html:
            msg.add_alternative(request.html, subtype="html")

        total = 0
        for attachment in request.attachments:
            data = self._read_attachment(attachment)
            total += len(data)
            if total > self.max_attachment_bytes:
                raise ValidationError(
                    f"Attachments exceed the {self.max_attachment_bytes} byte limit",
                    "ATTACHMENT_TOO_LARGE",
                    {"filename": attachment.filename},
                )
            maintype, subtype = self._content_type(attachment).split("/", 1)
            msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=attachment.filename)

        # Bcc recipients go on the envelope only
        return OutboundPayload(
            message=msg,
            sender=sender,
            recipients=_unique(to + cc + bcc),
            message_id=message_id,
        )

    def _read_attachment(self, attachment) -> bytes:
        if attachment.content is not None:
            return bytes(attachment.content)

        path = Path(attachment.path)
        try:
            size = path.stat().st_size
            if size > self.max_attachment_bytes:
                raise ValidationError(
                    f"Attachment {attachment.filename!r} is {size} bytes, "
                    f"limit is {self.max_attachment_bytes}",
                    "ATTACHMENT_TOO_LARGE",
                    {"filename": attachment.filename},
                )
            return path.read_bytes()
        except OSError as e:
            raise ValidationError(
                f"Cannot read attachment {attachment.filename!r}: {e.strerror or e}",
                "ATTACHMENT_UNREADABLE",
                {"filename": attachment.filename},
            ) from e

    @staticmethod
    def _content_type(attachment) -> str:
        if attachment.content_type and "/" in attachment.content_type:
            return attachment.content_type
        guessed, _ = mimetypes.guess_type(attachment.filename)
        return guessed or "application/octet-stream"


def _unique(addresses: List[str]) -> List[str]:
    seen = set()
    result = []
    for address in addresses:
        key = address.lower()
        if key not in seen:
            seen.add(key)
            result.append(address)
    return result
