"""
In-memory stand-ins for the IMAP and SMTP sessions.

FakeMailbox evaluates the SEARCH tokens produced by build_search_criteria,
so search, paging, statistics and mutation behaviour can be tested end to
end without a server.
"""

import email
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage as MIMEMessage
from typing import Dict, List, Optional

from email_ops.modules.connection_manager import ConnectionManager
from email_ops.modules.email_data import FetchedMessage
from email_ops.utils.config import IMAPConfig, SMTPConfig, ServiceConfig, SystemConfig
from email_ops.utils.errors import EmailConnectionError, ValidationError

_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_config(**system_overrides) -> ServiceConfig:
    """A valid ServiceConfig for tests"""
    return ServiceConfig(
        smtp=SMTPConfig(
            host="smtp.example.com",
            port=465,
            secure=True,
            user="me@example.com",
            password="s3cret-pass",
        ),
        imap=IMAPConfig(
            host="imap.example.com",
            port=993,
            tls=True,
            user="me@example.com",
            password="s3cret-pass",
        ),
        system=SystemConfig(**system_overrides),
    )


def make_raw(
    sender: Optional[str] = "alice@example.com",
    to: str = "me@example.com",
    subject: str = "Hello",
    body: str = "Body text",
    cc: Optional[str] = None,
    message_id: Optional[str] = None,
) -> bytes:
    msg = MIMEMessage()
    if sender:
        msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Subject"] = subject
    if message_id:
        msg["Message-ID"] = message_id
    msg.set_content(body)
    return msg.as_bytes()


def _unquote(token: str) -> str:
    if token.startswith('"') and token.endswith('"'):
        token = token[1:-1]
    return token.replace('\\"', '"').replace("\\\\", "\\")


def _parse_imap_date(token: str) -> date:
    day, month, year = token.split("-")
    return date(int(year), _MONTHS.index(month) + 1, int(day))


class FakeMailbox:
    """Messages keyed by integer UID, plus other folders' message counts"""

    def __init__(self):
        self.messages: Dict[int, dict] = {}
        self.folders: Dict[str, int] = {}
        self.appended: List[tuple] = []
        self.expunge_error: Optional[Exception] = None
        self.next_uid = 1

    def add(self, raw: bytes, seen: bool = False, flagged: bool = False,
            received: Optional[datetime] = None) -> str:
        uid = self.next_uid
        self.next_uid += 1
        flags = set()
        if seen:
            flags.add("\\Seen")
        if flagged:
            flags.add("\\Flagged")
        self.messages[uid] = {
            "raw": raw,
            "flags": flags,
            "date": received or BASE_DATE + timedelta(hours=uid),
        }
        return str(uid)

    def add_message(self, seen: bool = False, flagged: bool = False,
                    received: Optional[datetime] = None, **headers) -> str:
        return self.add(make_raw(**headers), seen=seen, flagged=flagged, received=received)

    def evaluate(self, criteria: List[str]) -> List[str]:
        tokens = list(criteria)
        predicates = []
        i = 0
        while i < len(tokens):
            token = tokens[i].upper() if isinstance(tokens[i], str) else tokens[i]
            if token == "CHARSET":
                i += 2
                continue
            if token == "ALL":
                pass
            elif token in ("FROM", "TO", "SUBJECT"):
                header = {"FROM": "From", "TO": "To", "SUBJECT": "Subject"}[token]
                needle = _unquote(tokens[i + 1]).lower()
                predicates.append(
                    lambda m, h=header, n=needle:
                    n in str(email.message_from_bytes(m["raw"]).get(h, "")).lower()
                )
                i += 1
            elif token == "SINCE":
                day = _parse_imap_date(tokens[i + 1])
                predicates.append(lambda m, d=day: m["date"].date() >= d)
                i += 1
            elif token == "BEFORE":
                day = _parse_imap_date(tokens[i + 1])
                predicates.append(lambda m, d=day: m["date"].date() < d)
                i += 1
            elif token == "UID":
                wanted = int(tokens[i + 1])
                predicates.append(lambda m, w=wanted: m["uid"] == w)
                i += 1
            elif token in ("SEEN", "UNSEEN", "FLAGGED", "UNFLAGGED"):
                flag = "\\Seen" if "SEEN" in token else "\\Flagged"
                present = not token.startswith("UN")
                predicates.append(lambda m, f=flag, p=present: (f in m["flags"]) == p)
            else:
                raise ValueError(f"Unsupported SEARCH token {token!r}")
            i += 1

        matched = []
        for uid, message in self.messages.items():
            candidate = dict(message, uid=uid)
            if all(p(candidate) for p in predicates):
                matched.append(str(uid))
        return matched


class FakeIMAPSession:
    """Implements the IMAPConnection methods the service components use"""

    def __init__(self, mailbox: FakeMailbox, capabilities=("IMAP4REV1", "UIDPLUS")):
        self.mailbox = mailbox
        self.capabilities = capabilities
        self.fetched_ids: List[str] = []
        self.header_fetches: List[str] = []
        self.disconnected = False

    def select(self, folder=None, readonly=False) -> int:
        return len(self.mailbox.messages)

    def ensure_selected(self, folder=None):
        pass

    def search(self, criteria) -> List[str]:
        return self.mailbox.evaluate(criteria)

    def _fetched(self, uid: str, raw: bytes, message: dict) -> FetchedMessage:
        return FetchedMessage(
            uid=uid,
            raw=raw,
            flags=frozenset(message["flags"]),
            internal_date=message["date"],
            size=len(message["raw"]),
        )

    def fetch(self, uids, mark_seen=False) -> List[FetchedMessage]:
        result = []
        for uid in uids:
            message = self.mailbox.messages.get(int(uid))
            if message is None:
                continue
            self.fetched_ids.append(uid)
            if mark_seen:
                message["flags"].add("\\Seen")
            result.append(self._fetched(uid, message["raw"], message))
        return result

    def fetch_headers(self, uids, fields) -> List[FetchedMessage]:
        result = []
        for uid in uids:
            message = self.mailbox.messages.get(int(uid))
            if message is None:
                continue
            self.header_fetches.append(uid)
            header_end = message["raw"].find(b"\n\n")
            result.append(self._fetched(uid, message["raw"][:header_end + 2], message))
        return result

    def store(self, uid, flags, add=True):
        message = self.mailbox.messages.get(int(uid))
        if message is None:
            return
        if add:
            message["flags"].update(flags)
        else:
            message["flags"].difference_update(flags)

    def expunge(self, uid):
        if self.mailbox.expunge_error is not None:
            raise self.mailbox.expunge_error
        for key in [k for k, m in self.mailbox.messages.items() if "\\Deleted" in m["flags"]]:
            del self.mailbox.messages[key]

    def append(self, folder, flags, message) -> Optional[str]:
        self.mailbox.appended.append((folder, flags, message))
        return str(100 + len(self.mailbox.appended))

    def folder_size(self, folder) -> Optional[int]:
        return self.mailbox.folders.get(folder)

    def disconnect(self):
        self.disconnected = True


class FakeTransport:
    """Shared outbound state across reconnects"""

    def __init__(self):
        self.sent: List[tuple] = []
        self.refuse = set()
        # Recipients whose delivery drops the connection (once each)
        self.drop = set()


class FakeSMTPSession:
    def __init__(self, transport: FakeTransport):
        self.transport = transport
        self.disconnected = False

    def send(self, message, sender, recipients):
        for recipient in recipients:
            if recipient in self.transport.drop:
                self.transport.drop.discard(recipient)
                raise EmailConnectionError("SMTP connection lost: reset by peer")
            if recipient in self.transport.refuse:
                raise ValidationError("All recipients were refused by the server", "RECIPIENTS_REFUSED")
        self.transport.sent.append((message, sender, list(recipients)))
        return list(recipients), []

    def disconnect(self):
        self.disconnected = True


class FakeConnectionManager(ConnectionManager):
    """ConnectionManager whose sessions are the fakes above"""

    def __init__(self, config: ServiceConfig, mailbox: Optional[FakeMailbox] = None):
        super().__init__(config)
        self.mailbox = mailbox or FakeMailbox()
        self.transport = FakeTransport()
        self.inbound_sessions: List[FakeIMAPSession] = []
        self.outbound_sessions: List[FakeSMTPSession] = []
        # Errors raised by the next connect_outbound() calls, in order
        self.outbound_errors: List[Exception] = []

    def connect_inbound(self, config=None):
        session = FakeIMAPSession(self.mailbox)
        self.inbound_sessions.append(session)
        return session

    def connect_outbound(self, config=None):
        if self.outbound_errors:
            raise self.outbound_errors.pop(0)
        session = FakeSMTPSession(self.transport)
        self.outbound_sessions.append(session)
        return session
