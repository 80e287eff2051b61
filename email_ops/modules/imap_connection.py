"""
IMAP Connection Module
Mailbox session: connect, authenticate, search, fetch and mutate messages

PATTERN RECOGNITION: This is an Adapter around Python's imaplib. Callers get
UID based operations that either return plain Python values or raise one of
the typed service errors, never raw imaplib tuples.

All methods are blocking; the service runs them in an executor.
"""

import imaplib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

from ..utils.config import IMAPConfig
from ..utils.errors import (
    AuthenticationError,
    EmailConnectionError,
    NotFoundError,
    ProtocolError,
    ValidationError,
)
from ..utils.sanitization import redact_email, sanitize_for_logging
from ..utils.security_validators import create_secure_ssl_context
from .email_data import FetchedMessage

_UID_PATTERN = re.compile(rb"UID (\d+)")
_SIZE_PATTERN = re.compile(rb"RFC822\.SIZE (\d+)")
_FETCH_START_PATTERN = re.compile(rb"^\d+ \(")
_APPENDUID_PATTERN = re.compile(rb"APPENDUID \d+ (\d+)")
_STATUS_MESSAGES_PATTERN = re.compile(rb"MESSAGES (\d+)")


def quote_imap_string(value: str) -> str:
    """Render a value as an IMAP quoted string"""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def unquote_imap_string(value: str) -> str:
    """Inverse of quote_imap_string; unquoted values are returned as-is"""
    if len(value) < 2 or not (value.startswith('"') and value.endswith('"')):
        return value
    return re.sub(r'\\(["\\])', r"\1", value[1:-1])


class IMAPConnection:
    """
    One authenticated IMAP session

    MAINTENANCE WISDOM: Connection handling lives here and nowhere else.
    Message parsing is MessageCodec's job, query building is SearchEngine's,
    so both can be tested without a server.
    """

    def __init__(self, config: IMAPConfig):
        self.config = config
        self.connection: Optional[imaplib.IMAP4] = None
        self.selected_folder: Optional[str] = None
        self.logger = logging.getLogger(f"IMAPConnection.{config.host}")

    def connect(self) -> None:
        """
        Open the connection and log in.

        SECURITY STORY: TLS 1.2+ is enforced either through implicit TLS or
        STARTTLS. The connect timeout covers the TCP/TLS handshake, the
        auth timeout covers LOGIN only.

        Raises:
            AuthenticationError: The server rejected the credentials
            EmailConnectionError: Network, timeout or TLS failure
        """
        self.logger.info(
            f"Connecting to {self.config.host}:{self.config.port} (TLS={self.config.tls})"
        )
        context = create_secure_ssl_context(
            verify=self.config.reject_unauthorized,
            log_warning=self.logger.warning,
        )

        try:
            if self.config.tls:
                self.connection = imaplib.IMAP4_SSL(
                    self.config.host,
                    self.config.port,
                    ssl_context=context,
                    timeout=self.config.conn_timeout,
                )
            else:
                self.connection = imaplib.IMAP4(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.conn_timeout,
                )
                if "STARTTLS" in self.connection.capabilities:
                    self.connection.starttls(ssl_context=context)
                else:
                    self.logger.warning(
                        "Server does not offer STARTTLS; continuing without encryption"
                    )
        except (imaplib.IMAP4.error, OSError) as e:
            self.connection = None
            raise EmailConnectionError(
                f"Could not connect to IMAP server {self.config.host}:{self.config.port}: {e}",
                details={"host": self.config.host, "port": self.config.port},
            ) from e

        try:
            self.connection.sock.settimeout(self.config.auth_timeout)
            self.connection.login(self.config.user, self.config.password)
            self.connection.sock.settimeout(self.config.conn_timeout)
        except imaplib.IMAP4.abort as e:
            self._drop()
            raise EmailConnectionError(f"IMAP connection lost during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._drop()
            raise AuthenticationError(
                f"IMAP login rejected for {redact_email(self.config.user)}"
            ) from e
        except OSError as e:
            self._drop()
            raise EmailConnectionError(f"IMAP login timed out or failed: {e}") from e

        self.logger.info(f"Logged in as {redact_email(self.config.user)}")

    def disconnect(self):
        """
        Close IMAP connection gracefully
        """
        if not self.connection:
            return

        try:
            self.connection.logout()
            self.logger.debug("Disconnected from IMAP server")
        except Exception:
            # Connection may already be closed
            self.logger.debug("Connection was already closed or logout failed")
        finally:
            self.connection = None
            self.selected_folder = None

    def _drop(self):
        """Tear down a connection that never finished logging in"""
        try:
            self.connection.shutdown()
        except Exception:
            self.logger.debug("Socket shutdown failed")
        finally:
            self.connection = None

    @property
    def capabilities(self) -> Sequence[str]:
        if not self.connection:
            return ()
        return self.connection.capabilities

    def _call(self, description: str, func: Callable, *args) -> List[Any]:
        """
        Run one imaplib command and translate failures.

        Returns:
            The untagged response data of an OK response
        """
        if not self.connection:
            raise EmailConnectionError("IMAP session is not connected")

        try:
            status, data = func(*args)
        except imaplib.IMAP4.abort as e:
            raise EmailConnectionError(f"IMAP connection lost during {description}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"IMAP {description} failed: {e}") from e
        except OSError as e:
            raise EmailConnectionError(f"IMAP {description} failed: {e}") from e

        if status != "OK":
            raise ProtocolError(
                f"IMAP {description} returned {status}",
                details={"response": [sanitize_for_logging(repr(d)) for d in data or []]},
            )
        return data

    def select(self, folder: Optional[str] = None, readonly: bool = False) -> int:
        """
        Select a folder and return its message count

        Raises:
            NotFoundError: The folder does not exist
        """
        folder = folder or self.config.mailbox
        if not self.connection:
            raise EmailConnectionError("IMAP session is not connected")

        try:
            status, data = self.connection.select(quote_imap_string(folder), readonly)
        except imaplib.IMAP4.abort as e:
            raise EmailConnectionError(f"IMAP connection lost during SELECT: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"IMAP SELECT failed: {e}") from e
        except OSError as e:
            raise EmailConnectionError(f"IMAP SELECT failed: {e}") from e

        if status != "OK":
            raise NotFoundError(
                f"Folder {sanitize_for_logging(folder)} could not be selected",
                "FOLDER_NOT_FOUND",
            )

        self.selected_folder = folder
        self.logger.debug(f"Selected folder: {sanitize_for_logging(folder)}")
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    def ensure_selected(self, folder: Optional[str] = None):
        folder = folder or self.config.mailbox
        if self.selected_folder != folder:
            self.select(folder)

    def search(self, criteria: Sequence[str]) -> List[str]:
        """
        Run UID SEARCH and return matching UIDs in ascending order.

        ``criteria`` are ready-made SEARCH tokens. Quoted strings must be
        7-bit, so a non-ASCII value is sent as a UTF-8 literal instead.
        imaplib allows one literal per command, so each such term gets its
        own SEARCH (with the ASCII terms) and the results are intersected.
        """
        self.ensure_selected()
        tokens = list(criteria)
        if all(token.isascii() for token in tokens):
            return sorted(self._uid_search(tokens), key=int)

        if tokens[:2] == ["CHARSET", "UTF-8"]:
            tokens = tokens[2:]
        ascii_terms, literal_terms = [], []
        i = 0
        while i < len(tokens):
            if i + 1 < len(tokens) and not tokens[i + 1].isascii():
                literal_terms.append((tokens[i], unquote_imap_string(tokens[i + 1])))
                i += 2
            elif not tokens[i].isascii():
                raise ValidationError(
                    "Non-ASCII SEARCH value must follow a search key", "INVALID_FILTER"
                )
            else:
                ascii_terms.append(tokens[i])
                i += 1

        matched = None
        for key, value in literal_terms:
            self.connection.literal = value.encode("utf-8")
            uids = self._uid_search(["CHARSET", "UTF-8"] + ascii_terms + [key])
            matched = uids if matched is None else matched & uids
        return sorted(matched, key=int)

    def _uid_search(self, args: Sequence[str]) -> set:
        data = self._call("SEARCH", self.connection.uid, "SEARCH", *args)
        uids = set()
        for chunk in data:
            if chunk:
                uids.update(part.decode() for part in chunk.split())
        return uids

    def fetch(self, uids: Sequence[str], mark_seen: bool = False) -> List[FetchedMessage]:
        """
        Fetch full messages by UID.

        BODY.PEEK[] leaves the \\Seen flag alone; BODY[] sets it, which is
        what IMAP_MARK_SEEN asks for.
        """
        body = "BODY[]" if mark_seen else "BODY.PEEK[]"
        return self._fetch(uids, f"(UID FLAGS INTERNALDATE RFC822.SIZE {body})")

    def fetch_headers(self, uids: Sequence[str], fields: Sequence[str]) -> List[FetchedMessage]:
        """Fetch only the named header fields (no body download)"""
        wanted = " ".join(f.upper() for f in fields)
        return self._fetch(uids, f"(UID FLAGS BODY.PEEK[HEADER.FIELDS ({wanted})])")

    def _fetch(self, uids: Sequence[str], items: str) -> List[FetchedMessage]:
        if not uids:
            return []
        self.ensure_selected()
        data = self._call("FETCH", self.connection.uid, "FETCH", ",".join(uids), items)
        fetched = {m.uid: m for m in self._parse_fetch_response(data)}
        # Servers may answer in any order
        return [fetched[uid] for uid in uids if uid in fetched]

    def _parse_fetch_response(self, data: List[Any]) -> List[FetchedMessage]:
        """
        Group imaplib FETCH data into messages.

        Each message arrives as a (meta, literal) tuple, optionally followed
        by a bytes item carrying attributes sent after the literal
        (e.g. b' FLAGS (\\Seen))').
        """
        pending = []
        for item in data:
            if isinstance(item, tuple):
                pending.append([item[0], item[1]])
            elif isinstance(item, bytes):
                if _FETCH_START_PATTERN.match(item) or not pending:
                    pending.append([item, b""])
                else:
                    pending[-1][0] += b" " + item

        messages = []
        for meta, literal in pending:
            uid_match = _UID_PATTERN.search(meta)
            if not uid_match:
                self.logger.warning("FETCH item without UID ignored")
                continue
            size_match = _SIZE_PATTERN.search(meta)
            messages.append(FetchedMessage(
                uid=uid_match.group(1).decode(),
                raw=literal or b"",
                flags=frozenset(f.decode() for f in imaplib.ParseFlags(meta)),
                internal_date=self._parse_internal_date(meta),
                size=int(size_match.group(1)) if size_match else None,
            ))
        return messages

    @staticmethod
    def _parse_internal_date(meta: bytes) -> Optional[datetime]:
        parsed = imaplib.Internaldate2tuple(meta)
        if not parsed:
            return None
        # Internaldate2tuple returns local time
        return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)

    def store(self, uid: str, flags: Sequence[str], add: bool = True):
        """Add or remove flags on one message"""
        self.ensure_selected()
        op = "+FLAGS" if add else "-FLAGS"
        self._call("STORE", self.connection.uid, "STORE", uid, op, f"({' '.join(flags)})")

    def expunge(self, uid: str):
        """
        Permanently remove \\Deleted messages.

        With UIDPLUS only the given UID is expunged; otherwise a plain
        EXPUNGE removes every message flagged \\Deleted in the folder.
        """
        self.ensure_selected()
        if "UIDPLUS" in self.capabilities:
            self._call("UID EXPUNGE", self.connection.uid, "EXPUNGE", uid)
        else:
            self._call("EXPUNGE", self.connection.expunge)

    def append(self, folder: str, flags: str, message: bytes) -> Optional[str]:
        """
        Append a message to a folder.

        Returns:
            The new UID when the server reports APPENDUID, else None
        """
        data = self._call(
            "APPEND",
            self.connection.append,
            quote_imap_string(folder),
            flags,
            imaplib.Time2Internaldate(time.time()),
            message,
        )
        for chunk in data:
            if isinstance(chunk, bytes):
                match = _APPENDUID_PATTERN.search(chunk)
                if match:
                    return match.group(1).decode()
        return None

    def folder_size(self, folder: str) -> Optional[int]:
        """
        Message count of a folder via STATUS, without selecting it.

        Returns:
            The count, or None when the folder does not exist
        """
        if not self.connection:
            raise EmailConnectionError("IMAP session is not connected")
        try:
            status, data = self.connection.status(quote_imap_string(folder), "(MESSAGES)")
        except imaplib.IMAP4.abort as e:
            raise EmailConnectionError(f"IMAP connection lost during STATUS: {e}") from e
        except imaplib.IMAP4.error:
            return None
        except OSError as e:
            raise EmailConnectionError(f"IMAP STATUS failed: {e}") from e

        if status != "OK" or not data or not isinstance(data[0], bytes):
            return None
        match = _STATUS_MESSAGES_PATTERN.search(data[0])
        return int(match.group(1)) if match else None
