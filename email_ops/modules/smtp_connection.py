"""
SMTP Connection Module
Transport session used to submit outbound messages
"""

import logging
import smtplib
from email.message import EmailMessage as MIMEMessage
from typing import List, Optional, Sequence, Tuple

from ..utils.config import SMTPConfig
from ..utils.errors import AuthenticationError, EmailConnectionError, ProtocolError, ValidationError
from ..utils.sanitization import redact_email
from ..utils.security_validators import create_secure_ssl_context


class SMTPConnection:
    """
    One authenticated SMTP session

    A session can submit any number of messages; the dispatch engine keeps
    one open for a whole bulk job.
    """

    def __init__(self, config: SMTPConfig):
        self.config = config
        self.connection: Optional[smtplib.SMTP] = None
        self.logger = logging.getLogger(f"SMTPConnection.{config.host}")

    def connect(self) -> None:
        """
        Open the connection, upgrade to TLS and log in.

        SECURITY STORY: With SMTP_SECURE the socket is TLS from the first
        byte (port 465). Otherwise STARTTLS is used whenever the server
        offers it, with the same TLS 1.2+ context.

        Raises:
            AuthenticationError: The server rejected the credentials
            EmailConnectionError: Network, timeout or TLS failure
        """
        self.logger.info(
            f"Connecting to {self.config.host}:{self.config.port} (secure={self.config.secure})"
        )
        context = create_secure_ssl_context(
            verify=self.config.reject_unauthorized,
            log_warning=self.logger.warning,
        )

        try:
            if self.config.secure:
                self.connection = smtplib.SMTP_SSL(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout,
                    context=context,
                )
            else:
                self.connection = smtplib.SMTP(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout,
                )
                self.connection.ehlo()
                if self.connection.has_extn("starttls"):
                    self.connection.starttls(context=context)
                    self.connection.ehlo()
                else:
                    self.logger.warning(
                        "Server does not offer STARTTLS; continuing without encryption"
                    )

            self.connection.login(self.config.user, self.config.password)
        except smtplib.SMTPAuthenticationError as e:
            self.disconnect()
            raise AuthenticationError(
                f"SMTP login rejected for {redact_email(self.config.user)}",
                details={"smtp_code": e.smtp_code},
            ) from e
        except smtplib.SMTPNotSupportedError as e:
            self.disconnect()
            raise ProtocolError(f"SMTP server does not support AUTH: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            self.disconnect()
            raise EmailConnectionError(
                f"Could not connect to SMTP server {self.config.host}:{self.config.port}: {e}",
                details={"host": self.config.host, "port": self.config.port},
            ) from e

        self.logger.info(f"Logged in as {redact_email(self.config.user)}")

    def disconnect(self):
        """Close the SMTP session"""
        if not self.connection:
            return

        try:
            self.connection.quit()
        except Exception:
            self.logger.debug("Connection was already closed or QUIT failed")
            try:
                self.connection.close()
            except Exception:
                self.logger.debug("Socket close failed")
        finally:
            self.connection = None

    def send(
        self,
        message: MIMEMessage,
        sender: str,
        recipients: Sequence[str],
    ) -> Tuple[List[str], List[str]]:
        """
        Submit one message.

        Returns:
            (accepted, rejected) recipient lists

        Raises:
            ValidationError: The server refused every recipient
            EmailConnectionError: The connection dropped
            ProtocolError: The server refused the sender or the data
        """
        if not self.connection:
            raise EmailConnectionError("SMTP session is not connected")

        try:
            refused = self.connection.send_message(message, sender, list(recipients))
        except smtplib.SMTPRecipientsRefused as e:
            raise ValidationError(
                "All recipients were refused by the server",
                "RECIPIENTS_REFUSED",
                {"refused": sorted(e.recipients)},
            ) from e
        except smtplib.SMTPServerDisconnected as e:
            self.connection = None
            raise EmailConnectionError(f"SMTP connection lost: {e}") from e
        except smtplib.SMTPSenderRefused as e:
            raise ProtocolError(
                f"Sender {redact_email(sender)} refused: {e.smtp_code}",
                "SENDER_REFUSED",
            ) from e
        except smtplib.SMTPResponseException as e:
            raise ProtocolError(
                f"SMTP server rejected the message: {e.smtp_code} {e.smtp_error!r}",
                details={"smtp_code": e.smtp_code},
            ) from e
        except smtplib.SMTPException as e:
            raise ProtocolError(f"SMTP send failed: {e}") from e
        except OSError as e:
            self.connection = None
            raise EmailConnectionError(f"SMTP send failed: {e}") from e

        rejected = [r for r in recipients if r in refused]
        accepted = [r for r in recipients if r not in refused]
        return accepted, rejected
