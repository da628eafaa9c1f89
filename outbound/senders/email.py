"""SMTP email sender.

Payloads are self-contained: the scheduler renders subject and html when it
creates the task, so sending needs no database access.

Payload keys:

* ``to`` - recipient address (required)
* ``cc`` - optional list of addresses
* ``subject`` - message subject
* ``html`` - HTML body
* ``text`` - optional plain-text alternative
"""
import smtplib
import socket
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from outbound.logging_config import get_logger
from outbound.senders import PermanentSendError, SendError, Sender

logger = get_logger(__name__)


class SMTPEmailSender(Sender):
    """Deliver task emails through an SMTP server (STARTTLS or SSL)."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        from_address: Optional[str] = None,
        timeout: int = 30,
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_ssl = use_ssl
        self._from = from_address or username or "no-reply@localhost"
        self._timeout = timeout

    @classmethod
    def from_config(cls, config) -> "SMTPEmailSender":
        return cls(
            host=config.get("SMTP_HOST", "localhost"),
            port=int(config.get("SMTP_PORT", 587)),
            username=config.get("SMTP_USERNAME"),
            password=config.get("SMTP_PASSWORD"),
            use_ssl=bool(config.get("SMTP_USE_SSL")),
            from_address=config.get("MAIL_FROM"),
            timeout=int(config.get("SMTP_TIMEOUT", 30)),
        )

    def build_message(self, payload: dict) -> EmailMessage:
        recipient = (payload or {}).get("to")
        if not recipient:
            raise PermanentSendError("Email payload has no recipient")

        msg = EmailMessage()
        msg["Subject"] = payload.get("subject", "")
        msg["From"] = self._from
        msg["To"] = recipient
        cc = [addr for addr in payload.get("cc") or [] if addr]
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg["Message-ID"] = make_msgid()

        html = payload.get("html") or ""
        text = payload.get("text")
        if text:
            msg.set_content(text)
            msg.add_alternative(html, subtype="html")
        else:
            msg.set_content(html, subtype="html")
        return msg

    def _connect(self) -> smtplib.SMTP:
        if self._use_ssl:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        return smtplib.SMTP(self._host, self._port, timeout=self._timeout)

    def send(self, kind, payload: dict) -> Optional[dict]:
        msg = self.build_message(payload)

        try:
            with self._connect() as smtp:
                smtp.ehlo()
                if not self._use_ssl:
                    smtp.starttls()
                    smtp.ehlo()
                if self._username and self._password:
                    smtp.login(self._username, self._password)
                smtp.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentSendError(f"Recipient refused: {msg['To']}") from exc
        except smtplib.SMTPAuthenticationError as exc:
            raise SendError(f"SMTP authentication failed at {self._host}:{self._port}") from exc
        except smtplib.SMTPResponseException as exc:
            if 500 <= exc.smtp_code < 600:
                raise PermanentSendError(f"SMTP rejected message ({exc.smtp_code}): {exc.smtp_error!r}") from exc
            raise SendError(f"SMTP temporary failure ({exc.smtp_code}): {exc.smtp_error!r}") from exc
        except (smtplib.SMTPException, socket.error) as exc:
            raise SendError(f"Failed to send email via {self._host}:{self._port}: {exc}") from exc

        logger.info("Email sent", kind=getattr(kind, "value", kind), to=msg["To"], subject=msg["Subject"])
        return {"message_id": msg["Message-ID"]}
