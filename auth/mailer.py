"""
auth/mailer.py -- EmailDispatcher implementations for verification codes.

Contract: send(address, code) -> None. A dispatcher either delivers or
raises EmailDeliveryError; it never reports success for a message that went
nowhere.

  SmtpEmailDispatcher     production transport (smtplib, STARTTLS + login)
  LoggingEmailDispatcher  DEBUG only; writes the code to the log

build_email_dispatcher() picks one from Settings and refuses to hand out the
logging transport outside DEBUG.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol

from auth.errors import EmailDeliveryError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("stepgate.email")

_SUBJECT = "Your sign-in verification code"


class EmailDispatcher(Protocol):
    def send(self, address: str, code: str) -> None: ...


def _body(code: str) -> str:
    return (
        f"Your verification code is {code}.\n\n"
        "It expires in 5 minutes. If you did not try to sign in, "
        "someone may know your password; change it."
    )


class SmtpEmailDispatcher:
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender or user
        self._timeout = timeout

    def send(self, address: str, code: str) -> None:
        msg = MIMEText(_body(code))
        msg["Subject"] = _SUBJECT
        msg["From"] = self._sender
        msg["To"] = address
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                if self._user:
                    server.login(self._user, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send verification code to %s via %s", address, self._host)
            raise EmailDeliveryError(f"SMTP delivery to {address} failed") from exc
        logger.info("Verification code sent to %s", address)


class LoggingEmailDispatcher:
    """Development transport. The code is logged so the flow can be completed locally."""

    def send(self, address: str, code: str) -> None:
        logger.warning("[dev transport] Verification code for %s: %s", address, code)


def build_email_dispatcher(settings: Settings) -> EmailDispatcher:
    """Return the transport configured in settings.

    Raises ValueError when no SMTP host is set outside DEBUG. Settings already
    refuses that combination at load time; this guards callers that build
    Settings by hand.
    """
    if settings.smtp_host:
        return SmtpEmailDispatcher(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
        )
    if settings.debug:
        logger.warning("SMTP_HOST not set; verification codes will be written to the log (DEBUG only).")
        return LoggingEmailDispatcher()
    raise ValueError("No email transport configured. Set SMTP_HOST.")
