"""
Recovery Mail
=============

Composes recovery messages and delivers them from a background thread.

Requests never wait for SMTP: the flow controller enqueues a
RecoveryEmail and returns. One worker thread drains the queue. Stopping
the worker is honoured between messages, never in the middle of a send.
Messages still queued at that point are logged and dropped.
"""

from __future__ import annotations

import logging
import queue
import smtplib
import ssl
import threading
from email.errors import HeaderParseError
from email.headerregistry import Address
from email.message import EmailMessage
from typing import Optional, Protocol

from rollcall.core.auth.recovery import RecoveryEmail
from rollcall.core.config import BrandConfig, MailConfig
from rollcall.core.errors import MailError


logger = logging.getLogger(__name__)

_BODY_TEMPLATE = """Dear {full_name},

You've just tried to login to {instance_name}, but you don't have a password set yet.

To set one, go to {domain}/add_password/{identity_id}?code={code}.

Have a nice day!
"""


def compose_recovery_message(
    email: RecoveryEmail,
    mail_config: MailConfig,
    brand: BrandConfig,
) -> EmailMessage:
    """
    Build the message for one recovery code.

    Raises:
        MailError: If an address or header cannot be formed
    """
    try:
        message = EmailMessage()
        message["From"] = Address(
            display_name=f"{brand.instance_name} NoReply",
            addr_spec=mail_config.username or f"noreply@{mail_config.username_domain}",
        )
        message["To"] = Address(
            display_name=email.full_name,
            username=email.username,
            domain=mail_config.username_domain,
        )
        message["Subject"] = f"{brand.instance_name} - Add Password"
        message.set_content(_BODY_TEMPLATE.format(
            full_name=email.full_name,
            instance_name=brand.instance_name,
            domain=brand.domain.rstrip("/"),
            identity_id=email.identity_id,
            code=email.code,
        ))
    except (ValueError, TypeError, HeaderParseError) as e:
        raise MailError(f"Unable to build recovery message for person {email.identity_id}") from e
    return message


class MailTransport(Protocol):
    """Anything that can deliver a message and report whether it did."""

    def send(self, message: EmailMessage) -> bool:
        ...


class SmtpTransport:
    """Authenticated SMTP delivery over implicit TLS or STARTTLS."""

    def __init__(self, config: MailConfig) -> None:
        self._config = config

    def send(self, message: EmailMessage) -> bool:
        if not self._config.enabled:
            logger.warning("SMTP is not configured; dropping message to %s", message["To"])
            return False

        context = ssl.create_default_context()
        try:
            if self._config.use_ssl:
                server = smtplib.SMTP_SSL(
                    self._config.smtp_host,
                    self._config.smtp_port,
                    timeout=self._config.timeout_seconds,
                    context=context,
                )
            else:
                server = smtplib.SMTP(
                    self._config.smtp_host,
                    self._config.smtp_port,
                    timeout=self._config.timeout_seconds,
                )
            with server:
                if not self._config.use_ssl:
                    server.starttls(context=context)
                if self._config.username:
                    server.login(self._config.username, self._config.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending email to %s: %s", message["To"], e.__class__.__name__)
            return False

        return True


class MailWorker:
    """
    Background delivery of recovery messages.

    Usage:
        worker = MailWorker(SmtpTransport(config.mail), config.mail, config.brand)
        worker.start()
        worker.enqueue(recovery_email)
        ...
        worker.stop()
    """

    def __init__(self, transport: MailTransport, mail_config: MailConfig, brand: BrandConfig) -> None:
        self._transport = transport
        self._mail_config = mail_config
        self._brand = brand
        self._queue: "queue.Queue[Optional[RecoveryEmail]]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stop_event(self) -> threading.Event:
        """Set once ``stop()`` is called. Long-running jobs wait on it."""
        return self._stop

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="rollcall-mail", daemon=True)
        self._thread.start()
        logger.info("Mail worker started")

    def enqueue(self, email: RecoveryEmail) -> None:
        """Hand a message to the worker and return immediately."""
        if self._stop.is_set():
            logger.warning("Mail worker stopped; not sending to person %s", email.identity_id)
            return
        self._queue.put(email)

    def wait_until_idle(self) -> None:
        """Block until every queued message has been handled."""
        self._queue.join()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the message in flight, if any, and wait for the thread."""
        self._stop.set()
        self._queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout)
        if not self.running:
            self._drain()
        logger.info("Mail thread stopping")

    def _run(self) -> None:
        while True:
            email = self._queue.get()
            try:
                if email is None or self._stop.is_set():
                    self._abandon(email)
                    self._drain()
                    return
                self._deliver(email)
            finally:
                self._queue.task_done()

    def _drain(self) -> None:
        """Mark every message still queued as handled without sending it."""
        while True:
            try:
                email = self._queue.get_nowait()
            except queue.Empty:
                return
            self._abandon(email)
            self._queue.task_done()

    @staticmethod
    def _abandon(email: Optional[RecoveryEmail]) -> None:
        if email is not None:
            logger.warning("Mail worker stopped; recovery email for person %s was not sent",
                           email.identity_id)

    def _deliver(self, email: RecoveryEmail) -> None:
        try:
            message = compose_recovery_message(email, self._mail_config, self._brand)
        except MailError:
            logger.exception("Error building recovery email")
            return

        logger.info("Sending email to person %s", email.identity_id)
        try:
            delivered = self._transport.send(message)
        except Exception:
            logger.exception("Transport raised while sending to person %s", email.identity_id)
            delivered = False
        if not delivered:
            logger.error("Recovery email for person %s was not delivered", email.identity_id)
