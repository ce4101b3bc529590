from __future__ import annotations

import threading
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import List, Optional, Tuple

from rollcall.core.auth.recovery import RecoveryEmail
from rollcall.core.auth.turnstile import TurnstileResult
from rollcall.core.errors import TurnstileTransportError


@dataclass
class FakeGate:
    """Stands in for TurnstileGate. Records every call."""
    success: bool = True
    transport_error: bool = False
    site_key: str = "test-site-key"
    calls: List[Tuple[Optional[str], str]] = field(default_factory=list)

    def verify(self, response: Optional[str], remote_ip: str) -> TurnstileResult:
        self.calls.append((response, remote_ip))
        if self.transport_error:
            raise TurnstileTransportError("timed out")
        return TurnstileResult(success=self.success)


@dataclass
class FakeTransport:
    """Collects messages instead of talking SMTP."""
    fail: bool = False
    sent: List[EmailMessage] = field(default_factory=list)

    def send(self, message: EmailMessage) -> bool:
        if self.fail:
            return False
        self.sent.append(message)
        return True


class FakeMailer:
    """Synchronous stand-in for MailWorker."""

    def __init__(self) -> None:
        self.queued: List[RecoveryEmail] = []
        self.stop_event = threading.Event()

    def enqueue(self, email: RecoveryEmail) -> None:
        self.queued.append(email)

    @property
    def last(self) -> RecoveryEmail:
        return self.queued[-1]
