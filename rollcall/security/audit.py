"""
Tamper-Aware Audit System
=========================

Append-only record of authentication events, one JSON object per line.

Each entry stores the digest of the entry before it, so editing,
reordering or deleting a line breaks the chain from that point on.
Entries carry person ids and event names only. Plaintext passwords,
recovery codes and session tokens are never written.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple


logger = logging.getLogger(__name__)

_GENESIS = "genesis"


class AuditSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AuditEventType(Enum):
    """Everything the access-control layer records."""
    # Authentication
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"

    # Recovery
    RECOVERY_ISSUED = "RECOVERY_ISSUED"
    PASSWORD_SET = "PASSWORD_SET"
    PASSWORD_RESET_FORCED = "PASSWORD_RESET_FORCED"

    # People
    USER_CREATED = "USER_CREATED"
    ROLE_CHANGED = "ROLE_CHANGED"

    # Process lifecycle
    STARTUP = "STARTUP"
    SHUTDOWN = "SHUTDOWN"


def _digest(entry: Dict[str, Any]) -> str:
    """Chain digest over every field except the digest itself."""
    body = {key: value for key, value in entry.items() if key != "event_hash"}
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


@dataclass(frozen=True)
class AuditEvent:
    """One line of the audit log before it is chained."""
    event_type: AuditEventType
    severity: AuditSeverity
    description: str
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: secrets.token_hex(8))

    def chained(self, previous_hash: str) -> Dict[str, Any]:
        """The stored form of this event, linked to ``previous_hash``."""
        entry: Dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "description": self.description,
            "details": self.details,
            "previous_hash": previous_hash,
        }
        entry["event_hash"] = _digest(entry)
        return entry


class TamperAwareAuditLog:
    """
    Hash-chained JSON-lines audit log.

    Usage:
        audit = TamperAwareAuditLog(config.paths.audit_log_path)
        audit.log(AuditEventType.LOGIN_SUCCESS, AuditSeverity.INFO, "Logged in", user_id=7)

        valid, count = audit.verify_integrity()

    Reopening an existing file resumes its chain. Writes are serialized
    with a lock and fsynced.
    """

    def __init__(self, log_path: Path) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

        self._last_hash = _GENESIS
        self._event_count = 0
        for line_no, entry in self._entries():
            if entry is None:
                logger.error("Audit log line %d is not valid JSON; chain is broken", line_no)
                continue
            self._last_hash = entry.get("event_hash", self._last_hash)
            self._event_count += 1

    @property
    def event_count(self) -> int:
        return self._event_count

    def _entries(self) -> Iterator[Tuple[int, Optional[Dict[str, Any]]]]:
        """Yield (line number, parsed entry or None) for every non-blank line."""
        if not self._log_path.exists():
            return
        with open(self._log_path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    yield line_no, json.loads(line)
                except json.JSONDecodeError:
                    yield line_no, None

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        description: str,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an event and return its id."""
        event = AuditEvent(event_type, severity, description, user_id, details or {})

        with self._lock:
            entry = event.chained(self._last_hash)
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = entry["event_hash"]
            self._event_count += 1

        return event.event_id

    def verify_integrity(self) -> Tuple[bool, int]:
        """
        Walk the chain from the start.

        Returns:
            (True, n) when all n entries link up, otherwise (False, k)
            where k is the number of entries checked before the break
        """
        previous_hash = _GENESIS
        count = 0

        for _, entry in self._entries():
            if entry is None or entry.get("previous_hash") != previous_hash:
                return False, count
            if _digest(entry) != entry.get("event_hash"):
                return False, count
            previous_hash = entry["event_hash"]
            count += 1

        return True, count

    def get_events(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[AuditEventType] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back stored entries, oldest first, filtered."""
        events: List[Dict[str, Any]] = []

        for _, entry in self._entries():
            if entry is None:
                continue
            if since is not None and datetime.fromisoformat(entry["timestamp"]) < since:
                continue
            if event_type is not None and entry["event_type"] != event_type.value:
                continue
            if user_id is not None and entry.get("user_id") != user_id:
                continue
            events.append(entry)
            if len(events) >= limit:
                break

        return events
