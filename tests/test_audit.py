from __future__ import annotations

import json

from rollcall.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog


def test_events_chain_and_verify(tmp_path):
    log = TamperAwareAuditLog(tmp_path / "audit.log")
    log.log(AuditEventType.STARTUP, AuditSeverity.INFO, "started")
    log.log(AuditEventType.LOGIN_SUCCESS, AuditSeverity.INFO, "in", user_id=4)
    log.log(AuditEventType.LOGOUT, AuditSeverity.INFO, "out", user_id=4)

    assert log.event_count == 3
    assert log.verify_integrity() == (True, 3)


def test_tampering_is_detected(tmp_path):
    path = tmp_path / "audit.log"
    log = TamperAwareAuditLog(path)
    log.log(AuditEventType.LOGIN_FAILURE, AuditSeverity.WARNING, "bad", user_id=1,
            details={"username": "ada"})
    log.log(AuditEventType.LOGIN_SUCCESS, AuditSeverity.INFO, "ok", user_id=1)

    lines = path.read_text(encoding="utf-8").splitlines()
    first = json.loads(lines[0])
    first["details"]["username"] = "mallory"
    lines[0] = json.dumps(first)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    valid, count = log.verify_integrity()
    assert valid is False
    assert count == 0


def test_chain_resumes_after_reopen(tmp_path):
    path = tmp_path / "audit.log"
    TamperAwareAuditLog(path).log(AuditEventType.STARTUP, AuditSeverity.INFO, "one")

    reopened = TamperAwareAuditLog(path)
    assert reopened.event_count == 1
    reopened.log(AuditEventType.SHUTDOWN, AuditSeverity.INFO, "two")
    assert reopened.verify_integrity() == (True, 2)


def test_get_events_filters(tmp_path):
    log = TamperAwareAuditLog(tmp_path / "audit.log")
    log.log(AuditEventType.LOGIN_SUCCESS, AuditSeverity.INFO, "a", user_id=1)
    log.log(AuditEventType.LOGIN_SUCCESS, AuditSeverity.INFO, "b", user_id=2)
    log.log(AuditEventType.LOGOUT, AuditSeverity.INFO, "c", user_id=2)

    assert len(log.get_events(event_type=AuditEventType.LOGIN_SUCCESS)) == 2
    assert [e["description"] for e in log.get_events(user_id=2)] == ["b", "c"]
    assert len(log.get_events(limit=1)) == 1
