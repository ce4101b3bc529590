from __future__ import annotations

import pytest

from rollcall.core.auth.argon2_auth import Argon2Hasher
from rollcall.core.auth.flow import FlowOutcome, FlowState
from rollcall.core.auth.session_control import FINGERPRINT_KEY, IDENTITY_KEY
from rollcall.core.auth.user_manager import CredentialStore
from rollcall.core.config import HashingConfig
from rollcall.core.errors import FailureReason, StoreAction, TurnstileTransportError, ValidationError
from rollcall.security.audit import AuditEventType


IP = "127.0.0.1"


def _set_code(store, identity_id, code):
    with store.connection(StoreAction.UPDATING_PERSON) as conn:
        conn.execute(
            "UPDATE people SET password_link_id = ?, hashed_password = NULL WHERE id = ?",
            (code, identity_id),
        )


def test_login_success_binds_session(flows, audit, make_person):
    person = make_person(username="alovelace", password="correct horse")
    session = {}

    outcome = flows.login(session, "ALovelace", "correct horse", "token", IP, next_url="/events")

    assert outcome.state is FlowState.AUTHENTICATED
    assert outcome.ok
    assert outcome.redirect == "/events"
    assert session[IDENTITY_KEY] == person.id
    assert flows.auth.current_identity(session).id == person.id
    assert audit.get_events(event_type=AuditEventType.LOGIN_SUCCESS)[0]["user_id"] == person.id


def test_login_folds_non_ascii_username_case(flows, make_person):
    person = make_person(username="ÖZGÜR", password="pw")
    outcome = flows.login({}, "özgür", "pw", "token", IP)
    assert outcome.state is FlowState.AUTHENTICATED
    assert outcome.identity.id == person.id


def test_login_upgrades_hash_made_with_weaker_parameters(flows, store, make_person):
    weak = Argon2Hasher(HashingConfig(time_cost=1, memory_cost=512, parallelism=1, workers=1))
    try:
        old_hash = weak.hash("pw")
    finally:
        weak.shutdown()
    person = make_person(username="alovelace")
    store.update_password(person.id, old_hash)
    session = {}

    outcome = flows.login(session, "alovelace", "pw", "token", IP)

    assert outcome.state is FlowState.AUTHENTICATED
    stored = store.find_by_id(person.id).password_hash
    assert stored != old_hash
    assert store.needs_rehash(stored) is False
    assert store.verify("pw", stored)
    assert flows.auth.current_identity(session).id == person.id


def test_login_ignores_offsite_next(flows, make_person):
    make_person(username="alovelace", password="pw")
    outcome = flows.login({}, "alovelace", "pw", "token", IP, next_url="//evil.example/")
    assert outcome.redirect == "/"


def test_login_without_password_starts_recovery(flows, store, mailer, make_person):
    person = make_person(username="alovelace")
    session = {}

    outcome = flows.login(session, "alovelace", "anything", "token", IP)

    assert outcome.state is FlowState.LOGIN_FAILED
    assert outcome.reason is FailureReason.PASSWORD_IS_NOT_SET
    assert outcome.redirect == "/add_password"
    assert session == {}

    stored = store.find_by_id(person.id)
    assert stored.recovery_code is not None
    assert stored.password_hash is None
    assert mailer.last.identity_id == person.id
    assert mailer.last.code == stored.recovery_code

    shown = flows.show_recovery(person.id)
    assert shown.state is FlowState.RECOVERY_PENDING
    assert shown.identity.id == person.id


def test_recovery_with_correct_code(flows, store, make_person):
    person = make_person()
    _set_code(store, person.id, 4821)
    session = {}

    outcome = flows.recover(session, person.id, "4821", "abc123", "token", IP)

    assert outcome.state is FlowState.AUTHENTICATED
    stored = store.find_by_id(person.id)
    assert store.verify("abc123", stored.password_hash)
    assert stored.recovery_code is None
    assert flows.auth.current_identity(session).id == person.id


def test_recovery_with_wrong_code(flows, store, make_person):
    person = make_person()
    _set_code(store, person.id, 4821)
    session = {}

    outcome = flows.recover(session, person.id, "9999", "abc123", "token", IP)

    assert outcome.reason is FailureReason.FAILED_NUMBERS
    assert outcome.redirect == "/login_failure/failed_numbers"
    stored = store.find_by_id(person.id)
    assert stored.password_hash is None
    assert stored.recovery_code == 4821
    assert session == {}


@pytest.mark.parametrize("raw_code, reason", [
    ("abc", FailureReason.MALFORMED_INPUT),
    (None, FailureReason.MALFORMED_INPUT),
])
def test_recovery_with_malformed_code(flows, store, make_person, raw_code, reason):
    person = make_person()
    _set_code(store, person.id, 4821)
    assert flows.recover({}, person.id, raw_code, "abc123", "token", IP).reason is reason


def test_recovery_with_empty_password(flows, store, make_person):
    person = make_person()
    _set_code(store, person.id, 4821)

    outcome = flows.recover({}, person.id, "4821", "", "token", IP)

    assert outcome.reason is FailureReason.MALFORMED_INPUT
    assert store.find_by_id(person.id).recovery_code == 4821


def test_recovery_rejected_by_gate(flows, gate, store, make_person):
    person = make_person()
    _set_code(store, person.id, 4821)
    gate.success = False

    outcome = flows.recover({}, person.id, "4821", "abc123", "token", IP)

    assert outcome.reason is FailureReason.FAILED_TURNSTILE
    assert store.find_by_id(person.id).recovery_code == 4821


def test_gate_transport_failure_stops_login_before_lookup(flows, gate, audit, make_person, monkeypatch):
    make_person(username="alovelace", password="pw")
    gate.transport_error = True
    lookups = []
    original = CredentialStore.find_by_username

    def _spy(self, username):
        lookups.append(username)
        return original(self, username)

    monkeypatch.setattr(CredentialStore, "find_by_username", _spy)

    with pytest.raises(TurnstileTransportError):
        flows.login({}, "alovelace", "wrong", "token", IP)

    assert lookups == []
    assert audit.get_events(event_type=AuditEventType.LOGIN_FAILURE) == []


def test_gate_rejection_is_a_soft_failure(flows, gate, make_person):
    make_person(username="alovelace", password="pw")
    gate.success = False

    outcome = flows.login({}, "alovelace", "pw", None, IP)

    assert outcome.reason is FailureReason.FAILED_TURNSTILE
    assert gate.calls == [(None, IP)]


def test_wrong_password_changes_nothing(flows, store, mailer, audit, make_person):
    person = make_person(username="alovelace", password="right")
    before = store.find_by_id(person.id).password_hash

    outcome = flows.login({}, "alovelace", "wrong", "token", IP)

    assert outcome.reason is FailureReason.BAD_PASSWORD
    stored = store.find_by_id(person.id)
    assert stored.password_hash == before
    assert stored.recovery_code is None
    assert mailer.queued == []
    failures = audit.get_events(event_type=AuditEventType.LOGIN_FAILURE)
    assert [e["details"]["username"] for e in failures] == ["alovelace"]


def test_unknown_and_blank_usernames(flows):
    assert flows.login({}, "nobody", "pw", "token", IP).reason is FailureReason.USER_NOT_FOUND
    assert flows.login({}, "   ", "pw", "token", IP).reason is FailureReason.MALFORMED_INPUT
    assert flows.login({}, None, "pw", "token", IP).reason is FailureReason.MALFORMED_INPUT


@pytest.mark.parametrize("setup, reason", [
    ("missing", FailureReason.USER_NOT_FOUND),
    ("fresh", FailureReason.NO_NUMBERS),
    ("set", FailureReason.PASSWORD_ALREADY_SET),
])
def test_show_recovery_failures(flows, make_person, setup, reason):
    if setup == "missing":
        identity_id = 404
    elif setup == "fresh":
        identity_id = make_person().id
    else:
        identity_id = make_person(password="pw").id

    outcome = flows.show_recovery(identity_id)
    assert outcome.state is FlowState.RECOVERY_FAILED
    assert outcome.reason is reason


def test_show_recovery_checks_supplied_code(flows, store, make_person):
    person = make_person()
    _set_code(store, person.id, 4821)
    assert flows.show_recovery(person.id, 4821).state is FlowState.RECOVERY_PENDING
    assert flows.show_recovery(person.id, 1234).reason is FailureReason.FAILED_NUMBERS


def test_logout_unbinds(flows, audit, make_person):
    person = make_person(username="alovelace", password="pw")
    session = {}
    flows.login(session, "alovelace", "pw", "token", IP)

    outcome = flows.logout(session)

    assert outcome.state is FlowState.ANONYMOUS
    assert IDENTITY_KEY not in session
    assert FINGERPRINT_KEY not in session
    assert audit.get_events(event_type=AuditEventType.LOGOUT)[0]["user_id"] == person.id


def test_force_reset_signs_out_and_mails(flows, store, mailer, audit, make_person):
    person = make_person(username="alovelace", password="pw")
    session = {}
    flows.login(session, "alovelace", "pw", "token", IP)

    flows.force_reset(person.id)

    assert store.find_by_id(person.id).password_hash is None
    assert flows.auth.current_identity(session) is None
    assert mailer.last.identity_id == person.id
    assert len(audit.get_events(event_type=AuditEventType.PASSWORD_RESET_FORCED)) == 1


def test_set_own_password(flows, store, make_person):
    person = make_person(username="alovelace", password="old")
    session = {}
    flows.login(session, "alovelace", "old", "token", IP)

    outcome = flows.set_own_password(session, "new")

    assert outcome.state is FlowState.AUTHENTICATED
    assert store.verify("new", store.find_by_id(person.id).password_hash)
    # The session is rebound to the new password
    assert flows.auth.current_identity(session).id == person.id


def test_set_own_password_requires_login(flows):
    outcome = flows.set_own_password({}, "new")
    assert outcome == FlowOutcome(state=FlowState.ANONYMOUS, redirect="/login")


def test_set_own_password_rejects_empty(flows, make_person):
    make_person(username="alovelace", password="old")
    session = {}
    flows.login(session, "alovelace", "old", "token", IP)
    with pytest.raises(ValidationError):
        flows.set_own_password(session, "")


def test_reset_all_unset_mails_everyone_without_password(flows, store, mailer, make_person):
    a = make_person()
    make_person(password="pw")
    c = make_person()

    assert flows.reset_all_unset() == 2

    assert [m.identity_id for m in mailer.queued] == [a.id, c.id]
    assert store.find_by_id(a.id).recovery_code is not None
    assert store.find_by_id(c.id).recovery_code is not None


def test_reset_all_unset_stops_when_asked(flows, mailer, make_person):
    make_person()
    make_person()
    mailer.stop_event.set()

    assert flows.reset_all_unset() == 0
    assert mailer.queued == []


def test_start_bulk_reset_runs_in_background(flows, mailer, make_person):
    make_person()
    thread = flows.start_bulk_reset()
    thread.join(timeout=10.0)

    assert not thread.is_alive()
    assert len(mailer.queued) == 1
