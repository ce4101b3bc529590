from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import psycopg2
import pytest
from flask import Flask, session

from rollcall.core.auth import session_control
from rollcall.core.auth.session_control import (
    FINGERPRINT_KEY,
    IDENTITY_KEY,
    MemorySessionStore,
    PostgresSessionStore,
    RollcallSession,
    SessionRecord,
    SQLiteSessionStore,
    StoreSessionInterface,
    build_session_store,
)
from rollcall.core.errors import SessionStoreError, StoreAction


@pytest.fixture(params=["memory", "sqlite"])
def session_store(request, tmp_path):
    if request.param == "memory":
        return MemorySessionStore(timeout_seconds=60)
    return SQLiteSessionStore(tmp_path / "sessions.db", timeout_seconds=60)


def _travel(monkeypatch, seconds):
    later = session_control._now() + timedelta(seconds=seconds)
    monkeypatch.setattr(session_control, "_now", lambda: later)


def test_store_then_load(session_store):
    record = SessionRecord({IDENTITY_KEY: 7, FINGERPRINT_KEY: "abc"})
    token = session_store.store(record)

    loaded = session_store.load(token)
    assert loaded.data == {IDENTITY_KEY: 7, FINGERPRINT_KEY: "abc"}
    assert loaded.token == token
    assert token not in repr(loaded)


def test_unknown_token_is_none(session_store):
    assert session_store.load("never-issued") is None


def test_store_keeps_token_on_update(session_store):
    record = SessionRecord({"n": 1})
    token = session_store.store(record)
    record.data["n"] = 2
    assert session_store.store(record) == token
    assert session_store.load(token).data == {"n": 2}


def test_destroy_and_clear_all(session_store):
    first = SessionRecord({"n": 1})
    second = SessionRecord({"n": 2})
    session_store.store(first)
    token = session_store.store(second)

    session_store.destroy(first)
    session_store.destroy(SessionRecord())
    assert session_store.load(first.token) is None
    assert session_store.load(token) is not None

    session_store.clear_all()
    assert session_store.load(token) is None


def test_expired_sessions_disappear(session_store, monkeypatch):
    token = session_store.store(SessionRecord({"n": 1}))
    _travel(monkeypatch, 120)
    assert session_store.load(token) is None


def test_purge_expired(session_store, monkeypatch):
    session_store.store(SessionRecord({"n": 1}))
    session_store.store(SessionRecord({"n": 2}))
    assert session_store.purge_expired() == 0

    _travel(monkeypatch, 120)
    assert session_store.purge_expired() == 2


def test_unserializable_data_is_a_store_error(session_store):
    with pytest.raises(SessionStoreError) as excinfo:
        session_store.store(SessionRecord({"bad": object()}))
    assert excinfo.value.action is StoreAction.STORING_SESSION


def test_build_session_store_picks_backend(config):
    assert isinstance(build_session_store(config), MemorySessionStore)


def _postgres(cursor):
    connect = MagicMock()
    conn = connect.return_value
    conn.cursor.return_value.__enter__.return_value = cursor
    return connect


def test_postgres_load_uses_token_hash():
    cursor = MagicMock()
    connect = _postgres(cursor)
    store = PostgresSessionStore("postgresql://db/rollcall", 60, connect=connect)

    cursor.fetchone.return_value = {
        "data": '{"identity_id": 3}',
        "expires_at": session_control._now() + timedelta(seconds=30),
    }
    record = store.load("cookie-token")

    assert record.data == {"identity_id": 3}
    sql, params = cursor.execute.call_args.args
    assert "WHERE token_hash = %s" in sql
    assert params == (store._hash_token("cookie-token"),)
    assert "cookie-token" not in str(cursor.execute.call_args_list)


def test_postgres_expired_row_is_deleted():
    cursor = MagicMock()
    store = PostgresSessionStore("postgresql://db/rollcall", 60, connect=_postgres(cursor))

    cursor.fetchone.return_value = {
        "data": "{}",
        "expires_at": session_control._now() - timedelta(seconds=1),
    }
    assert store.load("old") is None
    assert cursor.execute.call_args.args[0].startswith("DELETE FROM rollcall_sessions")


def test_postgres_store_upserts():
    cursor = MagicMock()
    store = PostgresSessionStore("postgresql://db/rollcall", 60, connect=_postgres(cursor))

    token = store.store(SessionRecord({"n": 1}))

    sql, params = cursor.execute.call_args.args
    assert "ON CONFLICT (token_hash) DO UPDATE" in sql
    assert params[0] == store._hash_token(token)
    assert params[1] == '{"n": 1}'


def test_postgres_connection_failure_is_a_store_error():
    connect = MagicMock(side_effect=psycopg2.OperationalError("refused"))
    with pytest.raises(SessionStoreError) as excinfo:
        PostgresSessionStore("postgresql://db/rollcall", 60, connect=connect)
    assert excinfo.value.action is StoreAction.INITIALIZING


def test_session_tracks_modification():
    s = RollcallSession({"a": 1}, token="t")
    assert s.modified is False
    s["b"] = 2
    assert s.modified is True

    fresh = RollcallSession()
    fresh.request_rotation()
    assert fresh.rotate is True
    assert fresh.modified is True


@pytest.fixture
def session_app():
    store = MemorySessionStore(timeout_seconds=60)
    app = Flask(__name__)
    app.session_interface = StoreSessionInterface(store, "sid", secure=False)

    @app.route("/set")
    def set_value():
        session["n"] = session.get("n", 0) + 1
        return str(session["n"])

    @app.route("/rotate")
    def rotate():
        session.request_rotation()
        return "ok"

    @app.route("/read")
    def read():
        return str(session.get("n"))

    return app, store


def _cookie(client, name="sid"):
    cookie = client.get_cookie(name)
    return cookie.value if cookie else None


def test_interface_sets_cookie_only_when_needed(session_app):
    app, store = session_app
    client = app.test_client()

    response = client.get("/read")
    assert "Set-Cookie" not in response.headers
    assert "Cookie" in response.headers["Vary"]
    assert len(store) == 0

    response = client.get("/set")
    set_cookie = response.headers["Set-Cookie"]
    assert "HttpOnly" in set_cookie
    assert "SameSite=Lax" in set_cookie
    assert client.get("/read").get_data(as_text=True) == "1"


def test_interface_rotation_replaces_token(session_app):
    app, store = session_app
    client = app.test_client()
    client.get("/set")
    before = _cookie(client)

    client.get("/rotate")
    after = _cookie(client)

    assert after != before
    assert store.load(before) is None
    assert store.load(after).data == {"n": 1}


def test_interface_drops_stale_cookie(session_app):
    app, store = session_app
    client = app.test_client()
    client.get("/set")
    store.clear_all()

    response = client.get("/read")
    assert response.get_data(as_text=True) == "None"
    assert _cookie(client) is None


def test_auth_context_binds_and_checks_fingerprint(store, auth, make_person):
    person = make_person(password="pw")
    data = {}

    assert auth.current_identity(data) is None
    auth.login(data, person)
    assert auth.current_identity(data).id == person.id

    store.update_password(person.id, store.hash("changed"))
    assert auth.current_identity(data) is None


def test_auth_context_login_is_idempotent(make_person, auth):
    person = make_person(password="pw")
    s = RollcallSession(token="t")
    auth.login(s, person)
    assert s.rotate is True

    again = RollcallSession(dict(s), token="t2")
    auth.login(again, person)
    assert again.modified is False
    assert again.rotate is False


def test_auth_context_logout(make_person, auth):
    person = make_person(password="pw")
    data = {"theme": "dark"}
    auth.login(data, person)
    auth.logout(data)
    assert auth.current_identity(data) is None
    assert data == {"theme": "dark"}


def test_auth_context_missing_person(auth):
    assert auth.current_identity({IDENTITY_KEY: 404, FINGERPRINT_KEY: "x"}) is None
