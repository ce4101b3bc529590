"""
Session Control
================

Server-side sessions and the authentication context built on them.

Security Features:
- Cryptographically random session tokens
- Only token hashes are stored (tokens never hit disk)
- Sliding expiration
- Session id rotation on login
- Sessions are bound to a fingerprint of the password hash, so changing
  or clearing a password signs every other session out

The cookie carries nothing but the opaque token. Everything else lives in
a SessionStore: in memory, in SQLite, or in PostgreSQL.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Final, Iterator, MutableMapping, Optional, Tuple

import psycopg2
import psycopg2.extras
from flask.sessions import SessionInterface, SessionMixin
from werkzeug.datastructures import CallbackDict

from rollcall.core.auth.user_manager import CredentialStore, Identity
from rollcall.core.config import RollcallConfig
from rollcall.core.errors import SessionStoreError, StoreAction
from rollcall.security.constants import SESSION_TOKEN_LENGTH


logger = logging.getLogger(__name__)

IDENTITY_KEY: Final[str] = "identity_id"
FINGERPRINT_KEY: Final[str] = "auth_hash"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """
    One server-held session.

    ``token`` is the cookie value. It is None until the record is first
    stored, and is never written to any backend.
    """
    data: Dict[str, Any] = field(default_factory=dict)
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        """Safe representation without token."""
        expires = self.expires_at.isoformat() if self.expires_at else None
        return f"SessionRecord(keys={sorted(self.data)!r}, expires_at={expires!r})"

    def is_expired(self) -> bool:
        return self.expires_at is not None and _now() >= self.expires_at


class SessionStore(ABC):
    """
    Persistence boundary for sessions.

    A missing or expired session is a normal None from ``load``. Backend
    failures raise SessionStoreError.
    """

    def __init__(self, timeout_seconds: int) -> None:
        self._timeout_seconds = timeout_seconds

    @staticmethod
    def _generate_token() -> str:
        """Generate a cryptographically secure session token."""
        return secrets.token_urlsafe(SESSION_TOKEN_LENGTH)

    @staticmethod
    def _hash_token(token: str) -> str:
        """SHA-256 for lookups; the token cannot be recovered from the store."""
        return hashlib.sha256(token.encode()).hexdigest()

    @staticmethod
    def _encode(data: Dict[str, Any], action: StoreAction) -> str:
        try:
            return json.dumps(data, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise SessionStoreError(action, e) from e

    def _next_expiry(self) -> datetime:
        return _now() + timedelta(seconds=self._timeout_seconds)

    def _prepare(self, record: SessionRecord) -> Tuple[str, str, str, datetime]:
        """Assign a token if needed and compute what gets written."""
        if record.token is None:
            record.token = self._generate_token()
        record.expires_at = self._next_expiry()
        payload = self._encode(record.data, StoreAction.STORING_SESSION)
        return record.token, self._hash_token(record.token), payload, record.expires_at

    @abstractmethod
    def load(self, cookie_value: str) -> Optional[SessionRecord]:
        """Resolve a cookie value to its record, or None."""

    @abstractmethod
    def store(self, record: SessionRecord) -> str:
        """Persist a record and return the cookie value for it."""

    @abstractmethod
    def destroy(self, record: SessionRecord) -> None:
        """Delete a record. Deleting an unknown record is not an error."""

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every session."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""


class MemorySessionStore(SessionStore):
    """Process-local store guarded by a lock. For tests and single workers."""

    def __init__(self, timeout_seconds: int) -> None:
        super().__init__(timeout_seconds)
        self._lock = threading.Lock()
        self._records: Dict[str, Tuple[str, datetime]] = {}

    def load(self, cookie_value: str) -> Optional[SessionRecord]:
        key = self._hash_token(cookie_value)
        with self._lock:
            entry = self._records.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if _now() >= expires_at:
                del self._records[key]
                return None
        return SessionRecord(data=json.loads(payload), token=cookie_value, expires_at=expires_at)

    def store(self, record: SessionRecord) -> str:
        token, key, payload, expires_at = self._prepare(record)
        with self._lock:
            self._records[key] = (payload, expires_at)
        return token

    def destroy(self, record: SessionRecord) -> None:
        if record.token is None:
            return
        with self._lock:
            self._records.pop(self._hash_token(record.token), None)

    def clear_all(self) -> None:
        with self._lock:
            self._records.clear()

    def purge_expired(self) -> int:
        now = _now()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._records.items() if now >= expires_at]
            for key in expired:
                del self._records[key]
        return len(expired)


class SQLiteSessionStore(SessionStore):
    """
    Sessions in the application's SQLite database.

    Usage:
        sessions = SQLiteSessionStore(db_path, timeout_seconds=3600)
        token = sessions.store(SessionRecord({"identity_id": 7}))
        record = sessions.load(token)
    """

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS sessions (
        token_hash TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at);
    """

    def __init__(self, db_path: Path | str, timeout_seconds: int) -> None:
        super().__init__(timeout_seconds)
        self._db_path = Path(db_path)
        self.initialize_db()

    @contextmanager
    def _get_connection(self, action: StoreAction) -> Iterator[sqlite3.Connection]:
        """Get a database connection; commits on success, closes always."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=10.0)
        except sqlite3.Error as e:
            raise SessionStoreError(action, e) from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise SessionStoreError(action, e) from e
        finally:
            conn.close()

    def initialize_db(self) -> None:
        """Initialize the database schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection(StoreAction.INITIALIZING) as conn:
            conn.executescript(self._SCHEMA)

    def load(self, cookie_value: str) -> Optional[SessionRecord]:
        token_hash = self._hash_token(cookie_value)

        with self._get_connection(StoreAction.LOADING_SESSION) as conn:
            row = conn.execute(
                "SELECT data, expires_at FROM sessions WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()

            if not row:
                return None

            expires_at = datetime.fromisoformat(row["expires_at"])
            if _now() >= expires_at:
                conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash,))
                return None

        return SessionRecord(data=json.loads(row["data"]), token=cookie_value, expires_at=expires_at)

    def store(self, record: SessionRecord) -> str:
        token, token_hash, payload, expires_at = self._prepare(record)

        with self._get_connection(StoreAction.STORING_SESSION) as conn:
            conn.execute(
                """
                INSERT INTO sessions (token_hash, data, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(token_hash) DO UPDATE
                SET data = excluded.data, expires_at = excluded.expires_at
                """,
                (token_hash, payload, _now().isoformat(), expires_at.isoformat()),
            )

        return token

    def destroy(self, record: SessionRecord) -> None:
        if record.token is None:
            return
        with self._get_connection(StoreAction.DESTROYING_SESSION) as conn:
            conn.execute(
                "DELETE FROM sessions WHERE token_hash = ?",
                (self._hash_token(record.token),),
            )

    def clear_all(self) -> None:
        with self._get_connection(StoreAction.CLEARING_SESSIONS) as conn:
            conn.execute("DELETE FROM sessions")

    def purge_expired(self) -> int:
        with self._get_connection(StoreAction.PURGING_SESSIONS) as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= ?",
                (_now().isoformat(),),
            )
            return result.rowcount


class PostgresSessionStore(SessionStore):
    """
    Sessions in PostgreSQL, for deployments running several workers.

    Each call opens its own connection; ``with conn`` commits on success
    and rolls back on error.
    """

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS rollcall_sessions (
        token_hash TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_rollcall_sessions_expires ON rollcall_sessions(expires_at);
    """

    def __init__(
        self,
        database_url: str,
        timeout_seconds: int,
        connect: Callable[..., Any] = psycopg2.connect,
    ) -> None:
        super().__init__(timeout_seconds)
        self._database_url = database_url
        self._connect = connect
        self.initialize_db()

    @contextmanager
    def _cursor(self, action: StoreAction) -> Iterator[Any]:
        try:
            conn = self._connect(
                self._database_url,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
        except psycopg2.Error as e:
            raise SessionStoreError(action, e) from e
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg2.Error as e:
            raise SessionStoreError(action, e) from e
        finally:
            conn.close()

    def initialize_db(self) -> None:
        with self._cursor(StoreAction.INITIALIZING) as cur:
            cur.execute(self._SCHEMA)

    def load(self, cookie_value: str) -> Optional[SessionRecord]:
        token_hash = self._hash_token(cookie_value)

        with self._cursor(StoreAction.LOADING_SESSION) as cur:
            cur.execute(
                "SELECT data, expires_at FROM rollcall_sessions WHERE token_hash = %s",
                (token_hash,),
            )
            row = cur.fetchone()

            if not row:
                return None

            expires_at = row["expires_at"]
            if _now() >= expires_at:
                cur.execute("DELETE FROM rollcall_sessions WHERE token_hash = %s", (token_hash,))
                return None

        return SessionRecord(data=json.loads(row["data"]), token=cookie_value, expires_at=expires_at)

    def store(self, record: SessionRecord) -> str:
        token, token_hash, payload, expires_at = self._prepare(record)

        with self._cursor(StoreAction.STORING_SESSION) as cur:
            cur.execute(
                """
                INSERT INTO rollcall_sessions (token_hash, data, created_at, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (token_hash) DO UPDATE
                SET data = EXCLUDED.data, expires_at = EXCLUDED.expires_at
                """,
                (token_hash, payload, _now(), expires_at),
            )

        return token

    def destroy(self, record: SessionRecord) -> None:
        if record.token is None:
            return
        with self._cursor(StoreAction.DESTROYING_SESSION) as cur:
            cur.execute(
                "DELETE FROM rollcall_sessions WHERE token_hash = %s",
                (self._hash_token(record.token),),
            )

    def clear_all(self) -> None:
        with self._cursor(StoreAction.CLEARING_SESSIONS) as cur:
            cur.execute("DELETE FROM rollcall_sessions")

    def purge_expired(self) -> int:
        with self._cursor(StoreAction.PURGING_SESSIONS) as cur:
            cur.execute("DELETE FROM rollcall_sessions WHERE expires_at <= %s", (_now(),))
            return cur.rowcount


def build_session_store(config: RollcallConfig) -> SessionStore:
    """Pick the session backend named in the configuration."""
    session_config = config.session
    if session_config.backend == "memory":
        return MemorySessionStore(session_config.timeout_seconds)
    if session_config.backend == "postgres":
        return PostgresSessionStore(session_config.database_url, session_config.timeout_seconds)
    return SQLiteSessionStore(config.paths.database_path, session_config.timeout_seconds)


class RollcallSession(CallbackDict, SessionMixin):
    """The ``flask.session`` object: a dict that tracks its own changes."""

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        new: bool = False,
    ) -> None:
        def on_update(self: RollcallSession) -> None:
            self.modified = True

        CallbackDict.__init__(self, initial, on_update)
        self.token = token
        self.new = new
        self.modified = False
        self.rotate = False
        self.stale_cookie = False
        self.load_error: Optional[SessionStoreError] = None

    def request_rotation(self) -> None:
        """Issue a fresh token when this session is next saved."""
        self.rotate = True
        self.modified = True


class StoreSessionInterface(SessionInterface):
    """
    Flask session interface backed by a SessionStore.

    A store failure while opening the session is kept on the session
    object; the application re-raises it from a ``before_request`` hook so
    it reaches the normal error handlers.
    """

    def __init__(self, store: SessionStore, cookie_name: str, secure: bool) -> None:
        self._store = store
        self._cookie_name = cookie_name
        self._secure = secure

    @property
    def store(self) -> SessionStore:
        return self._store

    def open_session(self, app: Any, request: Any) -> RollcallSession:
        cookie = request.cookies.get(self._cookie_name)
        if not cookie:
            return RollcallSession(new=True)

        try:
            record = self._store.load(cookie)
        except SessionStoreError as e:
            session = RollcallSession(new=True)
            session.load_error = e
            return session

        if record is None:
            session = RollcallSession(new=True)
            session.stale_cookie = True
            return session

        return RollcallSession(record.data, token=cookie)

    def save_session(self, app: Any, session: RollcallSession, response: Any) -> None:
        response.vary.add("Cookie")

        if session.load_error is not None:
            return

        if session.new and not session:
            if session.stale_cookie:
                response.delete_cookie(self._cookie_name, path="/")
            return

        if not session.modified:
            return

        token = session.token
        if session.rotate and token is not None:
            self._store.destroy(SessionRecord(token=token))
            token = None

        record = SessionRecord(data=dict(session), token=token)
        cookie_value = self._store.store(record)
        response.set_cookie(
            self._cookie_name,
            cookie_value,
            expires=record.expires_at,
            httponly=True,
            secure=self._secure,
            samesite="Lax",
            path="/",
        )


class AuthContext:
    """
    Binds a session to an authenticated identity.

    Usage:
        auth = AuthContext(store)
        auth.login(flask.session, person)
        person = auth.current_identity(flask.session)
        auth.logout(flask.session)
    """

    __slots__ = ("_store",)

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def current_identity(self, session: MutableMapping[str, Any]) -> Optional[Identity]:
        """The identity bound to this session, or None."""
        identity_id = session.get(IDENTITY_KEY)
        if identity_id is None:
            return None

        identity = self._store.find_by_id(int(identity_id))
        if identity is None:
            return None

        bound = session.get(FINGERPRINT_KEY, "")
        if not hmac.compare_digest(str(bound), identity.session_fingerprint()):
            logger.debug("Session for person %s no longer matches their password", identity.id)
            return None

        return identity

    def login(self, session: MutableMapping[str, Any], identity: Identity) -> None:
        """
        Bind the session to ``identity``.

        Calling this again for the same identity and password changes
        nothing. Any other change asks for a fresh session token.
        """
        fingerprint = identity.session_fingerprint()
        if session.get(IDENTITY_KEY) == identity.id and session.get(FINGERPRINT_KEY) == fingerprint:
            return

        session[IDENTITY_KEY] = identity.id
        session[FINGERPRINT_KEY] = fingerprint
        if isinstance(session, RollcallSession):
            session.request_rotation()

    def logout(self, session: MutableMapping[str, Any]) -> None:
        """Unbind. The session record itself stays."""
        session.pop(IDENTITY_KEY, None)
        session.pop(FINGERPRINT_KEY, None)
