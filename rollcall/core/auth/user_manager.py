"""
Credential Store
================

Owns the mapping from a person to their password hash, role and
outstanding recovery code.

Security Features:
- Argon2id password hashing
- Case-insensitive unique usernames
- Database-enforced recovery invariants:
  a recovery code is unique while outstanding, and a person never holds
  both a password hash and a recovery code
- Parameterized queries only
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Final, Iterator, List, Optional

from rollcall.core.auth.argon2_auth import Argon2Hasher
from rollcall.core.auth.roles import Role
from rollcall.core.errors import PersonNotFound, StoreAction, StoreError, UserExistsError
from rollcall.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from rollcall.security.constants import (
    BOOTSTRAP_PASSWORD_ALPHABET,
    BOOTSTRAP_PASSWORD_LENGTH,
    BOOTSTRAP_USERNAME,
)
from rollcall.utils.validators import validate_string_safe, validate_username


logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT: Final[float] = 10.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def username_key(username: str) -> str:
    """Unicode case-folded form used for lookups and uniqueness."""
    return username.strip().casefold()


@dataclass
class Identity:
    """
    One person capable of authenticating.

    Note: password_hash and recovery_code are never exposed in repr.
    """
    id: int
    first_name: str
    surname: str
    username: str
    role: Role
    form: str = ""
    password_hash: Optional[str] = None
    recovery_code: Optional[int] = None
    was_first_entry: bool = False

    def __repr__(self) -> str:
        return (
            f"Identity(id={self.id!r}, username={self.username!r}, "
            f"role={self.role.name}, has_password={self.has_password})"
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.surname}"

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    @property
    def recovery_outstanding(self) -> bool:
        return self.recovery_code is not None

    def session_fingerprint(self) -> str:
        """Digest of the current credential; changes whenever the password does."""
        return hashlib.sha256((self.password_hash or "").encode("utf-8")).hexdigest()

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to hand to templates and JSON responses."""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "surname": self.surname,
            "username": self.username,
            "form": self.form,
            "permissions": self.role.db_name,
            "password_is_set": self.has_password,
            "was_first_entry": self.was_first_entry,
        }


class CredentialStore:
    """
    SQLite-backed credential store.

    Usage:
        store = CredentialStore(db_path, Argon2Hasher(config.hashing))

        person = store.add_person("Ada", "Lovelace", "alovelace")
        store.update_password(person.id, store.hash("correct horse"))

        person = store.find_by_username("ALovelace")
        if person and person.password_hash and store.verify("correct horse", person.password_hash):
            ...

    Notes:
        - Every operation opens its own connection
        - Multi-statement changes go through ``transaction()``, which takes
          the database write lock up front (BEGIN IMMEDIATE)
    """

    __slots__ = ("_db_path", "_hasher", "_audit")

    _COLUMNS: Final[str] = (
        "id, first_name, surname, username, form, hashed_password, "
        "permissions, password_link_id, was_first_entry"
    )

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS people (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        surname TEXT NOT NULL,
        username TEXT NOT NULL,
        username_key TEXT UNIQUE NOT NULL,
        form TEXT NOT NULL DEFAULT '',
        hashed_password TEXT,
        permissions TEXT NOT NULL DEFAULT 'participant',
        password_link_id INTEGER UNIQUE,
        was_first_entry INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (password_link_id IS NULL OR hashed_password IS NULL)
    );

    CREATE INDEX IF NOT EXISTS idx_people_permissions ON people(permissions);
    """

    def __init__(
        self,
        db_path: Path | str,
        hasher: Argon2Hasher,
        audit: Optional[TamperAwareAuditLog] = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._hasher = hasher
        self._audit = audit
        self.initialize_db()

    def _record(self, event_type: AuditEventType, description: str, identity_id: int,
                details: Optional[Dict[str, Any]] = None) -> None:
        if self._audit is not None:
            self._audit.log(event_type, AuditSeverity.INFO, description,
                            user_id=identity_id, details=details)

    @contextmanager
    def connection(self, action: StoreAction) -> Iterator[sqlite3.Connection]:
        """Open a connection in autocommit mode; sqlite errors become StoreError."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=SQLITE_BUSY_TIMEOUT, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreError(action, e) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreError(action, e) from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, action: StoreAction) -> Iterator[sqlite3.Connection]:
        """
        Run a block as one atomic unit holding the write lock.

        Anything raised inside the block rolls the transaction back and
        propagates unchanged.
        """
        with self.connection(action) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize_db(self) -> None:
        """Create the people table if it does not exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection(StoreAction.INITIALIZING) as conn:
            conn.executescript(self._SCHEMA)

    # Hashing

    def hash(self, plaintext: str) -> str:
        """Hash a plaintext password. Raises HashingError on internal failure."""
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Check a plaintext against a stored hash. A mismatch is False."""
        return self._hasher.verify(plaintext, password_hash)

    def needs_rehash(self, password_hash: str) -> bool:
        """True when a hash was made with weaker parameters than configured."""
        return self._hasher.needs_rehash(password_hash)

    # Lookups

    def find_by_username(self, username: str) -> Optional[Identity]:
        """Case-insensitive exact match on username, folding any script."""
        with self.connection(StoreAction.FINDING_PERSON) as conn:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM people WHERE username_key = ?",
                (username_key(username),),
            ).fetchone()

        return self._row_to_identity(row) if row else None

    def find_by_id(self, identity_id: int) -> Optional[Identity]:
        with self.connection(StoreAction.FINDING_PERSON) as conn:
            return self.fetch_identity(conn, identity_id)

    def fetch_identity(self, conn: sqlite3.Connection, identity_id: int) -> Optional[Identity]:
        """Read one person on an already open connection."""
        row = conn.execute(
            f"SELECT {self._COLUMNS} FROM people WHERE id = ?",
            (identity_id,),
        ).fetchone()
        return self._row_to_identity(row) if row else None

    def list_without_password(self) -> List[Identity]:
        """Everyone who has never set a password or is mid-recovery."""
        with self.connection(StoreAction.FINDING_PEOPLE) as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM people WHERE hashed_password IS NULL ORDER BY id"
            ).fetchall()
        return [self._row_to_identity(row) for row in rows]

    def count_people(self) -> int:
        with self.connection(StoreAction.FINDING_PEOPLE) as conn:
            return conn.execute("SELECT COUNT(*) FROM people").fetchone()[0]

    # Writes

    def add_person(
        self,
        first_name: str,
        surname: str,
        username: str,
        form: str = "",
        role: Role = Role.PARTICIPANT,
        password_hash: Optional[str] = None,
    ) -> Identity:
        """
        Create a new person. Without a hash they must recover before logging in.

        Raises:
            UserExistsError: If the username is taken (case-insensitively)
            ValidationError: If a field is empty or malformed
        """
        username = validate_username(username)
        first_name = validate_string_safe(first_name, max_length=128, field_name="first_name")
        surname = validate_string_safe(surname, max_length=128, field_name="surname")
        form = validate_string_safe(form, max_length=64, allow_empty=True, field_name="form")
        now = _now()

        try:
            with self.connection(StoreAction.ADDING_PERSON) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO people
                    (first_name, surname, username, username_key, form, hashed_password,
                     permissions, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (first_name, surname, username, username_key(username), form, password_hash,
                     role.db_name, now, now),
                )
                identity_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise UserExistsError(f"User '{username}' already exists") from e

        logger.info("Added person %s with role %s", identity_id, role.db_name)
        self._record(AuditEventType.USER_CREATED, "Person added", identity_id,
                     {"role": role.db_name})

        return Identity(
            id=identity_id,
            first_name=first_name,
            surname=surname,
            username=username,
            role=role,
            form=form,
            password_hash=password_hash,
        )

    def update_password(self, identity_id: int, new_hash: str) -> None:
        """
        Store a new password hash. Any outstanding recovery code is dropped
        in the same statement.

        Raises:
            PersonNotFound: If the person does not exist
        """
        with self.connection(StoreAction.UPDATING_PERSON) as conn:
            result = conn.execute(
                """
                UPDATE people
                SET hashed_password = ?, password_link_id = NULL, updated_at = ?
                WHERE id = ?
                """,
                (new_hash, _now(), identity_id),
            )

        if result.rowcount == 0:
            raise PersonNotFound(identity_id)

    def clear_password(self, identity_id: int) -> None:
        """Remove a person's password hash. They must recover to log in again."""
        with self.connection(StoreAction.UPDATING_PERSON) as conn:
            result = conn.execute(
                "UPDATE people SET hashed_password = NULL, updated_at = ? WHERE id = ?",
                (_now(), identity_id),
            )

        if result.rowcount == 0:
            raise PersonNotFound(identity_id)

    def update_role(self, identity_id: int, new_role: Role) -> None:
        """Administrative role change."""
        with self.connection(StoreAction.UPDATING_PERSON) as conn:
            result = conn.execute(
                "UPDATE people SET permissions = ?, updated_at = ? WHERE id = ?",
                (new_role.db_name, _now(), identity_id),
            )

        if result.rowcount == 0:
            raise PersonNotFound(identity_id)

        self._record(AuditEventType.ROLE_CHANGED, "Role updated", identity_id,
                     {"role": new_role.db_name})

    def ensure_bootstrap_admin(self) -> Optional[str]:
        """
        Create the first account when the table is empty.

        Returns:
            The generated plaintext password (shown once), or None if
            people already exist
        """
        if self.count_people() > 0:
            return None

        password = "".join(
            secrets.choice(BOOTSTRAP_PASSWORD_ALPHABET) for _ in range(BOOTSTRAP_PASSWORD_LENGTH)
        )
        try:
            self.add_person(
                first_name="Admin",
                surname="Admin",
                username=BOOTSTRAP_USERNAME,
                form="Staff",
                role=Role.DEV,
                password_hash=self.hash(password),
            )
        except UserExistsError:
            # Another worker bootstrapped first
            return None

        return password

    def close(self) -> None:
        """Release the hashing pool."""
        self._hasher.shutdown()

    def _row_to_identity(self, row: sqlite3.Row) -> Identity:
        """Convert a database row to an Identity."""
        return Identity(
            id=row["id"],
            first_name=row["first_name"],
            surname=row["surname"],
            username=row["username"],
            form=row["form"],
            password_hash=row["hashed_password"],
            role=Role.from_string(row["permissions"]),
            recovery_code=row["password_link_id"],
            was_first_entry=bool(row["was_first_entry"]),
        )
