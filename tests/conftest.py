from __future__ import annotations

import pytest

from rollcall.core.auth.argon2_auth import Argon2Hasher
from rollcall.core.auth.flow import FlowController
from rollcall.core.auth.recovery import RecoveryTokenManager
from rollcall.core.auth.roles import Role
from rollcall.core.auth.session_control import AuthContext
from rollcall.core.auth.user_manager import CredentialStore
from rollcall.core.config import (
    HashingConfig,
    LoggingConfig,
    PathConfig,
    RecoveryConfig,
    RollcallConfig,
    SessionConfig,
)
from rollcall.security.audit import TamperAwareAuditLog
from rollcall.web.app import create_app
from tests.helpers.fakes import FakeGate, FakeMailer, FakeTransport


@pytest.fixture
def hashing_config():
    """Cheap argon2 parameters so tests stay fast."""
    return HashingConfig(time_cost=1, memory_cost=1024, parallelism=1, workers=2)


@pytest.fixture
def config(tmp_path, hashing_config):
    return RollcallConfig(
        paths=PathConfig(data_dir=tmp_path / "data", log_dir=tmp_path / "logs"),
        hashing=hashing_config,
        session=SessionConfig(backend="memory"),
        recovery=RecoveryConfig(bulk_interval_seconds=0.0),
        logging=LoggingConfig(enable_console=False),
    )


@pytest.fixture
def audit(config):
    return TamperAwareAuditLog(config.paths.audit_log_path)


@pytest.fixture
def store(config, audit):
    s = CredentialStore(config.paths.database_path, Argon2Hasher(config.hashing), audit)
    yield s
    s.close()


@pytest.fixture
def make_person(store):
    """Add a person; pass ``password`` to give them a hash."""
    counter = {"n": 0}

    def _make(username=None, password=None, role=Role.PARTICIPANT, first_name="Ada", surname="Lovelace"):
        counter["n"] += 1
        username = username or f"person{counter['n']}"
        password_hash = store.hash(password) if password is not None else None
        return store.add_person(first_name, surname, username, form="12A", role=role,
                                password_hash=password_hash)

    return _make


@pytest.fixture
def recovery(store, config, audit):
    return RecoveryTokenManager(store, config.recovery, audit)


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def auth(store):
    return AuthContext(store)


@pytest.fixture
def flows(store, recovery, gate, auth, mailer, config, audit):
    return FlowController(store, recovery, gate, auth, mailer, config.recovery, audit)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def app(config, store, gate, transport, audit):
    application = create_app(config, store=store, gate=gate, transport=transport, audit=audit)
    application.config["TESTING"] = True
    yield application
    application.extensions["rollcall"].mail_worker.stop(timeout=5.0)


@pytest.fixture
def client(app):
    return app.test_client()
