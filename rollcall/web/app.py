"""
Rollcall Web API
================
Flask surface for login, logout and password recovery.

Pages are returned as small JSON documents carrying the data a template
would receive. Failures redirect to /login_failure/<reason>, which answers
with the status code of that reason.
"""

import logging
import sys
from dataclasses import dataclass
from functools import wraps
from typing import Optional
from urllib.parse import urlencode

from flask import Flask, g, jsonify, redirect, request, session

from rollcall.core.auth.argon2_auth import Argon2Hasher
from rollcall.core.auth.flow import FlowController, FlowOutcome
from rollcall.core.auth.recovery import RecoveryTokenManager
from rollcall.core.auth.roles import Capability, auth_context, can
from rollcall.core.auth.session_control import (
    AuthContext,
    RollcallSession,
    SessionStore,
    StoreSessionInterface,
    build_session_store,
)
from rollcall.core.auth.turnstile import TurnstileGate, remote_ip_from_headers
from rollcall.core.auth.user_manager import CredentialStore
from rollcall.core.config import RollcallConfig
from rollcall.core.errors import (
    FailureReason,
    HashingError,
    InvariantViolation,
    MissingClientOrigin,
    RecoveryError,
    StoreError,
    TurnstileTransportError,
    ValidationError,
)
from rollcall.core.logging import configure_root_logger
from rollcall.core.mail import MailTransport, MailWorker, SmtpTransport
from rollcall.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from rollcall.security.constants import BOOTSTRAP_USERNAME


logger = logging.getLogger(__name__)

MAX_FORM_BYTES = 64 * 1024


@dataclass
class RollcallServices:
    """Everything one application instance wires together."""
    store: CredentialStore
    sessions: SessionStore
    gate: TurnstileGate
    recovery: RecoveryTokenManager
    auth: AuthContext
    flows: FlowController
    mail_worker: MailWorker
    audit: TamperAwareAuditLog

    def shutdown(self) -> None:
        self.mail_worker.stop(timeout=5.0)
        self.store.close()
        self.audit.log(AuditEventType.SHUTDOWN, AuditSeverity.INFO, "Rollcall stopped")


# ============================================================
# ACCESS DECORATORS
# ============================================================

def _login_redirect():
    target = request.full_path if request.query_string else request.path
    return redirect("/login?" + urlencode({"next": target}))


def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if g.identity is None:
            return _login_redirect()
        return f(*args, **kwargs)
    return wrapper


def require_capability(capability: Capability):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if g.identity is None:
                return _login_redirect()
            if not can(g.identity, capability):
                return jsonify({
                    "error": "Forbidden",
                    "required": capability.threshold.db_name,
                }), 403
            return f(*args, **kwargs)
        return wrapper
    return decorator


def _follow(outcome: FlowOutcome):
    return redirect(outcome.redirect or "/", code=303)


# ============================================================
# APP FACTORY
# ============================================================

def create_app(
    config: RollcallConfig,
    *,
    store: Optional[CredentialStore] = None,
    session_store: Optional[SessionStore] = None,
    gate: Optional[TurnstileGate] = None,
    transport: Optional[MailTransport] = None,
    audit: Optional[TamperAwareAuditLog] = None,
) -> Flask:
    """
    Build the application.

    Collaborators default to the ones named in ``config``; tests pass
    their own. A supplied store should share the supplied audit log.
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_FORM_BYTES

    if audit is None:
        audit = TamperAwareAuditLog(config.paths.audit_log_path)
    if store is None:
        store = CredentialStore(config.paths.database_path, Argon2Hasher(config.hashing), audit)
    if session_store is None:
        session_store = build_session_store(config)
    if gate is None:
        gate = TurnstileGate(config.turnstile, production=config.app.production)

    purged = session_store.purge_expired()
    if purged:
        logger.info("Purged %d expired sessions", purged)

    mail_worker = MailWorker(transport or SmtpTransport(config.mail), config.mail, config.brand)
    mail_worker.start()

    auth = AuthContext(store)
    recovery = RecoveryTokenManager(store, config.recovery, audit)
    flows = FlowController(store, recovery, gate, auth, mail_worker, config.recovery, audit)

    services = RollcallServices(
        store=store,
        sessions=session_store,
        gate=gate,
        recovery=recovery,
        auth=auth,
        flows=flows,
        mail_worker=mail_worker,
        audit=audit,
    )
    app.extensions["rollcall"] = services
    app.session_interface = StoreSessionInterface(
        session_store,
        cookie_name=config.session.cookie_name,
        secure=config.app.production,
    )

    production = config.app.production

    def page(name: str, **data):
        return jsonify({"page": name, "auth": auth_context(g.identity), **data})

    @app.before_request
    def load_identity():
        if isinstance(session, RollcallSession) and session.load_error is not None:
            raise session.load_error
        g.identity = auth.current_identity(session)

    # ============================================================
    # ERROR HANDLERS
    # ============================================================

    @app.errorhandler(RecoveryError)
    def handle_recovery_error(e):
        return redirect(e.reason.path, code=303)

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({"error": str(e), "reason": FailureReason.MALFORMED_INPUT.value}), 400

    @app.errorhandler(MissingClientOrigin)
    def handle_missing_origin(e):
        logger.warning("Rejected request without client origin header")
        return jsonify({"error": "Missing client origin"}), 403

    @app.errorhandler(StoreError)
    def handle_store_error(e):
        logger.error("Store failure while %s", e.action.value, exc_info=e)
        return jsonify({"error": "Storage unavailable", "action": e.action.value}), 500

    @app.errorhandler(HashingError)
    def handle_hashing_error(e):
        logger.error("Password hashing failed", exc_info=e)
        return jsonify({"error": "Internal error", "action": "hashing_password"}), 500

    @app.errorhandler(TurnstileTransportError)
    def handle_turnstile_error(e):
        return jsonify({"error": "Verification service unavailable", "action": "verifying_turnstile"}), 502

    @app.errorhandler(InvariantViolation)
    def handle_invariant(e):
        logger.error("Invariant violated for person %s: %s", e.identity_id, e.detail)
        return jsonify({"error": "Internal error", "action": "checking_recovery_state"}), 500

    # ============================================================
    # PAGES
    # ============================================================

    @app.route("/")
    def index():
        return page("index")

    @app.route("/auth")
    def auth_info():
        return jsonify(auth_context(g.identity))

    @app.route("/login", methods=["GET"])
    def login_page():
        password = store.ensure_bootstrap_admin()
        if password is not None:
            logger.warning("No people found; created the '%s' account", BOOTSTRAP_USERNAME)
            print(
                f"Created account '{BOOTSTRAP_USERNAME}' with password: {password}",
                file=sys.stderr,
            )
        return page("login", site_key=gate.site_key, next=request.args.get("next"))

    @app.route("/login", methods=["POST"])
    def login():
        remote_ip = remote_ip_from_headers(request.headers, production)
        outcome = flows.login(
            session,
            request.form.get("username"),
            request.form.get("unhashed_password"),
            request.form.get("cf-turnstile-response"),
            remote_ip,
            next_url=request.form.get("next") or request.args.get("next"),
        )
        return _follow(outcome)

    @app.route("/login_failure/<reason>")
    def login_failure(reason):
        try:
            failure = FailureReason(reason)
        except ValueError:
            return jsonify({"error": "Unknown failure reason"}), 404
        return page("login_failure", reason=failure.value), failure.status_code

    @app.route("/logout", methods=["POST"])
    def logout():
        return _follow(flows.logout(session))

    @app.route("/add_password", methods=["GET"])
    def blank_add_password():
        return page("add_password", is_authing_user=False, site_key=gate.site_key)

    @app.route("/add_password/<int:identity_id>", methods=["GET"])
    def add_password_form(identity_id):
        raw_code = request.args.get("code")
        code = recovery.parse_code(raw_code) if raw_code is not None else None

        outcome = flows.show_recovery(identity_id, code)
        if not outcome.ok:
            return _follow(outcome)

        return page(
            "add_password",
            is_authing_user=True,
            person=outcome.identity.public_view(),
            link_id=code,
            site_key=gate.site_key,
        )

    @app.route("/add_password/<int:identity_id>", methods=["POST"])
    def add_password(identity_id):
        remote_ip = remote_ip_from_headers(request.headers, production)
        outcome = flows.recover(
            session,
            identity_id,
            request.form.get("password_link_id"),
            request.form.get("unhashed_password"),
            request.form.get("cf-turnstile-response"),
            remote_ip,
        )
        return _follow(outcome)

    @app.route("/edit_self/password", methods=["POST"])
    @login_required
    def edit_own_password():
        return _follow(flows.set_own_password(session, request.form.get("unhashed_password")))

    # ============================================================
    # ADMINISTRATION
    # ============================================================

    @app.route("/reset_password/<int:identity_id>", methods=["POST"])
    @require_capability(Capability.EDIT_PEOPLE)
    def reset_password(identity_id):
        flows.force_reset(identity_id)
        return redirect("/", code=303)

    @app.route("/all_passwords", methods=["POST"])
    @require_capability(Capability.EDIT_PEOPLE)
    def all_passwords():
        flows.start_bulk_reset()
        return redirect("/", code=303)

    audit.log(AuditEventType.STARTUP, AuditSeverity.INFO, "Rollcall started",
              details={"config_hash": config.config_hash})

    return app


# ============================================================
# ENTRY POINT
# ============================================================

def main() -> None:
    config = RollcallConfig.load()
    config.ensure_directories()
    configure_root_logger(config.logging, config.paths.log_dir)

    app = create_app(config)
    services = app.extensions["rollcall"]
    try:
        app.run(host=config.app.host, port=config.app.port, threaded=True)
    finally:
        services.shutdown()


if __name__ == "__main__":
    main()
