"""
Bot-Verification Gate
=====================

Checks a Cloudflare Turnstile challenge response before a login or
set-password form is processed.

Two kinds of failure are kept apart:
- The service answered ``success: false``. That is a soft failure; the
  caller redirects to the failed_turnstile page.
- The service could not be reached, timed out, answered non-2xx or sent
  something that is not JSON. That raises TurnstileTransportError and the
  request fails as an infrastructure error.

Outside production the gate passes every request without any network call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

import requests

from rollcall.core.config import TurnstileConfig
from rollcall.core.errors import ConfigurationError, MissingClientOrigin, TurnstileTransportError
from rollcall.security.constants import LOCAL_CLIENT_ORIGIN


logger = logging.getLogger(__name__)

CLIENT_ORIGIN_HEADER = "CF-Connecting-IP"


class TurnstileErrorCode(Enum):
    """Diagnostic codes the verification service can return."""
    MISSING_INPUT_SECRET = "missing-input-secret"
    INVALID_INPUT_SECRET = "invalid-input-secret"
    MISSING_INPUT_RESPONSE = "missing-input-response"
    INVALID_INPUT_RESPONSE = "invalid-input-response"
    INVALID_WIDGET_ID = "invalid-widget-id"
    INVALID_PARSED_SECRET = "invalid-parsed-secret"
    BAD_REQUEST = "bad-request"
    TIMEOUT_OR_DUPLICATE = "timeout-or-duplicate"
    INTERNAL_ERROR = "internal-error"


@dataclass(frozen=True)
class TurnstileResult:
    """Outcome of one verification call. Never persisted."""
    success: bool
    error_codes: Tuple[TurnstileErrorCode, ...] = ()
    challenge_ts: Optional[str] = None
    hostname: Optional[str] = None
    action: Optional[str] = None
    cdata: Optional[str] = None
    bypassed: bool = field(default=False, compare=False)

    @classmethod
    def passed_without_check(cls) -> "TurnstileResult":
        return cls(success=True, bypassed=True)


def remote_ip_from_headers(headers: Mapping[str, str], production: bool) -> str:
    """
    Find the client address the proxy saw.

    Raises:
        MissingClientOrigin: In production when the proxy header is absent
    """
    if not production:
        return LOCAL_CLIENT_ORIGIN

    value = headers.get(CLIENT_ORIGIN_HEADER)
    if not value:
        raise MissingClientOrigin(f"Missing {CLIENT_ORIGIN_HEADER} header")
    return value.strip()


def _parse_error_codes(raw: Any) -> Tuple[TurnstileErrorCode, ...]:
    codes = []
    for value in raw or ():
        try:
            codes.append(TurnstileErrorCode(value))
        except ValueError:
            logger.warning("Ignoring unknown Turnstile error code %r", value)
    return tuple(codes)


class TurnstileGate:
    """
    Turnstile siteverify client.

    Usage:
        gate = TurnstileGate(config.turnstile, production=config.app.production)
        result = gate.verify(form["cf-turnstile-response"], remote_ip)
        if not result.success:
            return redirect(FailureReason.FAILED_TURNSTILE.path)
    """

    __slots__ = ("_config", "_production", "_http")

    def __init__(
        self,
        config: TurnstileConfig,
        production: bool,
        http: Optional[requests.Session] = None,
    ) -> None:
        if production and not config.secret:
            raise ConfigurationError("Turnstile secret is required in production")
        self._config = config
        self._production = production
        self._http = http or requests.Session()

    @property
    def production(self) -> bool:
        return self._production

    @property
    def site_key(self) -> str:
        return self._config.site_key

    def verify(self, response: Optional[str], remote_ip: str) -> TurnstileResult:
        """
        Verify a challenge response.

        Raises:
            TurnstileTransportError: If the service could not give an answer
        """
        if not self._production:
            return TurnstileResult.passed_without_check()

        body = {
            "secret": self._config.secret,
            "response": response or "",
            "remoteip": remote_ip,
        }

        try:
            resp = self._http.post(
                self._config.verify_url,
                data=body,
                timeout=self._config.timeout_seconds,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            logger.error("Turnstile verification request failed: %s", e.__class__.__name__)
            raise TurnstileTransportError("Unable to reach the verification service") from e
        except ValueError as e:
            logger.error("Turnstile verification returned a non-JSON body")
            raise TurnstileTransportError("Verification service sent an unreadable reply") from e

        if not isinstance(payload, dict) or "success" not in payload:
            raise TurnstileTransportError("Verification service reply is missing 'success'")

        result = TurnstileResult(
            success=bool(payload["success"]),
            error_codes=_parse_error_codes(payload.get("error-codes")),
            challenge_ts=payload.get("challenge_ts"),
            hostname=payload.get("hostname"),
            action=payload.get("action"),
            cdata=payload.get("cdata"),
        )

        if not result.success and result.error_codes:
            logger.warning(
                "Turnstile rejected a challenge: %s",
                ", ".join(code.value for code in result.error_codes),
            )
        else:
            logger.debug("Turnstile answered success=%s", result.success)

        return result
