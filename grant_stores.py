"""
grant_stores.py — in-memory reference collaborators for grantflow.

These implement the hook protocols so the flows can run end to end:

  InMemoryCodeStore          — single-use authorization codes (pop on redeem)
  InMemoryRefreshTokenStore  — opaque refresh tokens with rotation
  InMemoryDeviceCodeStore    — device sessions, approve/deny by user code
  JwtTokenIssuer             — HS256 access tokens (PyJWT), OAuthToken bodies

All state is in-memory, per-process and ephemeral. Use them for tests,
demos and single-node deployments; swap in a database-backed store
honouring the same contracts for anything else.

Environment:
  GRANTFLOW_SIGNING_KEY   HS256 key for JwtTokenIssuer (fail-closed if unset)
  GRANTFLOW_ISSUER_URL    "iss" claim (default https://localhost:8000)
"""

import json
import logging
import os
import secrets
import time
from dataclasses import replace
from typing import Any

import jwt
from mcp.shared.auth import OAuthToken
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from device_flow import DeviceCodeGrant, DeviceSession, DeviceStatus
from grant_errors import OAuthError
from grant_flows import (
    CLIENT_CREDENTIALS,
    CodeGrant,
    CodeState,
    CodeValidationResult,
    RefreshTokenGrant,
    TokenGrant,
)
from grant_policy import parse_scope_string

logger = logging.getLogger("grantflow-stores")
audit_logger = logging.getLogger("grantflow-audit")

JWT_ALGORITHM = "HS256"
SIGNING_KEY_ENV = "GRANTFLOW_SIGNING_KEY"
ISSUER_URL_ENV = "GRANTFLOW_ISSUER_URL"
DEFAULT_ISSUER_URL = "https://localhost:8000"
SLOW_DOWN_STEP = 5  # seconds added to the interval on each slow_down (RFC 8628 §3.5)
CODE_STATE_RETENTION = 3600  # seconds a settled code's state is kept for replay detection

_HTTP_URL = TypeAdapter(AnyHttpUrl)


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------

class InMemoryCodeStore:
    """Authorization codes keyed by an opaque random string.

    A code is removed on its first lookup, whatever the outcome, so it can
    validate successfully at most once. The state of a settled code is kept
    for ``state_retention`` seconds so a replay can be told apart from an
    unknown code; after that it is forgotten.
    """

    def __init__(self, state_retention: int = CODE_STATE_RETENTION):
        self.state_retention = state_retention
        self.codes: dict[str, CodeGrant] = {}
        self.states: dict[str, CodeState] = {}
        self._settled_at: dict[str, float] = {}

    def state_of(self, code: str) -> CodeState | None:
        return self.states.get(code)

    async def generate_code(self, grant: CodeGrant) -> str:
        self._purge_expired()
        code = secrets.token_urlsafe(32)
        self.codes[code] = grant
        self.states[code] = CodeState.CODE_ISSUED
        return code

    async def validate_code(self, code: str) -> CodeValidationResult:
        grant = self.codes.pop(code, None)
        if grant is None:
            if self.states.get(code) in (CodeState.REDEEMED, CodeState.REJECTED):
                _audit("code_replay", code_prefix=code[:8])
                OAuthError.throw("REPLAY_ATTACK", {
                    "detail": "The authorization code was already used.",
                })
            OAuthError.throw("INVALID_GRANT", {
                "detail": "Unknown or expired authorization code.",
            })

        if grant.expires_at <= time.time():
            self._settle(code, CodeState.EXPIRED)
            OAuthError.throw("INVALID_GRANT", {
                "detail": "The authorization code has expired.",
            })

        self._settle(code, CodeState.REDEEMED)
        return CodeValidationResult(
            client_id=grant.client_id,
            scopes=list(grant.scopes),
            redirect_uri=grant.redirect_uri,
            code_challenge=grant.code_challenge,
            code_challenge_method=grant.code_challenge_method,
            code_info=grant.code_info,
            expires_at=grant.expires_at,
        )

    async def reject_code(self, code: str, err: OAuthError) -> None:
        """Mark a consumed code whose redemption failed a later check."""
        if self.states.get(code) is CodeState.REDEEMED:
            self.states[code] = CodeState.REJECTED
            _audit("code_rejected", code_prefix=code[:8], error=err.error)

    def _settle(self, code: str, state: CodeState) -> None:
        self.states[code] = state
        self._settled_at[code] = time.time()

    def _purge_expired(self) -> None:
        now = time.time()
        stale = [c for c, t in self._settled_at.items() if now - t >= self.state_retention]
        for c in stale:
            del self._settled_at[c]
            self.states.pop(c, None)

        expired = [c for c, g in self.codes.items() if g.expires_at <= now]
        for c in expired:
            del self.codes[c]
            self._settle(c, CodeState.EXPIRED)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------

class InMemoryRefreshTokenStore:
    def __init__(self, expires_in: int = 7200):
        self.expires_in = expires_in
        self.tokens: dict[str, RefreshTokenGrant] = {}

    async def issue(self, client_id: str, scopes: list[str], expires_in: int | None = None,
                    extra: dict[str, Any] | None = None) -> str:
        token = secrets.token_urlsafe(32)
        self.tokens[token] = RefreshTokenGrant(
            client_id=client_id,
            scopes=list(scopes),
            token=token,
            expires_at=time.time() + (expires_in or self.expires_in),
            extra=extra,
        )
        return token

    async def validate_refresh_token(self, refresh_token: str) -> RefreshTokenGrant:
        grant = self.tokens.get(refresh_token)
        if grant is None:
            OAuthError.throw("INVALID_GRANT", {
                "detail": "Unknown or revoked refresh token.",
            })
        if grant.expires_at is not None and grant.expires_at <= time.time():
            del self.tokens[refresh_token]
            OAuthError.throw("INVALID_GRANT", {
                "detail": "The refresh token has expired.",
            })
        return grant

    async def issue_new_refresh_token(self, prior: RefreshTokenGrant,
                                      expires_in: int | None = None) -> str:
        # The presented token stays valid until the flow revokes it after issuance.
        return await self.issue(prior.client_id, prior.scopes, expires_in=expires_in,
                                extra=prior.extra)

    async def revoke(self, refresh_token: str) -> None:
        self.tokens.pop(refresh_token, None)


# ---------------------------------------------------------------------------
# Device codes
# ---------------------------------------------------------------------------

class InMemoryDeviceCodeStore:
    def __init__(self):
        self.sessions: dict[str, DeviceSession] = {}
        self._by_user_code: dict[str, str] = {}
        self._last_poll: dict[str, float] = {}

    async def generate_device_code(self, grant: DeviceCodeGrant) -> str:
        device_code = secrets.token_urlsafe(32)
        self.sessions[device_code] = DeviceSession(
            device_code=device_code,
            user_code=grant.user_code,
            client_id=grant.client_id,
            scopes=list(grant.scopes),
            status=DeviceStatus.PENDING.value,
            interval=grant.interval,
            expires_at=grant.expires_at,
            data=grant.device_code_info,
        )
        self._by_user_code[grant.user_code] = device_code
        return device_code

    def find_by_user_code(self, user_code: str) -> DeviceSession | None:
        device_code = self._by_user_code.get(user_code.strip().upper())
        return self.sessions.get(device_code) if device_code else None

    def approve(self, user_code: str, **data: Any) -> bool:
        """Record the user's approval; ``data`` (e.g. sub) joins the session."""
        session = self.find_by_user_code(user_code)
        if session is None or session.status != DeviceStatus.PENDING.value:
            return False
        session.status = DeviceStatus.APPROVED.value
        session.data = {**(session.data or {}), **data}
        _audit("device_approved", client_id=session.client_id)
        return True

    def deny(self, user_code: str) -> bool:
        session = self.find_by_user_code(user_code)
        if session is None or session.status != DeviceStatus.PENDING.value:
            return False
        session.status = DeviceStatus.DENIED.value
        _audit("device_denied", client_id=session.client_id)
        return True

    async def validate_device_code(self, device_code: str) -> DeviceSession:
        session = self.sessions.get(device_code)
        if session is None:
            OAuthError.throw("INVALID_GRANT", {
                "detail": "Unknown device_code.",
            })

        now = time.time()
        if session.expires_at is not None and session.expires_at <= now:
            session.status = DeviceStatus.EXPIRED.value
            self._forget(device_code)
            return session

        last = self._last_poll.get(device_code)
        self._last_poll[device_code] = now
        if (session.status == DeviceStatus.PENDING.value
                and last is not None and now - last < session.interval):
            session.interval += SLOW_DOWN_STEP
            return replace(session, status=DeviceStatus.SLOW_DOWN.value)

        if session.status in (DeviceStatus.APPROVED.value, DeviceStatus.DENIED.value):
            # Terminal answers are handed out once.
            self._forget(device_code)
        return session

    def _forget(self, device_code: str) -> None:
        session = self.sessions.pop(device_code, None)
        self._last_poll.pop(device_code, None)
        if session is not None and session.user_code:
            self._by_user_code.pop(session.user_code, None)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

class JwtTokenIssuer:
    """Per-client HS256 JWT access tokens.

    When a refresh token store is attached, a refresh token is minted for
    every grant except client_credentials (RFC 6749 §4.4.3), unless the
    grant already carries a rotated one.
    """

    def __init__(self, signing_key: str | None = None, issuer_url: str | None = None,
                 refresh_tokens: InMemoryRefreshTokenStore | None = None,
                 algorithm: str = JWT_ALGORITHM):
        self.signing_key = signing_key or os.environ.get(SIGNING_KEY_ENV)
        if not self.signing_key:
            _audit("issuer_blocked", reason="no_signing_key_configured")
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": f"No signing key configured (set {SIGNING_KEY_ENV}).",
            })
        issuer_url = issuer_url or os.environ.get(ISSUER_URL_ENV, DEFAULT_ISSUER_URL)
        try:
            _HTTP_URL.validate_python(issuer_url)
        except ValidationError as e:
            raise OAuthError.create("CONFIGURATION_ERROR", {
                "detail": f"Issuer URL is not an http(s) URL: {issuer_url!r}",
            }) from e
        self.issuer_url = issuer_url.rstrip("/")
        self.refresh_tokens = refresh_tokens
        self.algorithm = algorithm

    async def generate_token(self, grant: TokenGrant) -> OAuthToken:
        now = int(time.time())
        jti = secrets.token_hex(16)
        token_info = dict(grant.token_info or {})
        payload = {
            **token_info,
            "sub": token_info.get("sub") or self._subject(grant),
            "iss": self.issuer_url,
            "iat": now,
            "exp": now + grant.expires_in,
            "client_id": grant.client_id,
            "scope": " ".join(grant.scopes),
            "jti": jti,
        }
        access_token = jwt.encode(payload, self.signing_key, algorithm=self.algorithm)

        refresh_token = grant.refresh_token
        if (refresh_token is None and self.refresh_tokens is not None
                and grant.issues_refresh_token and grant.grant_type != CLIENT_CREDENTIALS):
            refresh_token = await self.refresh_tokens.issue(
                grant.client_id, grant.scopes, expires_in=grant.refresh_token_expires_in,
                extra={"sub": payload["sub"]},
            )

        _audit("jwt_minted", client_id=grant.client_id, jti=jti, expires_in=grant.expires_in)
        logger.info("jwt_minted: client=%s grant=%s", grant.client_id, grant.grant_type)

        return OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            expires_in=grant.expires_in,
            scope=" ".join(grant.scopes) or None,
            refresh_token=refresh_token,
        )

    async def validate_token(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.signing_key,
                algorithms=[self.algorithm],
                issuer=self.issuer_url,
                options={"require": ["sub", "exp", "iss", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            _audit("token_rejected", reason="expired")
            raise OAuthError.create("INVALID_TOKEN", {"detail": "Token expired."}) from e
        except jwt.InvalidTokenError as e:
            _audit("token_rejected", reason=str(e))
            raise OAuthError.create("INVALID_TOKEN", {"detail": str(e)}) from e

    @staticmethod
    def check_scopes(claims: dict[str, Any], required: str | list[str]) -> None:
        """Raise INSUFFICIENT_SCOPE unless the token carries every required scope."""
        if isinstance(required, str):
            required = parse_scope_string(required)
        granted = set(parse_scope_string(claims.get("scope", "")))
        missing = [s for s in required if s not in granted]
        if missing:
            OAuthError.throw("INSUFFICIENT_SCOPE", {
                "detail": f"Missing scopes: {' '.join(missing)}",
            })

    @staticmethod
    def _subject(grant: TokenGrant) -> str:
        data = grant.validation_data
        if isinstance(data, dict) and data.get("username"):
            return data["username"]
        if isinstance(data, CodeValidationResult) and data.code_info:
            return data.code_info.get("sub") or grant.client_id
        if isinstance(data, DeviceSession) and data.data:
            return data.data.get("sub") or grant.client_id
        if isinstance(data, RefreshTokenGrant) and data.extra:
            return data.extra.get("sub") or grant.client_id
        return grant.client_id
