"""
device_flow.py — RFC 8628 device authorization grant.

  request_device_code  — validate scopes, mint a user code, hand both to the
                         device code store, return the polling instructions
  get_token            — poll: resolve the stored session and map its status

Status mapping (the only state machine this flow owns):

  approved   → token issued
  pending    → authorization_pending
  slow_down  → slow_down
  denied     → access_denied
  expired    → expired_token
  other      → invalid_grant

When a human approves, and how fast sessions expire, is up to the store.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

from grant_errors import OAuthError
from grant_flows import (
    TokenIssuer,
    _audit,
    _audited,
    _check_client_binding,
    _coerce,
    _issue,
    _require_hooks,
    _require_param,
    _token_grant,
    check_grant_type,
)
from grant_policy import ClientPolicy, parse_scope_string

DEVICE_CODE_URN = "urn:ietf:params:oauth:grant-type:device_code"

# No vowels (no accidental words), no 0/O or 1/I.
USER_CODE_ALPHABET = "BCDFGHJKLMNPQRSTVWXZ23456789"


class DeviceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    SLOW_DOWN = "slow_down"
    EXPIRED = "expired"


_STATUS_ERRORS = {
    DeviceStatus.PENDING.value: "AUTHORIZATION_PENDING",
    DeviceStatus.SLOW_DOWN.value: "SLOW_DOWN",
    DeviceStatus.DENIED.value: "ACCESS_DENIED",
    DeviceStatus.EXPIRED.value: "EXPIRED_TOKEN",
}


@dataclass
class DeviceCodeGrant:
    client_id: str
    scopes: list[str]
    user_code: str
    interval: int
    expires_at: float
    device_code_info: Mapping[str, Any] | None = None


@dataclass
class DeviceSession:
    device_code: str | None = None
    user_code: str | None = None
    client_id: str | None = None
    scopes: list[str] = field(default_factory=list)
    status: str = DeviceStatus.PENDING.value
    interval: int = 5
    expires_at: float | None = None
    data: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.scopes, str):
            self.scopes = parse_scope_string(self.scopes)
        if isinstance(self.status, DeviceStatus):
            self.status = self.status.value


@dataclass
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int

    def to_response_object(self) -> dict[str, Any]:
        return asdict(self)


class DeviceCodeStore(Protocol):
    async def generate_device_code(self, grant: DeviceCodeGrant) -> str: ...

    async def validate_device_code(self, device_code: str) -> DeviceSession: ...


def generate_user_code(size: int = 8) -> str:
    return "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(size))


def resolve_device_session(session: DeviceSession, now: float | None = None) -> DeviceSession:
    """Return ``session`` if it is approved, else raise the polling error."""
    status = session.status
    if isinstance(status, DeviceStatus):
        status = status.value

    if status in (DeviceStatus.PENDING.value, DeviceStatus.SLOW_DOWN.value,
                  DeviceStatus.APPROVED.value):
        now = time.time() if now is None else now
        if session.expires_at is not None and session.expires_at <= now:
            status = DeviceStatus.EXPIRED.value

    if status == DeviceStatus.APPROVED.value:
        return session

    kind = _STATUS_ERRORS.get(status, "INVALID_GRANT")
    OAuthError.throw(kind, {
        "detail": f'Device session status "{status}".',
        "status": status,
    })


class DeviceCodeFlow:
    def __init__(self, policy: ClientPolicy, device_codes: DeviceCodeStore, tokens: TokenIssuer,
                 verification_uri: str | None = None,
                 verification_uri_complete: str | None = None,
                 interval: int = 5, user_code_size: int = 8,
                 device_grant_name: str = "device_code"):
        if not verification_uri:
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "verification_uri" option is required.',
            })
        if not verification_uri_complete:
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "verification_uri_complete" option is required.',
            })
        if not isinstance(user_code_size, int) or user_code_size < 1:
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": '"user_code_size" must be a positive integer.',
            })
        if not isinstance(interval, int) or interval < 1:
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": '"interval" must be a positive number of seconds.',
            })

        self.policy = policy
        self.device_codes = _require_hooks(device_codes, "device code store",
                                           "generate_device_code", "validate_device_code")
        self.tokens = _require_hooks(tokens, "token issuer", "generate_token")
        self.verification_uri = verification_uri
        # e.g. https://example.com/activate?user_code=
        self.verification_uri_complete = verification_uri_complete
        self.interval = interval
        self.user_code_size = user_code_size
        self.grant_type = device_grant_name

    @property
    def device_code_expires_in(self) -> int:
        return self.policy.device_code_expires_in

    # --- Step 1: device authorization request ---

    @_audited("request_device_code")
    async def request_device_code(self, scope: str | None = None,
                                  device_code_info: Mapping[str, Any] | None = None
                                  ) -> DeviceAuthorization:
        policy = self.policy
        scopes = policy.validate_scopes(scope)
        user_code = generate_user_code(self.user_code_size)

        device_code = await self.device_codes.generate_device_code(DeviceCodeGrant(
            client_id=policy.client_id,
            scopes=scopes,
            user_code=user_code,
            interval=self.interval,
            expires_at=time.time() + self.device_code_expires_in,
            device_code_info=device_code_info,
        ))
        _audit("device_code_issued", client_id=policy.client_id, scopes=scopes)

        return DeviceAuthorization(
            device_code=device_code,
            user_code=user_code,
            verification_uri=self.verification_uri,
            verification_uri_complete=f"{self.verification_uri_complete}{user_code}",
            expires_in=self.device_code_expires_in,
            interval=self.interval,
        )

    # --- Step 2: polling ---

    @_audited("get_token")
    async def get_token(self, device_code: str | None = None,
                        token_info: Mapping[str, Any] | None = None,
                        grant_type: str | None = None) -> Any:
        policy = self.policy
        check_grant_type(policy, self.grant_type, grant_type)
        _require_param("device_code", device_code)

        session = _coerce(DeviceSession,
                          await self.device_codes.validate_device_code(device_code),
                          "validate_device_code")
        _check_client_binding(policy, session.client_id, "device code")
        session = resolve_device_session(session)

        return await _issue(policy, self.tokens, _token_grant(
            policy, self.grant_type, session.scopes,
            validation_data=session, token_info=token_info,
        ))
