"""
grant_flows.py — grant flow orchestration for grantflow.

Each flow holds a ClientPolicy by reference plus the hook objects it needs,
runs the fixed validation pipeline and only then awaits a hook:

  AuthorizationCodeFlow  — get_code (PKCE binding) / get_token (PKCE check)
  ClientCredentialsFlow  — get_token
  PasswordFlow           — get_token (credentials verified by the embedder)
  RefreshTokenFlow       — get_token (scope narrowing against prior grant)
  DeviceCodeFlow         — see device_flow.py

Hooks are injected at construction (CodeStore, TokenIssuer,
RefreshTokenStore, DeviceCodeStore). A hook object that lacks a required
operation is rejected up front with NOT_IMPLEMENTED.

Storage contract: a code that validates successfully must never validate
successfully again. The flows cannot detect reuse on their own.
"""

from __future__ import annotations

import base64
import functools
import hashlib
import hmac
import json
import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, Union

from grant_errors import OAuthError
from grant_policy import ClientPolicy, parse_scope_string

if TYPE_CHECKING:
    from device_flow import DeviceCodeFlow, DeviceCodeStore

logger = logging.getLogger("grantflow")
audit_logger = logging.getLogger("grantflow-audit")

AUTHORIZATION_CODE = "authorization_code"
CLIENT_CREDENTIALS = "client_credentials"
PASSWORD = "password"
REFRESH_TOKEN = "refresh_token"

PKCE_S256 = "S256"
PKCE_PLAIN = "plain"


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class CodeState(Enum):
    REQUESTED = "requested"
    CODE_ISSUED = "code_issued"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REJECTED = "rejected"


@dataclass
class AuthorizationRequest:
    response_type: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    code_info: Mapping[str, Any] | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> AuthorizationRequest:
        """Pick the authorization parameters out of a query/form mapping."""
        return cls(**{f.name: params.get(f.name) for f in fields(cls)})


@dataclass
class CodeGrant:
    """Everything the code store must bind to a newly issued code."""
    client_id: str
    scopes: list[str]
    redirect_uri: str | None
    code_challenge: str | None
    code_challenge_method: str | None
    code_info: Mapping[str, Any] | None
    expires_at: float


@dataclass
class CodeValidationResult:
    client_id: str | None
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    code_info: Mapping[str, Any] | None = None
    expires_at: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.scopes, str):
            self.scopes = parse_scope_string(self.scopes)


@dataclass
class RefreshTokenGrant:
    """Prior grant data behind a refresh token."""
    client_id: str | None
    scopes: list[str] = field(default_factory=list)
    token: str | None = None
    expires_at: float | None = None
    extra: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.scopes, str):
            self.scopes = parse_scope_string(self.scopes)


@dataclass
class TokenGrant:
    """What the token issuer receives once a grant has been validated."""
    client_id: str
    grant_type: str
    scopes: list[str]
    expires_in: int
    refresh_token_expires_in: int
    issues_refresh_token: bool = True
    validation_data: Any = None
    token_info: Mapping[str, Any] | None = None
    refresh_token: str | None = None


_T = TypeVar("_T")


def _coerce(cls: type[_T], value: Any, hook: str) -> _T:
    """Accept a hook result as the dataclass itself or as a plain mapping."""
    if isinstance(value, cls):
        return value
    if isinstance(value, Mapping):
        names = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in value.items() if k in names})
        except TypeError as e:
            raise OAuthError.create("SERVER_ERROR", {
                "detail": f"{hook}() returned an incomplete {cls.__name__}: {e}",
            }) from e
    OAuthError.throw("SERVER_ERROR", {
        "detail": f"{hook}() returned {type(value).__name__}, expected {cls.__name__}.",
    })


# ---------------------------------------------------------------------------
# Hook interfaces
# ---------------------------------------------------------------------------

class CodeStore(Protocol):
    """May also define ``async reject_code(code, err)``; it is awaited when a
    consumed code fails redemption."""

    async def generate_code(self, grant: CodeGrant) -> str: ...

    async def validate_code(self, code: str) -> CodeValidationResult:
        """Resolve and consume a code. Must enforce single use and expiry,
        raising INVALID_GRANT otherwise."""
        ...


class TokenIssuer(Protocol):
    async def generate_token(self, grant: TokenGrant) -> Any: ...


class RefreshTokenStore(Protocol):
    """May also define ``async revoke(refresh_token)``. When present, rotation
    retires the presented token only after the new access token was issued,
    and drops the successor if issuance fails."""

    async def validate_refresh_token(self, refresh_token: str) -> RefreshTokenGrant: ...

    async def issue_new_refresh_token(self, prior: RefreshTokenGrant,
                                      expires_in: int | None = None) -> str: ...


def _require_hooks(hooks: Any, role: str, *operations: str) -> Any:
    if hooks is None:
        OAuthError.throw("NOT_IMPLEMENTED", {
            "detail": f"No {role} was supplied.",
        })
    for op in operations:
        if not callable(getattr(hooks, op, None)):
            OAuthError.throw("NOT_IMPLEMENTED", {
                "detail": f"{role} does not implement {op}().",
                "operation": op,
            })
    return hooks


@dataclass
class FlowHooks:
    """The collaborator set a flow factory can draw from."""
    tokens: TokenIssuer
    codes: CodeStore | None = None
    refresh_tokens: RefreshTokenStore | None = None
    device_codes: DeviceCodeStore | None = None


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------

def _audited(operation: str):
    """Audit every OAuthError leaving a flow entry point, then re-raise."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except OAuthError as err:
                if err.is_polling:
                    logger.debug("%s: %s client=%s", operation, err.error,
                                 self.policy.client_id)
                else:
                    _audit("grant_rejected", operation=operation,
                           client_id=self.policy.client_id, error=err.error,
                           detail=err.detail)
                raise
        return wrapper
    return decorator


def check_grant_type(policy: ClientPolicy, flow_grant: str, supplied: str | None = None) -> bool:
    """The request's grant_type (when given) must name this flow, and the
    client must be registered for it."""
    if supplied is not None and supplied != flow_grant:
        OAuthError.throw("UNSUPPORTED_GRANT_TYPE", {
            "detail": f'grant_type "{supplied}" cannot be handled by the {flow_grant} flow.',
        })
    return policy.validate_grant_type(flow_grant)


def _require_param(name: str, value: Any) -> None:
    if not value or not isinstance(value, str):
        OAuthError.throw("INVALID_REQUEST", {
            "detail": f'The "{name}" parameter is required.',
        })


def _check_client_binding(policy: ClientPolicy, bound_client_id: str | None, what: str) -> None:
    if bound_client_id is not None and bound_client_id != policy.client_id:
        OAuthError.throw("INVALID_GRANT", {
            "detail": f"The {what} was issued to another client.",
        })


def _token_grant(policy: ClientPolicy, grant_type: str, scopes: list[str], **extra: Any) -> TokenGrant:
    return TokenGrant(
        client_id=policy.client_id,
        grant_type=grant_type,
        scopes=list(scopes),
        expires_in=policy.token_expires_in,
        refresh_token_expires_in=policy.refresh_token_expires_in,
        issues_refresh_token=policy.issues_refresh_token,
        **extra,
    )


async def _issue(policy: ClientPolicy, tokens: TokenIssuer, grant: TokenGrant) -> Any:
    token = await tokens.generate_token(grant)
    _audit("token_issued", client_id=policy.client_id, grant_type=grant.grant_type,
           scopes=grant.scopes)
    return token


# ---------------------------------------------------------------------------
# PKCE (RFC 7636)
# ---------------------------------------------------------------------------

def _b64url_unpadded(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def transform_verifier(verifier: str, method: str | None) -> str:
    if method == PKCE_PLAIN:
        return verifier
    if method == PKCE_S256:
        return _b64url_unpadded(hashlib.sha256(verifier.encode("utf-8")).digest())
    # Methods are checked at issuance; reaching here means the store is inconsistent.
    OAuthError.throw("SERVER_ERROR", {
        "detail": f"Unknown code_challenge_method during verification: {method}",
    })


def generate_code_verifier(n_bytes: int = 64) -> str:
    """Random code_verifier; 32..96 bytes keeps it within 43..128 chars."""
    if not (32 <= n_bytes <= 96):
        raise ValueError("n_bytes must be in [32, 96] to keep encoded length within [43, 128].")
    return _b64url_unpadded(secrets.token_bytes(n_bytes))


def generate_code_challenge(verifier: str, method: str = PKCE_S256) -> str:
    return transform_verifier(verifier, method)


# ---------------------------------------------------------------------------
# Authorization code
# ---------------------------------------------------------------------------

class AuthorizationCodeFlow:
    grant_type = AUTHORIZATION_CODE
    response_type = "code"

    def __init__(self, policy: ClientPolicy, codes: CodeStore, tokens: TokenIssuer,
                 pkce_required: bool = True, allow_plain_pkce_method: bool = False):
        self.policy = policy
        self.codes = _require_hooks(codes, "code store", "generate_code", "validate_code")
        self.tokens = _require_hooks(tokens, "token issuer", "generate_token")
        self.pkce_required = pkce_required
        self.supported_challenge_methods: tuple[str, ...] = (PKCE_S256,)
        if allow_plain_pkce_method:
            self.supported_challenge_methods = (PKCE_S256, PKCE_PLAIN)
            logger.warning("client=%s: plain PKCE method enabled; S256 protection "
                           "is no longer enforced", policy.client_id)
            _audit("plain_pkce_enabled", client_id=policy.client_id)

    # --- Step 1: authorization endpoint ---

    async def get_code(self, response_type: str | None = None, redirect_uri: str | None = None,
                       scope: str | None = None, state: str | None = None,
                       code_challenge: str | None = None, code_challenge_method: str | None = None,
                       code_info: Mapping[str, Any] | None = None,
                       expected_state: str | None = None) -> str:
        request = AuthorizationRequest(
            response_type=response_type,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            code_info=code_info,
        )
        return await self.authorize(request, expected_state=expected_state)

    @_audited("get_code")
    async def authorize(self, request: AuthorizationRequest,
                        expected_state: str | None = None) -> str:
        policy = self.policy
        ClientPolicy.validate_response_type(request.response_type, self.response_type)
        policy.validate_redirect_uri(request.redirect_uri)
        policy.validate_state(request.state, expected_state)
        scopes = policy.validate_scopes(request.scope)

        challenge, method = None, None
        if self.pkce_required or request.code_challenge is not None:
            challenge, method = self.validate_pkce_parameters(
                request.code_challenge, request.code_challenge_method)

        code = await self.codes.generate_code(CodeGrant(
            client_id=policy.client_id,
            scopes=scopes,
            redirect_uri=request.redirect_uri,
            code_challenge=challenge,
            code_challenge_method=method,
            code_info=request.code_info,
            expires_at=time.time() + policy.code_expires_in,
        ))
        _audit("code_issued", client_id=policy.client_id, scopes=scopes, pkce=method)
        return code

    def validate_pkce_parameters(self, challenge: str | None,
                                 method: str | None) -> tuple[str, str]:
        if not challenge or not isinstance(challenge, str):
            OAuthError.throw("INVALID_CODE_CHALLENGE", {
                "detail": 'The "code_challenge" parameter is required.',
            })
        # RFC 7636 §4.3: an absent method means "plain".
        method = method or PKCE_PLAIN
        if method not in self.supported_challenge_methods:
            OAuthError.throw("INVALID_CODE_CHALLENGE", {
                "detail": (f'code_challenge_method "{method}" is not supported. '
                           f"Allowed: {', '.join(self.supported_challenge_methods)}"),
            })
        return challenge, method

    # --- Step 2: token endpoint ---

    @_audited("get_token")
    async def get_token(self, code: str | None = None, redirect_uri: str | None = None,
                        code_verifier: str | None = None,
                        token_info: Mapping[str, Any] | None = None,
                        grant_type: str | None = None) -> Any:
        policy = self.policy
        check_grant_type(policy, self.grant_type, grant_type)
        _require_param("code", code)

        result = _coerce(CodeValidationResult, await self.codes.validate_code(code),
                         "validate_code")
        try:
            self._check_redemption(result, redirect_uri, code_verifier)
        except OAuthError as err:
            # Optional hook: lets the store record that the consumed code failed.
            reject = getattr(self.codes, "reject_code", None)
            if callable(reject):
                await reject(code, err)
            raise

        return await _issue(policy, self.tokens, _token_grant(
            policy, self.grant_type, result.scopes,
            validation_data=result, token_info=token_info,
        ))

    def _check_redemption(self, result: CodeValidationResult, redirect_uri: str | None,
                          code_verifier: str | None) -> None:
        _check_client_binding(self.policy, result.client_id, "authorization code")

        if result.redirect_uri != redirect_uri:
            OAuthError.throw("INVALID_GRANT", {
                "detail": 'The "redirect_uri" does not match the authorization request.',
            })

        if result.code_challenge:
            self.validate_code_verifier(code_verifier, result.code_challenge,
                                        result.code_challenge_method)
        elif self.pkce_required:
            OAuthError.throw("INVALID_GRANT", {
                "detail": "PKCE is required but no code_challenge was bound to the code.",
            })

    def validate_code_verifier(self, verifier: str | None, challenge: str,
                               method: str | None) -> None:
        if not verifier or not isinstance(verifier, str):
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "code_verifier" parameter is required.',
            })
        transformed = transform_verifier(verifier, method)
        if not hmac.compare_digest(transformed.encode("utf-8"), challenge.encode("utf-8")):
            OAuthError.throw("INVALID_CODE_VERIFIER", {
                "detail": 'The "code_verifier" is invalid.',
            })


# ---------------------------------------------------------------------------
# Client credentials / password
# ---------------------------------------------------------------------------

class ClientCredentialsFlow:
    grant_type = CLIENT_CREDENTIALS

    def __init__(self, policy: ClientPolicy, tokens: TokenIssuer):
        self.policy = policy
        self.tokens = _require_hooks(tokens, "token issuer", "generate_token")

    @_audited("get_token")
    async def get_token(self, scope: str | None = None,
                        token_info: Mapping[str, Any] | None = None,
                        grant_type: str | None = None) -> Any:
        check_grant_type(self.policy, self.grant_type, grant_type)
        scopes = self.policy.validate_scopes(scope)
        return await _issue(self.policy, self.tokens, _token_grant(
            self.policy, self.grant_type, scopes, token_info=token_info,
        ))


class PasswordFlow:
    """Resource-owner password grant.

    Only the presence of the credentials is checked here; the embedder must
    verify them against its user store before calling get_token.
    """

    grant_type = PASSWORD

    def __init__(self, policy: ClientPolicy, tokens: TokenIssuer):
        self.policy = policy
        self.tokens = _require_hooks(tokens, "token issuer", "generate_token")

    @_audited("get_token")
    async def get_token(self, username: str | None = None, password: str | None = None,
                        scope: str | None = None,
                        token_info: Mapping[str, Any] | None = None,
                        grant_type: str | None = None) -> Any:
        check_grant_type(self.policy, self.grant_type, grant_type)
        _require_param("username", username)
        _require_param("password", password)
        scopes = self.policy.validate_scopes(scope)
        return await _issue(self.policy, self.tokens, _token_grant(
            self.policy, self.grant_type, scopes,
            validation_data={"username": username}, token_info=token_info,
        ))


# ---------------------------------------------------------------------------
# Refresh token
# ---------------------------------------------------------------------------

def narrow_scopes(requested_scope_string: str | None, prior_scopes: list[str]) -> list[str]:
    """Scopes for a refreshed token: the prior grant, or a subset of it."""
    requested = parse_scope_string(requested_scope_string)
    if not requested:
        return list(prior_scopes)
    allowed = set(prior_scopes)
    for scope in requested:
        if scope not in allowed:
            OAuthError.throw("INVALID_SCOPE", {
                "detail": f'The scope "{scope}" was not part of the original grant.',
                "scope": scope,
            })
    return requested


class RefreshTokenFlow:
    grant_type = REFRESH_TOKEN

    def __init__(self, policy: ClientPolicy, refresh_tokens: RefreshTokenStore,
                 tokens: TokenIssuer):
        self.policy = policy
        self.refresh_tokens = _require_hooks(refresh_tokens, "refresh token store",
                                             "validate_refresh_token", "issue_new_refresh_token")
        self.tokens = _require_hooks(tokens, "token issuer", "generate_token")

    @_audited("get_token")
    async def get_token(self, refresh_token: str | None = None, scope: str | None = None,
                        token_info: Mapping[str, Any] | None = None,
                        grant_type: str | None = None) -> Any:
        policy = self.policy
        check_grant_type(policy, self.grant_type, grant_type)
        _require_param("refresh_token", refresh_token)

        prior = _coerce(RefreshTokenGrant,
                        await self.refresh_tokens.validate_refresh_token(refresh_token),
                        "validate_refresh_token")
        _check_client_binding(policy, prior.client_id, "refresh token")
        scopes = narrow_scopes(scope, prior.scopes)

        new_refresh = None
        if policy.issues_refresh_token:
            new_refresh = await self.refresh_tokens.issue_new_refresh_token(
                prior, expires_in=policy.refresh_token_expires_in)

        revoke = getattr(self.refresh_tokens, "revoke", None)
        try:
            token = await _issue(policy, self.tokens, _token_grant(
                policy, self.grant_type, scopes,
                validation_data=prior, token_info=token_info, refresh_token=new_refresh,
            ))
        except Exception:
            if new_refresh is not None and callable(revoke):
                await revoke(new_refresh)
            raise

        if new_refresh is not None and prior.token is not None and callable(revoke):
            await revoke(prior.token)
        return token


# ---------------------------------------------------------------------------
# Flow factory
# ---------------------------------------------------------------------------

Flow = Union[AuthorizationCodeFlow, ClientCredentialsFlow, PasswordFlow,
             RefreshTokenFlow, "DeviceCodeFlow"]


def build_flow(grant_type: str, policy: ClientPolicy, hooks: FlowHooks, *,
               pkce_required: bool = True, allow_plain_pkce_method: bool = False,
               device_options: Mapping[str, Any] | None = None) -> Flow:
    """Return the flow variant that handles ``grant_type`` for ``policy``."""
    from device_flow import DEVICE_CODE_URN, DeviceCodeFlow

    if grant_type == AUTHORIZATION_CODE:
        return AuthorizationCodeFlow(policy, hooks.codes, hooks.tokens,
                                     pkce_required=pkce_required,
                                     allow_plain_pkce_method=allow_plain_pkce_method)
    if grant_type == CLIENT_CREDENTIALS:
        return ClientCredentialsFlow(policy, hooks.tokens)
    if grant_type == PASSWORD:
        return PasswordFlow(policy, hooks.tokens)
    if grant_type == REFRESH_TOKEN:
        return RefreshTokenFlow(policy, hooks.refresh_tokens, hooks.tokens)

    device_options = dict(device_options or {})
    device_grant = device_options.get("device_grant_name", "device_code")
    if grant_type in (device_grant, DEVICE_CODE_URN):
        device_options["device_grant_name"] = grant_type
        return DeviceCodeFlow(policy, hooks.device_codes, hooks.tokens, **device_options)

    OAuthError.throw("UNSUPPORTED_GRANT_TYPE", {
        "detail": f'Unknown grant_type "{grant_type}".',
    })
