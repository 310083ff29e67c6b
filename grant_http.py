"""
grant_http.py — Starlette/ASGI adaptation of the grant flows.

  error_response               — OAuthError → RFC 6749 §5.2 JSON response
  token_response               — issued token → JSON response (no-store)
  OAuthErrorMiddleware         — OAuthError raised downstream → JSON response
  authorization_redirect       — redirect_uri?code=...&state=...
  authorization_error_redirect — redirect_uri?error=...&state=...
  authorization_response       — run AuthorizationCodeFlow.authorize, redirect
  TokenEndpoint                — /token and /device_authorization handlers

Every response carrying a token or an error is sent with
Cache-Control: no-store and Pragma: no-cache (RFC 6749 §5.1).

Mounting::

    endpoint = TokenEndpoint(registry, FlowHooks(tokens=issuer, codes=codes))
    app = Starlette(
        routes=[Route("/token", endpoint.handle, methods=["POST"])],
        middleware=[Middleware(OAuthErrorMiddleware)],
    )
"""

import base64
import hmac
import json
import logging
import time
import urllib.parse
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from mcp.server.auth.provider import construct_redirect_uri
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from device_flow import DeviceCodeFlow
from grant_errors import OAuthError
from grant_flows import (
    AuthorizationCodeFlow,
    AuthorizationRequest,
    ClientCredentialsFlow,
    FlowHooks,
    PasswordFlow,
    RefreshTokenFlow,
    _audit,
    build_flow,
    check_grant_type,
)
from grant_policy import ClientPolicy, ClientRegistry

logger = logging.getLogger("grantflow-http")

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = 30  # per window per IP per endpoint
CLEANUP_INTERVAL = 300  # seconds between rate limiter bucket sweeps

# Form fields forwarded to each flow's get_token.
_TOKEN_PARAMS: dict[type, tuple[str, ...]] = {
    AuthorizationCodeFlow: ("code", "redirect_uri", "code_verifier"),
    ClientCredentialsFlow: ("scope",),
    PasswordFlow: ("username", "password", "scope"),
    RefreshTokenFlow: ("refresh_token", "scope"),
    DeviceCodeFlow: ("device_code",),
}

UserAuthenticator = Callable[[str, str], Awaitable[Mapping[str, Any] | None]]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def error_response(err: OAuthError, include_debug_info: bool = False) -> JSONResponse:
    headers = dict(NO_STORE_HEADERS)
    if err.error == "invalid_client":
        headers["WWW-Authenticate"] = 'Basic realm="grantflow"'
    elif err.error == "invalid_token":
        headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    if err.status == 429:
        headers["Retry-After"] = str(RATE_LIMIT_WINDOW)
    return JSONResponse(err.to_response_object(include_debug_info),
                        status_code=err.status, headers=headers)


def token_response(token: Any) -> JSONResponse:
    if hasattr(token, "model_dump"):
        body = token.model_dump(mode="json", exclude_none=True)
    elif isinstance(token, Mapping):
        body = dict(token)
    elif isinstance(token, str):
        body = {"access_token": token, "token_type": "Bearer"}
    else:
        OAuthError.throw("SERVER_ERROR", {
            "detail": f"generate_token() returned {type(token).__name__}.",
        })
    return JSONResponse(body, headers=NO_STORE_HEADERS)


async def _send_json(send: Send, status: int, data: dict) -> None:
    body = json.dumps(data).encode()
    headers = [
        [b"content-type", b"application/json"],
        [b"content-length", str(len(body)).encode()],
        [b"cache-control", b"no-store"],
        [b"pragma", b"no-cache"],
    ]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


class OAuthErrorMiddleware:
    """Turn an OAuthError escaping the app into its JSON error response.

    Install it through ``Starlette(middleware=[Middleware(OAuthErrorMiddleware)])``
    so it sits inside Starlette's own 500 handler.
    """

    def __init__(self, app: ASGIApp, include_debug_info: bool = False):
        self.app = app
        self.include_debug_info = include_debug_info

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def _send(message: dict) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, _send)
        except OAuthError as err:
            if started:
                raise
            logger.info("%s %s -> %s", scope.get("method"), scope.get("path"), err.error)
            await _send_json(send, err.status, err.to_response_object(self.include_debug_info))


# ---------------------------------------------------------------------------
# Authorization endpoint redirects
# ---------------------------------------------------------------------------

def authorization_redirect(redirect_uri: str, code: str, state: str | None = None) -> str:
    return construct_redirect_uri(redirect_uri, code=code, state=state)


def authorization_error_redirect(redirect_uri: str, err: OAuthError,
                                 state: str | None = None) -> str:
    return construct_redirect_uri(redirect_uri, error=err.error,
                                  error_description=err.error_description, state=state)


async def authorization_response(flow: AuthorizationCodeFlow, params: Mapping[str, Any],
                                 code_info: Mapping[str, Any] | None = None,
                                 expected_state: str | None = None) -> Response:
    """Issue a code for an (already consented) authorization request.

    Nothing is ever redirected to a URI the client has not registered, even
    when its policy skips the redirect_uri check; such requests are answered
    directly (RFC 6749 §4.1.2.1).
    """
    request = AuthorizationRequest.from_params(params)
    request.code_info = code_info
    if not request.redirect_uri:
        return error_response(OAuthError.create("INVALID_REQUEST", {
            "detail": 'The "redirect_uri" parameter is required.',
        }))
    if request.redirect_uri not in flow.policy.redirect_uris:
        return error_response(OAuthError.create("INVALID_REQUEST", {
            "detail": 'The "redirect_uri" is not registered for this client.',
        }))

    try:
        code = await flow.authorize(request, expected_state=expected_state)
    except OAuthError as err:
        location = authorization_error_redirect(request.redirect_uri, err, request.state)
        return RedirectResponse(location, status_code=302)

    location = authorization_redirect(request.redirect_uri, code, request.state)
    return RedirectResponse(location, status_code=302)


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

class RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS,
                 window: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str) -> bool:
        now = time.time()
        cutoff = now - self.window
        bucket = self._buckets.setdefault(key, deque())
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self) -> None:
        empty = [k for k, v in self._buckets.items() if not v]
        for k in empty:
            del self._buckets[k]


def _client_ip(request: Request, trusted_ip_header: str | None = None) -> str:
    """Peer address, or the value of ``trusted_ip_header`` when one is configured.

    Only name a header (e.g. "cf-connecting-ip") when a proxy in front of the
    app always sets it; otherwise callers can pick their own rate limit key.
    """
    if trusted_ip_header:
        forwarded = request.headers.get(trusted_ip_header)
        if forwarded:
            return forwarded.strip()
    return request.client.host if request.client else "unknown"


async def _read_form(request: Request) -> dict[str, str]:
    """Parse an x-www-form-urlencoded body; repeated parameters are refused."""
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("application/x-www-form-urlencoded"):
        OAuthError.throw("MALFORMED_REQUEST", {
            "detail": "Expected an application/x-www-form-urlencoded body.",
        })
    body = (await request.body()).decode("utf-8", errors="replace")
    params: dict[str, str] = {}
    for key, value in urllib.parse.parse_qsl(body, keep_blank_values=True):
        if key in params:
            OAuthError.throw("DUPLICATE_PARAMETER", {
                "detail": f'The "{key}" parameter was sent more than once.',
            })
        params[key] = value
    return params


def _parse_basic_auth(credentials: str) -> tuple[str, str]:
    try:
        decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
    except ValueError:  # binascii.Error, UnicodeDecodeError, non-ASCII input
        OAuthError.throw("INVALID_CLIENT", {"detail": "Malformed Basic credentials."})
    client_id, sep, secret = decoded.partition(":")
    if not sep:
        OAuthError.throw("INVALID_CLIENT", {"detail": "Malformed Basic credentials."})
    # RFC 6749 §2.3.1: both halves are form-urlencoded before joining.
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(secret)


class TokenEndpoint:
    """Token and device authorization endpoints over a client registry.

    Confidential clients (policy with a client_secret) authenticate with
    HTTP Basic or client_secret in the form, never both. The password grant
    is only served when ``authenticate_user`` is given; it receives the
    username and password and returns the token_info for the subject, or
    None to refuse.
    """

    def __init__(self, clients: ClientRegistry, hooks: FlowHooks, *,
                 pkce_required: bool = True, allow_plain_pkce_method: bool = False,
                 device_options: Mapping[str, Any] | None = None,
                 authenticate_user: UserAuthenticator | None = None,
                 rate_limiter: RateLimiter | None = None,
                 trusted_ip_header: str | None = None):
        self.clients = clients
        self.hooks = hooks
        self.flow_options = {
            "pkce_required": pkce_required,
            "allow_plain_pkce_method": allow_plain_pkce_method,
            "device_options": dict(device_options or {}),
        }
        self.device_grant_name = self.flow_options["device_options"].get(
            "device_grant_name", "device_code")
        self.authenticate_user = authenticate_user
        self.rate_limiter = rate_limiter or RateLimiter()
        self.trusted_ip_header = trusted_ip_header
        self._last_cleanup = time.time()

    async def handle(self, request: Request) -> Response:
        try:
            self._check_rate(request, "token")
            form = await _read_form(request)
            grant_type = form.get("grant_type")
            if not grant_type:
                OAuthError.throw("MISSING_PARAMETER", {
                    "detail": 'The "grant_type" parameter is required.',
                })
            policy = await self._authenticate_client(request, form)
            flow = build_flow(grant_type, policy, self.hooks, **self.flow_options)
            params = {name: form.get(name) for name in _TOKEN_PARAMS[type(flow)]}

            token_info = None
            if isinstance(flow, PasswordFlow):
                # Credentials are only checked for clients allowed to send them.
                check_grant_type(policy, flow.grant_type, grant_type)
                token_info = await self._authenticate_user(policy, form)

            token = await flow.get_token(grant_type=grant_type, token_info=token_info, **params)
        except OAuthError as err:
            return error_response(err)
        return token_response(token)

    async def device_authorization(self, request: Request) -> Response:
        """RFC 8628 §3.1 device authorization request."""
        try:
            self._check_rate(request, "device_authorization")
            form = await _read_form(request)
            policy = await self._authenticate_client(request, form)
            flow = build_flow(self.device_grant_name, policy, self.hooks, **self.flow_options)
            policy.validate_grant_type(flow.grant_type)
            authorization = await flow.request_device_code(scope=form.get("scope"))
        except OAuthError as err:
            return error_response(err)
        return JSONResponse(authorization.to_response_object(), headers=NO_STORE_HEADERS)

    # --- Internal helpers ---

    def _check_rate(self, request: Request, endpoint: str) -> None:
        now = time.time()
        if now - self._last_cleanup > CLEANUP_INTERVAL:
            self.rate_limiter.cleanup()
            self._last_cleanup = now

        ip = _client_ip(request, self.trusted_ip_header)
        if not self.rate_limiter.is_allowed(f"{endpoint}:{ip}"):
            _audit("rate_limited", ip=ip, endpoint=endpoint)
            OAuthError.throw("TOO_MANY_REQUESTS", {"detail": f"{endpoint} from {ip}"})

    async def _authenticate_client(self, request: Request, form: Mapping[str, str]) -> ClientPolicy:
        client_id = form.get("client_id")
        client_secret = form.get("client_secret")

        header = request.headers.get("authorization", "")
        if header[:6].lower() == "basic ":
            if client_secret is not None:
                OAuthError.throw("INVALID_REQUEST", {
                    "detail": "Only one client authentication method may be used.",
                })
            basic_id, client_secret = _parse_basic_auth(header[6:].strip())
            if client_id is not None and client_id != basic_id:
                OAuthError.throw("INVALID_CLIENT", {
                    "detail": "client_id does not match the Basic credentials.",
                })
            client_id = basic_id

        if not client_id:
            OAuthError.throw("INVALID_CLIENT", {"detail": "No client authentication included."})

        policy = await self.clients.lookup_client(client_id)
        if policy.client_secret is None:
            if client_secret is not None:
                OAuthError.throw("INVALID_CLIENT", {
                    "detail": "A secret was presented for a public client.",
                })
            return policy

        if client_secret is None or not hmac.compare_digest(
                client_secret.encode(), policy.client_secret.encode()):
            _audit("client_auth_failed", client_id=client_id,
                   ip=_client_ip(request, self.trusted_ip_header))
            OAuthError.throw("INVALID_CLIENT", {"detail": "Client authentication failed."})
        return policy

    async def _authenticate_user(self, policy: ClientPolicy,
                                 form: Mapping[str, str]) -> Mapping[str, Any] | None:
        if self.authenticate_user is None:
            OAuthError.throw("UNSUPPORTED_GRANT_TYPE", {
                "detail": "The password grant is not enabled on this server.",
            })
        username, password = form.get("username"), form.get("password")
        if not username or not password:
            # Let the flow report which one is missing.
            return None
        token_info = await self.authenticate_user(username, password)
        if token_info is None:
            _audit("user_auth_failed", client_id=policy.client_id)
            OAuthError.throw("INVALID_GRANT", {
                "detail": "Invalid resource owner credentials.",
            })
        return token_info
