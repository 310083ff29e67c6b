"""
grant_errors.py — OAuth error taxonomy for grantflow.

Every validation failure in the grant flows maps to exactly one entry of
ERROR_SPECS and is raised as an OAuthError. The catalog covers:

  - RFC 6749 §5.2 token endpoint errors
  - RFC 7636 PKCE errors (mapped onto invalid_request / invalid_grant)
  - RFC 8628 device authorization polling errors
  - configuration and service errors (5xx)

Wire form (RFC 6749 §5.2):
  {"error": <code>, "error_description": <text>, "status": <http status>}
"""

from dataclasses import dataclass
from typing import Any, NoReturn


@dataclass(frozen=True)
class ErrorSpec:
    code: str
    description: str
    status: int = 400
    retryable: bool = False


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

ERROR_SPECS: dict[str, ErrorSpec] = {
    # --- RFC 6749 ---
    "ACCESS_DENIED": ErrorSpec(
        "access_denied",
        "The resource owner or authorization server denied the request.",
        403,
    ),
    "INVALID_CLIENT": ErrorSpec(
        "invalid_client",
        "Client authentication failed (unknown client, no client "
        "authentication included, or unsupported authentication method).",
        401,
    ),
    "INVALID_GRANT": ErrorSpec(
        "invalid_grant",
        "The provided authorization grant or refresh token is invalid, "
        "expired, revoked, or was issued to another client.",
    ),
    "INVALID_REQUEST": ErrorSpec(
        "invalid_request",
        "The request is missing a required parameter, includes an "
        "unsupported parameter value, repeats a parameter, or is malformed.",
    ),
    "INVALID_SCOPE": ErrorSpec(
        "invalid_scope",
        "The requested scope is invalid, unknown, malformed, or exceeds "
        "the scope granted.",
    ),
    "UNAUTHORIZED_CLIENT": ErrorSpec(
        "unauthorized_client",
        "The client is not authorized to use this authorization grant type.",
    ),
    "UNSUPPORTED_GRANT_TYPE": ErrorSpec(
        "unsupported_grant_type",
        "The authorization grant type is not supported for this client.",
    ),
    "UNSUPPORTED_RESPONSE_TYPE": ErrorSpec(
        "unsupported_response_type",
        "The authorization server does not support obtaining an "
        "authorization code using this method.",
    ),
    "SERVER_ERROR": ErrorSpec(
        "server_error",
        "The authorization server encountered an unexpected condition that "
        "prevented it from fulfilling the request.",
        500,
        retryable=True,
    ),
    "TEMPORARILY_UNAVAILABLE": ErrorSpec(
        "temporarily_unavailable",
        "The authorization server is temporarily unable to handle the request.",
        503,
        retryable=True,
    ),

    # --- RFC 8628 (device authorization grant) ---
    "AUTHORIZATION_PENDING": ErrorSpec(
        "authorization_pending",
        "The authorization request is still pending. Keep polling.",
    ),
    "SLOW_DOWN": ErrorSpec(
        "slow_down",
        "Polling too frequently. Increase the polling interval.",
    ),
    "EXPIRED_TOKEN": ErrorSpec(
        "expired_token",
        "The device_code has expired. Restart the device authorization flow.",
    ),

    # --- RFC 7636 (PKCE) ---
    "INVALID_CODE_CHALLENGE": ErrorSpec(
        "invalid_request",
        "The code_challenge is missing, malformed, or uses an unsupported "
        "method.",
    ),
    "INVALID_CODE_VERIFIER": ErrorSpec(
        "invalid_grant",
        "The code_verifier does not match the code_challenge of the "
        "authorization request.",
    ),

    # --- Resource / token errors ---
    "INVALID_TOKEN": ErrorSpec(
        "invalid_token",
        "The access token is invalid, malformed, expired, or revoked.",
        401,
    ),
    "INSUFFICIENT_SCOPE": ErrorSpec(
        "insufficient_scope",
        "The access token does not carry the scopes required by the resource.",
        403,
    ),
    "INVALID_REDIRECT_URI": ErrorSpec(
        "invalid_redirect_uri",
        "The redirect_uri is invalid or does not match a registered URI.",
    ),
    "UNSUPPORTED_TOKEN_TYPE": ErrorSpec(
        "unsupported_token_type",
        "The authorization server does not support revoking this token type.",
    ),

    # --- Rate limiting ---
    "TOO_MANY_REQUESTS": ErrorSpec(
        "too_many_requests",
        "Rate limit exceeded. Try again later.",
        429,
        retryable=True,
    ),

    # --- Configuration / service ---
    "CONFIGURATION_ERROR": ErrorSpec(
        "server_error",
        "The authorization server is misconfigured. Contact the administrator.",
        500,
        retryable=True,
    ),
    "SERVICE_UNAVAILABLE": ErrorSpec(
        "temporarily_unavailable",
        "The authorization service is temporarily unavailable for maintenance.",
        503,
        retryable=True,
    ),
    "NOT_IMPLEMENTED": ErrorSpec(
        "not_implemented",
        "The requested operation has no implementation.",
        501,
    ),

    # --- Request validation ---
    "MALFORMED_REQUEST": ErrorSpec(
        "invalid_request",
        "The request contains malformed data and cannot be processed.",
    ),
    "MISSING_PARAMETER": ErrorSpec(
        "invalid_request",
        "A required parameter is missing from the request.",
    ),
    "DUPLICATE_PARAMETER": ErrorSpec(
        "invalid_request",
        "The request repeats a parameter that must be unique.",
    ),

    # --- Security ---
    "REPLAY_ATTACK": ErrorSpec(
        "invalid_grant",
        "Reuse of a single-use grant was detected.",
    ),
    "SUSPICIOUS_ACTIVITY": ErrorSpec(
        "access_denied",
        "Suspicious activity detected. The request was denied.",
        403,
    ),
}

_POLLING_CODES = frozenset({"authorization_pending", "slow_down"})


# ---------------------------------------------------------------------------
# OAuthError
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """A terminal OAuth failure carrying one ERROR_SPECS entry.

    ``more_info`` is for internal logging only; it is left out of the
    client-facing response unless debug output is requested.
    """

    def __init__(self, kind: str, spec: ErrorSpec, more_info: dict[str, Any] | None = None):
        super().__init__(spec.description)
        self.kind = kind
        self.error = spec.code
        self.error_description = spec.description
        self.status = spec.status
        self.retryable = spec.retryable
        self.more_info = dict(more_info) if more_info else None

    def __repr__(self) -> str:
        return f"OAuthError({self.kind}, error={self.error!r}, status={self.status})"

    @classmethod
    def create(cls, kind: str, more_info: dict[str, Any] | None = None) -> "OAuthError":
        """Build an error for ``kind`` without raising it.

        Unknown kinds degrade to SERVER_ERROR with the offending name kept
        in ``more_info``.
        """
        spec = ERROR_SPECS.get(kind)
        if spec is None:
            info = {
                "original_error_type": kind,
                "message": f"Unknown error type: {kind}",
            }
            if more_info:
                info.update(more_info)
            return cls("SERVER_ERROR", ERROR_SPECS["SERVER_ERROR"], info)
        return cls(kind, spec, more_info)

    @classmethod
    def throw(cls, kind: str, more_info: dict[str, Any] | None = None) -> NoReturn:
        raise cls.create(kind, more_info)

    @property
    def detail(self) -> str | None:
        if self.more_info:
            return self.more_info.get("detail")
        return None

    @property
    def is_polling(self) -> bool:
        """True for the device-flow steady state (pending / slow_down)."""
        return self.error in _POLLING_CODES

    def is_type(self, kind: str) -> bool:
        spec = ERROR_SPECS.get(kind)
        return spec is not None and self.error == spec.code

    def is_retryable(self) -> bool:
        return self.retryable

    def to_response_object(self, include_debug_info: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.error,
            "error_description": self.error_description,
            "status": self.status,
        }
        if include_debug_info:
            body["more_info"] = self.more_info
        return body

    def to_http_response(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "headers": {
                "Content-Type": "application/json",
                "Cache-Control": "no-store",
                "Pragma": "no-cache",
            },
            "body": self.to_response_object(),
        }


def is_retryable(err: BaseException) -> bool:
    """Whether a caller may retry after ``err``. Non-OAuth errors are not."""
    return isinstance(err, OAuthError) and err.is_retryable()


def is_valid_error_code(code: str) -> bool:
    return any(spec.code == code for spec in ERROR_SPECS.values())


def get_spec_by_code(code: str) -> ErrorSpec | None:
    for spec in ERROR_SPECS.values():
        if spec.code == code:
            return spec
    return None
