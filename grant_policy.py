"""
grant_policy.py — per-client registered policy and shared validation.

A ClientPolicy is built once per client (usually from the client store or
clients.yaml) and is read-only afterwards. Every flow holds one by
reference and runs its request through these primitives:

  validate_grant_type     — grant allowed for this client?
  validate_response_type  — authorization endpoint response_type check
  validate_redirect_uri   — exact, byte-for-byte redirect URI match
  validate_state          — state echo check against a bound value
  validate_scopes         — scope parsing, matching and narrowing

Configuration mistakes raise CONFIGURATION_ERROR (server_error, 500) so they
are never confused with client faults (4xx).
"""

import hmac
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Protocol

import yaml

from grant_errors import OAuthError

logger = logging.getLogger("grantflow")

CLIENTS_FILE_ENV = "GRANTFLOW_CLIENTS_FILE"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def parse_scope_string(scope: str | None) -> list[str]:
    """Split a space-delimited scope string, dropping empties and repeats.

    Order of first appearance is kept: "b a  b" -> ["b", "a"].
    """
    if scope is None:
        return []
    if not isinstance(scope, str):
        OAuthError.throw("INVALID_REQUEST", {
            "detail": 'The "scope" parameter must be a space-delimited string.',
        })
    return _dedupe(scope.split())


def _normalize_list(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _dedupe(value.split())
    if isinstance(value, Iterable):
        items = list(value)
        if not all(isinstance(v, str) for v in items):
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": f'"{name}" must contain only strings.',
            })
        return _dedupe(items)
    OAuthError.throw("CONFIGURATION_ERROR", {
        "detail": f'"{name}" must be a space-separated string or a sequence.',
    })


# ---------------------------------------------------------------------------
# ClientPolicy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClientPolicy:
    client_id: str = ""
    client_secret: str | None = None
    grant_types: frozenset[str] = frozenset()
    scopes: frozenset[str] = frozenset()
    redirect_uris: tuple[str, ...] = ()
    issues_refresh_token: bool = True
    redirect_uri_required: bool = True
    scopes_required: bool = False
    state_required: bool = True
    match_all_scopes: bool = True
    token_expires_in: int = 3600
    refresh_token_expires_in: int = 7200
    code_expires_in: int = 300
    device_code_expires_in: int = 1800

    def __post_init__(self) -> None:
        if not self.client_id or not isinstance(self.client_id, str):
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": "A client policy cannot be built without a client_id.",
            })
        # Accept "a b c" or ["a", "b"]; store immutable, deduplicated forms.
        object.__setattr__(self, "grant_types",
                           frozenset(_normalize_list("grant_types", self.grant_types)))
        object.__setattr__(self, "scopes",
                           frozenset(_normalize_list("scopes", self.scopes)))
        object.__setattr__(self, "redirect_uris",
                           tuple(_normalize_list("redirect_uris", self.redirect_uris)))
        for name in ("token_expires_in", "refresh_token_expires_in",
                     "code_expires_in", "device_code_expires_in"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                OAuthError.throw("CONFIGURATION_ERROR", {
                    "detail": f'"{name}" must be a positive number of seconds.',
                })

    def __repr__(self) -> str:
        # never print client_secret
        return (f"ClientPolicy(client_id={self.client_id!r}, "
                f"grant_types={sorted(self.grant_types)}, scopes={sorted(self.scopes)})")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ClientPolicy":
        """Build a policy from a config mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": f"Unknown client policy keys: {', '.join(unknown)}",
            })
        return cls(**dict(data))

    # --- Validation primitives ---

    def validate_grant_type(self, requested: str) -> bool:
        if not self.grant_types:
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": f'Client "{self.client_id}" has no grant types registered.',
            })
        if requested not in self.grant_types:
            OAuthError.throw("UNSUPPORTED_GRANT_TYPE", {
                "detail": f'The grant_type "{requested}" is not allowed for this client.',
            })
        return True

    def validate_scopes(self, requested_scope_string: str | None) -> list[str]:
        """Return the scopes to grant for a request, or raise INVALID_SCOPE.

        With ``match_all_scopes`` every requested scope must be registered
        for the client. Without it the grant is the intersection, in
        requested order, and an empty intersection is still an error.
        """
        requested = parse_scope_string(requested_scope_string)

        if not requested:
            if self.scopes_required:
                OAuthError.throw("INVALID_SCOPE", {
                    "detail": 'The "scope" parameter is required for this client.',
                })
            return []

        if not self.scopes:
            OAuthError.throw("INVALID_SCOPE", {
                "detail": "Scopes were requested but the client has none registered.",
            })

        granted: list[str] = []
        for scope in requested:
            if scope in self.scopes:
                granted.append(scope)
            elif self.match_all_scopes:
                OAuthError.throw("INVALID_SCOPE", {
                    "detail": f'The scope "{scope}" is not allowed for this client.',
                    "scope": scope,
                })

        if not granted:
            OAuthError.throw("INVALID_SCOPE", {
                "detail": "None of the requested scopes is allowed for this client.",
            })
        return granted

    def validate_redirect_uri(self, requested: str | None) -> bool:
        # Exact string comparison only: no normalization, no prefix matching.
        if not self.redirect_uri_required:
            return True
        if not requested or not isinstance(requested, str):
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "redirect_uri" parameter is required.',
            })
        if requested not in self.redirect_uris:
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "redirect_uri" does not match any registered URI.',
            })
        return True

    def validate_state(self, provided: str | None, expected: str | None = None) -> bool:
        """Compare the echoed state against the value bound by the caller.

        Nothing is checked when the client does not require state or when no
        expected value was bound for this request.
        """
        if not self.state_required or expected is None:
            return True
        if not isinstance(provided, str) or not provided:
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "state" parameter is required for this client.',
            })
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "state" does not match the value of the original request.',
            })
        return True

    @staticmethod
    def validate_response_type(received: str | None, expected: str) -> bool:
        if not received:
            OAuthError.throw("INVALID_REQUEST", {
                "detail": 'The "response_type" parameter is required.',
            })
        if received != expected:
            OAuthError.throw("UNSUPPORTED_RESPONSE_TYPE", {
                "detail": f'The response_type "{received}" is not supported here.',
            })
        return True


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

class ClientRegistry(Protocol):
    async def lookup_client(self, client_id: str) -> ClientPolicy:
        """Return the client's policy or raise INVALID_CLIENT."""
        ...


class StaticClientRegistry:
    """Read-only registry over a fixed set of policies."""

    def __init__(self, policies: Mapping[str, ClientPolicy] | Iterable[ClientPolicy]):
        if isinstance(policies, Mapping):
            self.policies = dict(policies)
        else:
            self.policies = {p.client_id: p for p in policies}

    async def lookup_client(self, client_id: str) -> ClientPolicy:
        policy = self.policies.get(client_id) if client_id else None
        if policy is None:
            OAuthError.throw("INVALID_CLIENT", {
                "detail": f'Unknown client "{client_id}".',
            })
        return policy


def load_clients(config_path: Path | None = None) -> dict[str, ClientPolicy]:
    """Load client policies from clients.yaml.

    Layout::

        clients:
          spa-client:
            grant_types: authorization_code refresh_token
            redirect_uris: [https://app.example.com/cb]
            scopes: read write
    """
    if config_path is None:
        config_path = Path(os.environ.get(CLIENTS_FILE_ENV, "clients.yaml"))
    if not config_path.exists():
        OAuthError.throw("CONFIGURATION_ERROR", {
            "detail": f"Client config not found: {config_path}",
        })

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("clients"), dict):
        OAuthError.throw("CONFIGURATION_ERROR", {
            "detail": f"Invalid {config_path.name}: expected a top-level 'clients' mapping",
        })

    policies: dict[str, ClientPolicy] = {}
    for client_id, cfg in raw["clients"].items():
        cfg = dict(cfg or {})
        declared = cfg.setdefault("client_id", str(client_id))
        if declared != str(client_id):
            OAuthError.throw("CONFIGURATION_ERROR", {
                "detail": f"Client '{client_id}' declares a different client_id '{declared}'",
            })
        policies[str(client_id)] = ClientPolicy.from_mapping(cfg)

    if not policies:
        OAuthError.throw("CONFIGURATION_ERROR", {
            "detail": f"No clients defined in {config_path}",
        })

    logger.info("loaded %d client policies from %s", len(policies), config_path)
    return policies
