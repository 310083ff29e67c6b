"""Tests for the authorization code flow and PKCE helpers in grant_flows.py."""
import base64
import hashlib
import json
import logging
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from grant_errors import OAuthError
from grant_flows import (
    AuthorizationCodeFlow,
    AuthorizationRequest,
    CodeState,
    TokenGrant,
    generate_code_challenge,
    generate_code_verifier,
    transform_verifier,
)
from grant_policy import ClientPolicy
from grant_stores import InMemoryCodeStore

REDIRECT = "https://a/cb"


def _s256(verifier):
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


@pytest.fixture
def policy():
    return ClientPolicy(
        client_id="spa",
        grant_types="authorization_code",
        redirect_uris=REDIRECT,
        scopes="read write",
    )


@pytest.fixture
def codes():
    return InMemoryCodeStore()


@pytest.fixture
def tokens():
    mock = MagicMock()
    mock.generate_token = AsyncMock(return_value={"access_token": "tok", "token_type": "Bearer"})
    return mock


@pytest.fixture
def flow(policy, codes, tokens):
    return AuthorizationCodeFlow(policy, codes, tokens)


async def _code(flow, verifier="verifier1", **overrides):
    params = {
        "response_type": "code",
        "redirect_uri": REDIRECT,
        "scope": "read",
        "code_challenge": _s256(verifier),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return await flow.get_code(**params)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestCodeScenario:
    @pytest.mark.asyncio
    async def test_issue_and_redeem_once(self, flow, codes, tokens):
        code = await _code(flow)
        assert codes.state_of(code) is CodeState.CODE_ISSUED

        token = await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier1")
        assert token["access_token"] == "tok"
        assert codes.state_of(code) is CodeState.REDEEMED

        grant = tokens.generate_token.await_args.args[0]
        assert isinstance(grant, TokenGrant)
        assert grant.client_id == "spa"
        assert grant.grant_type == "authorization_code"
        assert grant.scopes == ["read"]
        assert grant.expires_in == 3600

        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier1")
        assert exc.value.error == "invalid_grant"
        assert exc.value.kind == "REPLAY_ATTACK"
        assert tokens.generate_token.await_count == 1

    @pytest.mark.asyncio
    async def test_code_info_reaches_store_and_issuer(self, flow, codes, tokens):
        code = await _code(flow, code_info={"sub": "alice"})
        assert codes.codes[code].code_info == {"sub": "alice"}
        await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier1",
                             token_info={"aud": "api"})
        grant = tokens.generate_token.await_args.args[0]
        assert grant.validation_data.code_info == {"sub": "alice"}
        assert grant.token_info == {"aud": "api"}

    @pytest.mark.asyncio
    async def test_authorize_with_request_object(self, flow):
        request = AuthorizationRequest.from_params({
            "response_type": "code",
            "redirect_uri": REDIRECT,
            "code_challenge": _s256("v"),
            "code_challenge_method": "S256",
            "ignored": "x",
        })
        assert request.scope is None
        code = await flow.authorize(request)
        assert isinstance(code, str) and code


# ---------------------------------------------------------------------------
# Authorization step validation
# ---------------------------------------------------------------------------

class TestGetCodeValidation:
    @pytest.fixture
    def spy_codes(self):
        mock = MagicMock(spec=["generate_code", "validate_code"])
        mock.generate_code = AsyncMock(return_value="c")
        mock.validate_code = AsyncMock()
        return mock

    @pytest.mark.asyncio
    async def test_response_type_checked_first(self, policy, spy_codes, tokens):
        flow = AuthorizationCodeFlow(policy, spy_codes, tokens)
        with pytest.raises(OAuthError) as exc:
            await _code(flow, response_type="token", redirect_uri="https://evil/cb")
        assert exc.value.error == "unsupported_response_type"
        spy_codes.generate_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_redirect(self, policy, spy_codes, tokens):
        flow = AuthorizationCodeFlow(policy, spy_codes, tokens)
        with pytest.raises(OAuthError) as exc:
            await _code(flow, redirect_uri="https://a/cb/", scope="admin")
        assert exc.value.error == "invalid_request"
        spy_codes.generate_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_state_mismatch(self, flow):
        with pytest.raises(OAuthError) as exc:
            await _code(flow, state="abc", expected_state="xyz")
        assert exc.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_state_echo_accepted(self, flow):
        assert await _code(flow, state="abc", expected_state="abc")

    @pytest.mark.asyncio
    async def test_bad_scope(self, policy, spy_codes, tokens):
        flow = AuthorizationCodeFlow(policy, spy_codes, tokens)
        with pytest.raises(OAuthError) as exc:
            await _code(flow, scope="read admin")
        assert exc.value.error == "invalid_scope"
        spy_codes.generate_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_challenge_when_required(self, flow):
        with pytest.raises(OAuthError) as exc:
            await _code(flow, code_challenge=None, code_challenge_method=None)
        assert exc.value.kind == "INVALID_CODE_CHALLENGE"
        assert exc.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_absent_method_means_plain(self, flow):
        with pytest.raises(OAuthError) as exc:
            await _code(flow, code_challenge_method=None)
        assert exc.value.kind == "INVALID_CODE_CHALLENGE"
        assert "plain" in exc.value.detail

    @pytest.mark.asyncio
    async def test_unknown_method(self, flow):
        with pytest.raises(OAuthError) as exc:
            await _code(flow, code_challenge_method="S512")
        assert exc.value.kind == "INVALID_CODE_CHALLENGE"

    @pytest.mark.asyncio
    async def test_binds_expiry_from_policy(self, flow, codes):
        before = time.time()
        code = await _code(flow)
        assert before + 300 <= codes.codes[code].expires_at <= time.time() + 300


# ---------------------------------------------------------------------------
# Token step validation
# ---------------------------------------------------------------------------

class TestGetTokenValidation:
    @pytest.mark.asyncio
    async def test_missing_code(self, flow):
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(redirect_uri=REDIRECT, code_verifier="verifier1")
        assert exc.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_unknown_code(self, flow):
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="nope", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.kind == "INVALID_GRANT"

    @pytest.mark.asyncio
    async def test_expired_code(self, flow, codes):
        code = await _code(flow)
        codes.codes[code].expires_at = time.time() - 1
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier1")
        assert exc.value.error == "invalid_grant"
        assert codes.state_of(code) is CodeState.EXPIRED

    @pytest.mark.asyncio
    async def test_redirect_must_equal_issuance(self, flow):
        code = await _code(flow)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=None, code_verifier="verifier1")
        assert exc.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_missing_verifier(self, flow):
        code = await _code(flow)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT)
        assert exc.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_wrong_verifier_rejects_code(self, flow, codes):
        code = await _code(flow)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier2")
        assert exc.value.kind == "INVALID_CODE_VERIFIER"
        assert exc.value.error == "invalid_grant"
        assert codes.state_of(code) is CodeState.REJECTED

        # Consumed even though redemption failed.
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="verifier1")
        assert exc.value.kind == "REPLAY_ATTACK"

    @pytest.mark.asyncio
    async def test_code_from_another_client(self, policy, codes, tokens):
        other = ClientPolicy(client_id="other", grant_types="authorization_code",
                             redirect_uris=REDIRECT, scopes="read")
        code = await _code(AuthorizationCodeFlow(other, codes, tokens))
        with pytest.raises(OAuthError) as exc:
            await AuthorizationCodeFlow(policy, codes, tokens).get_token(
                code=code, redirect_uri=REDIRECT, code_verifier="verifier1")
        assert exc.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_grant_type_mismatch(self, flow):
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="x", grant_type="password")
        assert exc.value.error == "unsupported_grant_type"

    @pytest.mark.asyncio
    async def test_client_not_registered_for_grant(self, codes, tokens):
        policy = ClientPolicy(client_id="svc", grant_types="client_credentials",
                              redirect_uris=REDIRECT)
        flow = AuthorizationCodeFlow(policy, codes, tokens)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="x", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.error == "unsupported_grant_type"


# ---------------------------------------------------------------------------
# PKCE modes
# ---------------------------------------------------------------------------

class TestPkceModes:
    @pytest.mark.asyncio
    async def test_plain_when_allowed(self, policy, codes, tokens, caplog):
        with caplog.at_level(logging.WARNING, logger="grantflow"):
            flow = AuthorizationCodeFlow(policy, codes, tokens, allow_plain_pkce_method=True)
        assert any("plain PKCE" in r.getMessage() for r in caplog.records)

        code = await flow.get_code(response_type="code", redirect_uri=REDIRECT,
                                   code_challenge="plain-verifier-value")
        assert codes.codes[code].code_challenge_method == "plain"
        token = await flow.get_token(code=code, redirect_uri=REDIRECT,
                                     code_verifier="plain-verifier-value")
        assert token["access_token"] == "tok"

    @pytest.mark.asyncio
    async def test_optional_pkce_without_challenge(self, policy, codes, tokens):
        flow = AuthorizationCodeFlow(policy, codes, tokens, pkce_required=False)
        code = await flow.get_code(response_type="code", redirect_uri=REDIRECT, scope="write")
        assert codes.codes[code].code_challenge is None
        await flow.get_token(code=code, redirect_uri=REDIRECT)

    @pytest.mark.asyncio
    async def test_optional_pkce_still_checks_bound_challenge(self, policy, codes, tokens):
        flow = AuthorizationCodeFlow(policy, codes, tokens, pkce_required=False)
        code = await _code(flow)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code=code, redirect_uri=REDIRECT)
        assert exc.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_required_pkce_without_bound_challenge(self, policy, tokens):
        store = MagicMock(spec=["generate_code", "validate_code"])
        store.generate_code = AsyncMock()
        store.validate_code = AsyncMock(return_value={
            "client_id": "spa", "scopes": "read", "redirect_uri": REDIRECT,
        })
        flow = AuthorizationCodeFlow(policy, store, tokens)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="c", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_missing_stored_method_is_server_error(self, policy, tokens):
        store = MagicMock(spec=["generate_code", "validate_code"])
        store.generate_code = AsyncMock()
        store.validate_code = AsyncMock(return_value={
            "client_id": "spa", "scopes": "read", "redirect_uri": REDIRECT,
            "code_challenge": _s256("v"), "code_challenge_method": None,
        })
        flow = AuthorizationCodeFlow(policy, store, tokens)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="c", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.error == "server_error"

    @pytest.mark.asyncio
    async def test_mapping_result_is_accepted(self, policy, tokens):
        store = MagicMock(spec=["generate_code", "validate_code"])
        store.generate_code = AsyncMock()
        store.validate_code = AsyncMock(return_value={
            "client_id": "spa", "scopes": "read write", "redirect_uri": REDIRECT,
            "code_challenge": _s256("v"), "code_challenge_method": "S256",
            "unrelated": True,
        })
        flow = AuthorizationCodeFlow(policy, store, tokens)
        await flow.get_token(code="c", redirect_uri=REDIRECT, code_verifier="v")
        assert tokens.generate_token.await_args.args[0].scopes == ["read", "write"]

    @pytest.mark.asyncio
    async def test_bad_hook_result(self, policy, tokens):
        store = MagicMock(spec=["generate_code", "validate_code"])
        store.generate_code = AsyncMock()
        store.validate_code = AsyncMock(return_value=42)
        flow = AuthorizationCodeFlow(policy, store, tokens)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="c", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.error == "server_error"

    @pytest.mark.asyncio
    async def test_mapping_without_client_id(self, policy, tokens):
        store = MagicMock(spec=["generate_code", "validate_code"])
        store.generate_code = AsyncMock()
        store.validate_code = AsyncMock(return_value={"scopes": ["read"],
                                                      "redirect_uri": REDIRECT})
        flow = AuthorizationCodeFlow(policy, store, tokens)
        with pytest.raises(OAuthError) as exc:
            await flow.get_token(code="c", redirect_uri=REDIRECT, code_verifier="v")
        assert exc.value.error == "server_error"
        assert exc.value.status == 500
        assert "validate_code" in exc.value.detail
        tokens.generate_token.assert_not_awaited()


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------

class TestHooks:
    def test_missing_code_store(self, policy, tokens):
        with pytest.raises(OAuthError) as exc:
            AuthorizationCodeFlow(policy, None, tokens)
        assert exc.value.status == 501
        assert exc.value.error == "not_implemented"

    def test_incomplete_code_store(self, policy, tokens):
        class HalfStore:
            async def generate_code(self, grant):
                return "c"

        with pytest.raises(OAuthError) as exc:
            AuthorizationCodeFlow(policy, HalfStore(), tokens)
        assert exc.value.more_info["operation"] == "validate_code"

    def test_incomplete_token_issuer(self, policy, codes):
        with pytest.raises(OAuthError) as exc:
            AuthorizationCodeFlow(policy, codes, object())
        assert exc.value.kind == "NOT_IMPLEMENTED"


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

class TestPkceHelpers:
    def test_rfc7636_appendix_b(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert transform_verifier(verifier, "S256") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain_is_identity(self):
        assert transform_verifier("abc", "plain") == "abc"

    def test_unknown_method(self):
        with pytest.raises(OAuthError) as exc:
            transform_verifier("abc", "S512")
        assert exc.value.error == "server_error"

    def test_generated_verifier_lengths(self):
        assert len(generate_code_verifier(32)) == 43
        assert len(generate_code_verifier(96)) == 128
        with pytest.raises(ValueError):
            generate_code_verifier(31)

    def test_generated_challenge_matches(self):
        verifier = generate_code_verifier()
        assert generate_code_challenge(verifier) == _s256(verifier)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class TestAudit:
    @pytest.mark.asyncio
    async def test_events_logged_without_code(self, flow, caplog):
        with caplog.at_level(logging.INFO, logger="grantflow-audit"):
            code = await _code(flow)
            with pytest.raises(OAuthError):
                await flow.get_token(code=code, redirect_uri=REDIRECT, code_verifier="bad")

        events = [json.loads(r.getMessage()) for r in caplog.records
                  if r.name == "grantflow-audit"]
        names = [e["event"] for e in events]
        assert "code_issued" in names
        assert "grant_rejected" in names
        assert all(code not in r.getMessage() for r in caplog.records)
