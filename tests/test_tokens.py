"""Tests for access/refresh token minting and verification."""

import base64
import json

import pytest

from authguard.service.errors import InvalidTokenError
from authguard.service.tokens import TenantContext, TokenIssuer


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _forge(token, **changes):
    header, payload, signature = token.split(".")
    claims = _payload(token)
    claims.update(changes)
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{body}.{signature}"


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock)


class TestMint:
    def test_round_trip_claims(self, issuer, principal):
        pair = issuer.mint(principal, session_id="sess-1")

        claims = issuer.verify(pair.access_token)

        assert claims["sub"] == principal.id
        assert claims["email"] == principal.email
        assert claims["role"] == "user"
        assert claims["sid"] == "sess-1"
        assert claims["token_type"] == "access"
        assert pair.session_id == "sess-1"
        assert pair.expires_in == 3600

    def test_generates_session_id_when_absent(self, issuer, principal):
        pair = issuer.mint(principal)
        assert pair.session_id
        assert issuer.verify(pair.access_token)["sid"] == pair.session_id
        assert issuer.verify_refresh(pair.refresh_token)["sid"] == pair.session_id

    def test_tenant_claims(self, issuer, principal):
        tenant = TenantContext(tenant_id="acme", role="owner", permissions=["billing"])
        pair = issuer.mint(principal, tenant_context=tenant)

        access = issuer.verify(pair.access_token)
        refresh = issuer.verify_refresh(pair.refresh_token)

        assert access["tenant_id"] == "acme"
        assert access["tenant_role"] == "owner"
        assert access["tenant_permissions"] == ["billing"]
        assert refresh["tenant_id"] == "acme"
        assert "tenant_role" not in refresh


class TestVerify:
    def test_tampered_payload_rejected(self, issuer, principal):
        pair = issuer.mint(principal)
        assert issuer.verify(_forge(pair.access_token, role="admin")) is None

    def test_expired_rejected(self, issuer, principal, clock):
        pair = issuer.mint(principal)
        clock.advance(minutes=61)
        assert issuer.verify(pair.access_token) is None

    def test_refresh_not_accepted_as_access(self, issuer, principal):
        pair = issuer.mint(principal)
        assert issuer.verify(pair.refresh_token) is None

    def test_access_not_accepted_as_refresh(self, issuer, principal):
        pair = issuer.mint(principal)
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh(pair.access_token)

    def test_refresh_outlives_access(self, issuer, principal, clock):
        pair = issuer.mint(principal)
        clock.advance(days=6)
        assert issuer.verify(pair.access_token) is None
        assert issuer.verify_refresh(pair.refresh_token)["sub"] == principal.id
        clock.advance(days=2)
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh(pair.refresh_token)

    def test_algorithm_none_rejected(self, issuer, principal):
        pair = issuer.mint(principal)
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        _, payload, signature = pair.access_token.split(".")
        assert issuer.verify(f"{header}.{payload}.{signature}") is None

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d", "!!!.@@@.###"])
    def test_malformed_never_raises(self, issuer, token):
        assert issuer.verify(token) is None

    def test_other_secret_rejected(self, issuer, principal, settings, clock):
        other = TokenIssuer(
            settings.model_copy(update={"jwt_secret": "another-access-secret-0123456789abcdef"}),
            clock,
        )
        assert other.verify(issuer.mint(principal).access_token) is None

    @pytest.mark.parametrize("signature", ["éé", "١٢", "sig\u00a0"])
    def test_non_ascii_signature_rejected(self, issuer, principal, signature):
        header, payload, _ = issuer.mint(principal).access_token.split(".")
        assert issuer.verify(f"{header}.{payload}.{signature}") is None
