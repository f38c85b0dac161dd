"""
Tests for tokens.py - JWT issuance, verification and revocation
"""
from datetime import timedelta

import jwt
import pytest

from database.models import Identity
from utils.errors import TokenError, TokenErrorKind
from utils.rbac import CrewRole, Department
from utils.tokens import (
    TokenBlacklist, TokenService, is_valid_token_format,
    token_fingerprint
)

ACCESS_SECRET = "access-secret-for-tests-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-fedcba9876543210"


@pytest.fixture
def identity():
    return Identity(
        employee_id="AA12345",
        name="Captain Sarah Johnson",
        role=CrewRole.PILOT,
        department=Department.FLIGHT_OPERATIONS,
        clearance_level=5,
        airline="American Airlines",
        credential_hash="unused",
    )


@pytest.fixture
def tokens(clock):
    return TokenService(ACCESS_SECRET, REFRESH_SECRET, TokenBlacklist(clock), clock=clock)


class TestIssueAndVerify:

    def test_access_token_carries_claims(self, tokens, identity):
        pair = tokens.issue_token_pair(identity)
        claims = tokens.verify_access_token(pair.access_token)

        assert claims.employee_id == "AA12345"
        assert claims.role is CrewRole.PILOT
        assert claims.department is Department.FLIGHT_OPERATIONS
        assert claims.clearance_level == 5
        assert claims.airline == "American Airlines"
        assert claims.expires_at - claims.issued_at == timedelta(minutes=15)

    def test_pair_metadata(self, tokens, identity):
        pair = tokens.issue_token_pair(identity)

        assert pair.token_type == "Bearer"
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 7 * 24 * 3600

    def test_refresh_token_is_minimal(self, tokens, identity):
        pair = tokens.issue_token_pair(identity)
        claims = tokens.verify_refresh_token(pair.refresh_token)

        assert claims["employeeId"] == "AA12345"
        assert claims["type"] == "refresh"
        assert "tokenId" in claims
        assert "clearanceLevel" not in claims

    def test_refresh_tokens_are_unique(self, tokens, identity):
        first = tokens.issue_token_pair(identity)
        second = tokens.issue_token_pair(identity)
        assert first.refresh_token != second.refresh_token

    def test_issuer_and_audience_are_set(self, tokens, identity):
        pair = tokens.issue_token_pair(identity)
        raw = jwt.decode(pair.access_token, options={"verify_signature": False})

        assert raw["iss"] == "aviation-crew-api"
        assert raw["aud"] == "aviation-crew"


class TestRejection:

    def test_expired_access_token(self, tokens, identity, clock):
        pair = tokens.issue_token_pair(identity)
        clock.advance(minutes=15)

        with pytest.raises(TokenError) as exc:
            tokens.verify_access_token(pair.access_token)

        assert exc.value.kind is TokenErrorKind.EXPIRED
        assert exc.value.code == "TOKEN_EXPIRED"

    def test_access_token_valid_just_before_expiry(self, tokens, identity, clock):
        pair = tokens.issue_token_pair(identity)
        clock.advance(minutes=14, seconds=59)
        assert tokens.verify_access_token(pair.access_token).employee_id == "AA12345"

    def test_refresh_token_rejected_as_access_token(self, identity, clock):
        # Shared secret so only the type claim tells the two apart
        shared = TokenService(ACCESS_SECRET, None, clock=clock)
        pair = shared.issue_token_pair(identity)

        with pytest.raises(TokenError) as exc:
            shared.verify_access_token(pair.refresh_token)

        assert exc.value.kind is TokenErrorKind.WRONG_TYPE

    def test_access_token_rejected_as_refresh_token_with_separate_secret(self, tokens, identity):
        pair = tokens.issue_token_pair(identity)

        with pytest.raises(TokenError) as exc:
            tokens.verify_refresh_token(pair.access_token)

        assert exc.value.kind is TokenErrorKind.INVALID

    def test_tampered_signature(self, tokens, identity):
        token = tokens.issue_token_pair(identity).access_token
        header, payload, signature = token.split('.')
        swapped = 'B' if signature[0] == 'A' else 'A'
        forged = f"{header}.{payload}.{swapped}{signature[1:]}"

        with pytest.raises(TokenError) as exc:
            tokens.verify_access_token(forged)

        assert exc.value.kind is TokenErrorKind.INVALID

    def test_token_signed_with_other_secret(self, identity, clock):
        other = TokenService("some-other-secret-value-0123456789abcd", clock=clock)
        mine = TokenService(ACCESS_SECRET, REFRESH_SECRET, clock=clock)
        token = other.issue_token_pair(identity).access_token

        with pytest.raises(TokenError) as exc:
            mine.verify_access_token(token)

        assert exc.value.kind is TokenErrorKind.INVALID

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "a.b!.c", None])
    def test_malformed(self, tokens, token):
        with pytest.raises(TokenError) as exc:
            tokens.verify_access_token(token)

        assert exc.value.kind is TokenErrorKind.MALFORMED_FORMAT

    def test_missing_required_claim(self, tokens):
        token = jwt.encode({"employeeId": "AA12345", "type": "access"}, ACCESS_SECRET, algorithm="HS256")

        with pytest.raises(TokenError) as exc:
            tokens.verify_access_token(token)

        assert exc.value.kind is TokenErrorKind.INVALID

    def test_empty_access_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenService("")


class TestRevocation:

    def test_blacklisted_token_is_revoked(self, tokens, identity):
        token = tokens.issue_token_pair(identity).access_token
        tokens.blacklist_token(token)

        assert tokens.blacklist.contains(token)
        with pytest.raises(TokenError) as exc:
            tokens.verify_access_token(token)

        assert exc.value.kind is TokenErrorKind.REVOKED
        assert exc.value.code == "TOKEN_REVOKED"

    def test_blacklist_stores_fingerprints_only(self, tokens, identity):
        token = tokens.issue_token_pair(identity).access_token
        tokens.blacklist_token(token)

        assert token not in tokens.blacklist._entries
        assert token_fingerprint(token) in tokens.blacklist._entries

    def test_blacklist_entry_expires_with_token(self, tokens, identity, clock):
        token = tokens.issue_token_pair(identity).access_token
        tokens.blacklist_token(token)
        assert len(tokens.blacklist) == 1

        clock.advance(minutes=16)
        assert tokens.blacklist.cleanup() == 1
        assert len(tokens.blacklist) == 0

    def test_unreadable_token_gets_fallback_expiry(self, tokens, clock):
        tokens.blacklist_token("not-a-jwt")
        clock.advance(hours=23)
        assert tokens.blacklist.contains("not-a-jwt")
        clock.advance(hours=2)
        assert not tokens.blacklist.contains("not-a-jwt")

    def test_time_remaining(self, tokens, identity, clock):
        token = tokens.issue_token_pair(identity).access_token
        assert tokens.get_token_time_remaining(token) == 900
        clock.advance(minutes=20)
        assert tokens.get_token_time_remaining(token) == 0
        assert tokens.get_token_time_remaining("garbage") == -1


class TestHelpers:

    def test_weak_refresh_mode_flag(self, clock):
        assert TokenService(ACCESS_SECRET, ACCESS_SECRET, clock=clock).weak_refresh_mode
        assert TokenService(ACCESS_SECRET, None, clock=clock).weak_refresh_mode
        assert not TokenService(ACCESS_SECRET, REFRESH_SECRET, clock=clock).weak_refresh_mode

    def test_is_valid_token_format(self, tokens, identity):
        assert is_valid_token_format(tokens.issue_token_pair(identity).access_token)
        assert not is_valid_token_format("a.b")
        assert not is_valid_token_format(12345)
