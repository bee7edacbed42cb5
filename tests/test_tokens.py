"""
tests/test_tokens.py -- Unit tests for the access-token codec and refresh-token primitives.

Covers:
  - issue/verify recovers subject, issuer, and the exact authority set
  - expiry boundary with a frozen clock (14:59 valid, 15:01 invalid, leeway)
  - tampering, wrong key, wrong issuer, and garbage input all yield None
  - fail-fast construction on a short secret or non-positive TTL
  - refresh token format and keyed hashing
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from auth.tokens import (
    AccessTokenCodec,
    decode_scope,
    encode_scope,
    generate_refresh_token,
    hash_refresh_token,
)


class TestAccessTokenRoundTrip:
    def test_verify_recovers_subject_and_authorities(self, codec: AccessTokenCodec) -> None:
        token, _ = codec.issue("alice", {"ROLE_USER", "user.read"})
        claims = codec.verify(token)
        assert claims is not None
        assert claims.subject == "alice"
        assert claims.issuer == codec.issuer
        assert claims.authorities == frozenset({"ROLE_USER", "user.read"})

    def test_token_has_three_parts_and_hs256_header(self, codec: AccessTokenCodec) -> None:
        token, _ = codec.issue("alice", [])
        assert token.count(".") == 2
        header = jwt.get_unverified_header(token)
        assert header["alg"] == "HS256"
        assert header["typ"] == "JWT"

    def test_scope_claim_is_sorted_and_deduplicated(self, codec: AccessTokenCodec) -> None:
        token, _ = codec.issue("alice", ["user.read", "ROLE_USER", "user.read"])
        claims = jwt.get_unverified_claims(token)
        assert claims["scope"] == "ROLE_USER user.read"
        assert claims["jti"]

    def test_each_token_gets_a_unique_id(self, codec: AccessTokenCodec) -> None:
        first = codec.verify(codec.issue("alice", [])[0])
        second = codec.verify(codec.issue("alice", [])[0])
        assert first.token_id != second.token_id

    def test_expiry_matches_ttl(self, codec: AccessTokenCodec, clock) -> None:
        _, expires_at = codec.issue("alice", [])
        assert expires_at == clock.now + timedelta(minutes=15)

    def test_empty_authorities_round_trip(self, codec: AccessTokenCodec) -> None:
        claims = codec.verify(codec.issue("carol", [])[0])
        assert claims.authorities == frozenset()


class TestAccessTokenExpiry:
    def test_valid_just_before_expiry(self, codec: AccessTokenCodec, clock) -> None:
        token, _ = codec.issue("alice", [])
        clock.advance(minutes=14, seconds=59)
        assert codec.verify(token) is not None

    def test_invalid_just_after_expiry(self, codec: AccessTokenCodec, clock) -> None:
        token, _ = codec.issue("alice", [])
        clock.advance(minutes=15, seconds=1)
        assert codec.verify(token) is None

    def test_invalid_exactly_at_expiry(self, codec: AccessTokenCodec, clock) -> None:
        token, _ = codec.issue("alice", [])
        clock.advance(minutes=15)
        assert codec.verify(token) is None

    def test_leeway_extends_acceptance(self, make_codec, clock) -> None:
        codec = make_codec(leeway=timedelta(seconds=30))
        token, _ = codec.issue("alice", [])
        clock.advance(minutes=15, seconds=20)
        assert codec.verify(token) is not None
        clock.advance(seconds=15)
        assert codec.verify(token) is None

    def test_expiry_follows_the_given_time_not_the_wall_clock(self, codec: AccessTokenCodec, clock) -> None:
        """The frozen clock sits in the past, so this token is long expired by wall-clock time."""
        token, expires_at = codec.issue("alice", [])
        assert codec.verify(token, now=expires_at - timedelta(seconds=1)) is not None
        assert codec.verify(token, now=expires_at) is None

    def test_leeway_with_explicit_time(self, make_codec) -> None:
        codec = make_codec(leeway=timedelta(seconds=60))
        token, expires_at = codec.issue("alice", [])
        assert codec.verify(token, now=expires_at + timedelta(seconds=10)) is not None
        assert codec.verify(token, now=expires_at + timedelta(seconds=60)) is None


class TestAccessTokenRequiredClaims:
    SECRET = "required-claims-key-0123456789abcdef"

    def _encode(self, **claims) -> str:
        return jwt.encode(claims, self.SECRET, algorithm="HS256")

    def test_missing_exp_is_rejected(self, make_codec, clock) -> None:
        codec = make_codec(secret=self.SECRET)
        iat = int(clock.now.timestamp())
        assert codec.verify(self._encode(sub="alice", iss=codec.issuer, iat=iat)) is None

    def test_missing_sub_is_rejected(self, make_codec, clock) -> None:
        codec = make_codec(secret=self.SECRET)
        iat = int(clock.now.timestamp())
        assert codec.verify(self._encode(iss=codec.issuer, iat=iat, exp=iat + 600)) is None

    def test_hand_built_token_with_all_claims_is_accepted(self, make_codec, clock) -> None:
        codec = make_codec(secret=self.SECRET)
        iat = int(clock.now.timestamp())
        claims = codec.verify(self._encode(sub="alice", iss=codec.issuer, iat=iat, exp=iat + 600, scope="user.read"))
        assert claims.subject == "alice"
        assert claims.authorities == frozenset({"user.read"})


class TestAccessTokenRejection:
    def test_tampered_payload(self, codec: AccessTokenCodec) -> None:
        token, _ = codec.issue("alice", ["ROLE_USER"])
        header, payload, signature = token.split(".")
        forged, _ = AccessTokenCodec("x" * 40, codec.issuer).issue("alice", ["ROLE_ADMIN"])
        assert codec.verify(f"{header}.{forged.split('.')[1]}.{signature}") is None

    def test_wrong_signing_key(self, codec: AccessTokenCodec, make_codec) -> None:
        other = make_codec(secret="another-signing-key-0123456789abcdef")
        token, _ = other.issue("alice", [])
        assert codec.verify(token) is None

    def test_wrong_issuer(self, codec: AccessTokenCodec, make_codec) -> None:
        other = make_codec(issuer="someone-else")
        token, _ = other.issue("alice", [])
        assert codec.verify(token) is None

    def test_alg_none_is_rejected(self, codec: AccessTokenCodec) -> None:
        token, _ = codec.issue("alice", [])
        header, payload, _sig = token.split(".")
        unsigned_header = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0"  # {"alg":"none","typ":"JWT"}
        assert codec.verify(f"{unsigned_header}.{payload}.") is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c", "Bearer x.y.z", None, 12345])
    def test_malformed_input_never_raises(self, codec: AccessTokenCodec, garbage) -> None:
        assert codec.verify(garbage) is None


class TestCodecConstruction:
    def test_short_secret_fails_fast(self) -> None:
        with pytest.raises(ValueError):
            AccessTokenCodec("too-short", "aaa-test")

    def test_non_positive_ttl_fails_fast(self) -> None:
        with pytest.raises(ValueError):
            AccessTokenCodec("k" * 32, "aaa-test", ttl=timedelta(0))

    def test_empty_issuer_fails_fast(self) -> None:
        with pytest.raises(ValueError):
            AccessTokenCodec("k" * 32, "")


class TestScopeEncoding:
    def test_encode_is_deterministic(self) -> None:
        assert encode_scope(["b", "a", "b"]) == "a b"
        assert encode_scope([]) == ""

    def test_decode_ignores_non_strings(self) -> None:
        assert decode_scope(None) == frozenset()
        assert decode_scope(["a"]) == frozenset()
        assert decode_scope("a  b") == frozenset({"a", "b"})


class TestRefreshTokenPrimitives:
    def test_format_has_prefix_and_256_bits(self) -> None:
        raw = generate_refresh_token()
        assert raw.startswith("rt_")
        assert len(raw) == 3 + 43

    def test_tokens_are_unique(self) -> None:
        assert len({generate_refresh_token() for _ in range(200)}) == 200

    def test_hash_is_deterministic_and_keyed(self) -> None:
        raw = generate_refresh_token()
        assert hash_refresh_token(raw, "key-one") == hash_refresh_token(raw, "key-one")
        assert hash_refresh_token(raw, "key-one") != hash_refresh_token(raw, "key-two")
        assert len(hash_refresh_token(raw, "key-one")) == 64
        assert raw not in hash_refresh_token(raw, "key-one")
