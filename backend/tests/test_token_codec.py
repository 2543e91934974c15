"""
Tests for access token encoding and verification.
"""

import base64
import json

import pytest

from services.errors import (
    ClaimsError,
    ExpiredError,
    FormatError,
    MalformedError,
    SignatureError,
)
from services.token_codec import TokenCodec, decode, encode
from conftest import ACCESS_TTL, TEST_ISSUER, TEST_SECRET_KEY


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class TestEncodeDecode:
    """Round-trip and structural checks."""

    def test_round_trip_returns_claims(self, codec):
        claims = {"sub": "42", "exp": codec.now() + 60, "roles": ["admin", "user"], "n": 1}
        token = codec.encode(claims)

        assert codec.decode(token) == claims

    def test_header_is_hs256_jwt(self, codec):
        token = codec.encode({"exp": codec.now() + 60})
        header = json.loads(_unb64(token.split(".")[0]))

        assert header["alg"] == "HS256"
        assert header["typ"] == "JWT"

    def test_wrong_key_is_signature_error(self, codec):
        token = codec.encode({"exp": codec.now() + 60})

        with pytest.raises(SignatureError):
            decode(token, "some-other-key", now=codec.now())

    @pytest.mark.parametrize(
        "token",
        ["", "abc", "a.b", "a.b.c.d", "..", "a..c", "invalid.jwt.token"],
    )
    def test_structurally_invalid_tokens_are_malformed(self, codec, token):
        with pytest.raises(MalformedError):
            codec.decode(token)

    def test_non_hs256_algorithm_is_rejected(self, codec):
        header = _b64(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        payload = _b64(json.dumps({"sub": "42", "exp": codec.now() + 60}).encode())

        with pytest.raises(FormatError):
            codec.decode(f"{header}.{payload}.c2lnbmF0dXJl")

    def test_missing_exp_is_claims_error(self, codec):
        token = encode({"sub": "42"}, TEST_SECRET_KEY)

        with pytest.raises(ClaimsError):
            codec.decode(token)


class TestTamperRejection:
    """Every signature byte matters."""

    def test_flipping_any_signature_byte_fails(self, codec):
        token = codec.issue_access_token(42, {"roles": ["user"]}).token
        header, payload, signature = token.split(".")
        raw = _unb64(signature)

        for index in range(len(raw)):
            tampered = bytearray(raw)
            tampered[index] ^= 0xFF
            forged = f"{header}.{payload}.{_b64(bytes(tampered))}"

            with pytest.raises(SignatureError):
                codec.decode(forged)

    def test_changing_any_signature_character_fails(self, codec):
        token = codec.issue_access_token(42).token
        header, payload, signature = token.split(".")
        alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"

        for index, original in enumerate(signature):
            for replacement in alphabet:
                if replacement == original:
                    continue
                forged_signature = signature[:index] + replacement + signature[index + 1:]

                with pytest.raises(SignatureError):
                    codec.decode(f"{header}.{payload}.{forged_signature}")

    def test_padded_signature_fails(self, codec):
        token = codec.issue_access_token(42).token

        with pytest.raises(SignatureError):
            codec.decode(token + "=")

    def test_modified_payload_fails(self, codec):
        token = codec.issue_access_token(42).token
        header, _, signature = token.split(".")
        payload = _b64(json.dumps({"sub": "1", "exp": codec.now() + 60}).encode())

        with pytest.raises(SignatureError):
            codec.decode(f"{header}.{payload}.{signature}")


class TestExpiry:
    def test_token_expired_one_second_ago_fails(self, codec):
        token = codec.encode({"sub": "42", "exp": codec.now() - 1})

        with pytest.raises(ExpiredError):
            codec.decode(token)

    def test_exp_equal_to_now_is_expired(self, codec):
        token = codec.encode({"sub": "42", "exp": codec.now()})

        with pytest.raises(ExpiredError):
            codec.decode(token)

    def test_token_expires_when_clock_passes_ttl(self, codec, clock):
        token = codec.issue_access_token(42).token
        clock.advance(seconds=ACCESS_TTL - 1)
        assert codec.verify_subject(token) == 42

        clock.advance(seconds=1)
        with pytest.raises(ExpiredError):
            codec.verify_subject(token)


class TestIssueAccessToken:
    def test_claims(self, codec):
        access = codec.issue_access_token(42, {"roles": ["user"]})

        assert access.expires_in == ACCESS_TTL
        assert access.claims["sub"] == "42"
        assert access.claims["iss"] == TEST_ISSUER
        assert access.claims["exp"] - access.claims["iat"] == ACCESS_TTL
        assert access.claims["roles"] == ["user"]
        assert access.claims["jti"]

    def test_each_token_has_unique_jti(self, codec):
        first = codec.issue_access_token(42)
        second = codec.issue_access_token(42)

        assert first.claims["jti"] != second.claims["jti"]
        assert first.token != second.token

    def test_extra_claims_cannot_override_reserved(self, codec):
        access = codec.issue_access_token(42, {"sub": "1", "exp": 0, "tenant": "acme"})

        assert access.claims["sub"] == "42"
        assert access.claims["exp"] > codec.now()
        assert access.claims["tenant"] == "acme"

    def test_verify_subject_returns_owner_id(self, codec):
        assert codec.verify_subject(codec.issue_access_token(42).token) == 42

    def test_verify_subject_rejects_other_issuer(self, codec, clock):
        other = TokenCodec(TEST_SECRET_KEY, issuer="someone-else", access_ttl=60, clock=clock)

        with pytest.raises(ClaimsError):
            codec.verify_subject(other.issue_access_token(42).token)

    def test_verify_subject_rejects_non_numeric_subject(self, codec):
        token = codec.encode({"iss": TEST_ISSUER, "sub": "alice", "exp": codec.now() + 60})

        with pytest.raises(ClaimsError):
            codec.verify_subject(token)

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("", issuer=TEST_ISSUER, access_ttl=60)
