"""
Tests for opaque refresh token generation and hashing.
"""

import secrets
from unittest.mock import patch

import pytest

from services.errors import RandomSourceError
from services.token_hasher import TokenHasher, generate_opaque_token, hash_token


class TestGenerateOpaqueToken:
    def test_default_length_is_32_bytes_hex(self):
        token = generate_opaque_token()

        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self):
        tokens = {generate_opaque_token(16) for _ in range(200)}
        assert len(tokens) == 200

    def test_non_positive_length_is_refused(self):
        with pytest.raises(ValueError):
            generate_opaque_token(0)

    def test_missing_random_source_is_reported(self):
        with patch.object(secrets, "token_bytes", side_effect=NotImplementedError):
            with pytest.raises(RandomSourceError):
                generate_opaque_token()


class TestHashToken:
    def test_hash_is_deterministic_hex(self):
        first = hash_token("abc", "key")

        assert first == hash_token("abc", "key")
        assert len(first) == 64
        assert first != "abc"

    def test_hash_depends_on_key(self):
        assert hash_token("abc", "key-1") != hash_token("abc", "key-2")

    def test_hasher_digest_matches_hex(self):
        hasher = TokenHasher("key")

        assert hasher.digest("abc").hex() == hasher.hash("abc")

    def test_hasher_refuses_empty_key(self):
        with pytest.raises(ValueError):
            TokenHasher("")
