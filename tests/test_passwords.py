"""Tests for the argon2id password hasher wrapper."""

import pytest
from argon2.exceptions import HashingError as Argon2HashingError

from tokenwarden.service.errors import HashingError
from tokenwarden.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordHasher:
    def test_hash_is_argon2id(self, hasher):
        digest = hasher.hash("secret1")

        assert digest.startswith("$argon2id$")
        assert "secret1" not in digest

    def test_hashes_are_salted(self, hasher):
        assert hasher.hash("secret1") != hasher.hash("secret1")

    def test_verify_matches(self, hasher):
        digest = hasher.hash("secret1")

        assert hasher.verify("secret1", digest) is True
        assert hasher.verify("wrong", digest) is False

    def test_malformed_hash_is_a_mismatch(self, hasher):
        assert hasher.verify("secret1", "not-a-hash") is False
        assert hasher.verify("secret1", "") is False

    def test_cost_parameters_are_encoded(self, settings):
        digest = PasswordHasher.from_settings(settings).hash("secret1")

        assert "m=1024,t=1,p=1" in digest

    def test_library_failure_is_wrapped(self, hasher):
        class _Broken:
            def hash(self, password):
                raise Argon2HashingError("out of memory")

        hasher._hasher = _Broken()

        with pytest.raises(HashingError):
            hasher.hash("secret1")
