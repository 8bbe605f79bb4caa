"""
Tests for auth/credentials.py -- bcrypt password hashing.

Covers:
  - hash/verify round trip and wrong-password rejection
  - salting: two hashes of the same password differ
  - the configured cost factor is embedded in the hash
  - 72-byte limit: hash() refuses, verify() returns False
  - a malformed stored hash raises CorruptHashError, never returns False
  - verify_dummy() runs without a real principal
"""

import pytest

from auth.credentials import MAX_PASSWORD_BYTES, CredentialStore
from auth.errors import CorruptHashError


def test_verify_accepts_the_original_password(credentials: CredentialStore) -> None:
    stored = credentials.hash("correct horse battery")
    assert credentials.verify("correct horse battery", stored) is True


def test_verify_rejects_a_different_password(credentials: CredentialStore) -> None:
    stored = credentials.hash("correct horse battery")
    assert credentials.verify("Correct horse battery", stored) is False
    assert credentials.verify("", stored) is False


def test_same_password_hashes_differently(credentials: CredentialStore) -> None:
    assert credentials.hash("same-password") != credentials.hash("same-password")


def test_hash_never_contains_plaintext(credentials: CredentialStore) -> None:
    assert "plain-text-secret" not in credentials.hash("plain-text-secret")


def test_cost_factor_is_embedded(credentials: CredentialStore) -> None:
    stored = credentials.hash("whatever-pass")
    # bcrypt modular crypt format: $2b$<rounds>$<salt+digest>
    assert stored.split("$")[2] == "04"


def test_hash_refuses_passwords_over_72_bytes(credentials: CredentialStore) -> None:
    with pytest.raises(ValueError):
        credentials.hash("x" * (MAX_PASSWORD_BYTES + 1))


def test_multibyte_passwords_are_measured_in_bytes(credentials: CredentialStore) -> None:
    # 25 three-byte characters = 75 bytes
    with pytest.raises(ValueError):
        credentials.hash("€" * 25)


def test_verify_returns_false_for_overlong_input(credentials: CredentialStore) -> None:
    stored = credentials.hash("x" * MAX_PASSWORD_BYTES)
    assert credentials.verify("x" * (MAX_PASSWORD_BYTES + 1), stored) is False


def test_malformed_hash_raises_corrupt_hash_error(credentials: CredentialStore) -> None:
    with pytest.raises(CorruptHashError):
        credentials.verify("anything", "not-a-bcrypt-hash")


def test_verify_dummy_does_not_raise(credentials: CredentialStore) -> None:
    credentials.verify_dummy("some-guess")
    credentials.verify_dummy("")
