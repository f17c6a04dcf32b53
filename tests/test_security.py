"""
tests/test_security.py -- Passphrase hashing, credential checks, bearer parsing.

Covers:
  - Hash determinism under normalization, bcrypt and legacy SHA-256 salts
  - load_user()/authenticate() happy path and every rejection branch
  - Static bearer allow-list and Authorization header parsing
"""

from __future__ import annotations

import hashlib

import pytest

from auth.models import User, UserStatus
from auth.security import (
    authenticate,
    extract_bearer,
    generate_code,
    generate_salt,
    hash_new_passphrase,
    hash_passphrase,
    is_static_bearer,
    load_user,
    normalize_passphrase,
    verify_passphrase,
)

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("variant", ["correct horse", "Correct Horse", "  CORRECT HORSE\t", "correct horse\n"])
def test_hash_ignores_case_and_surrounding_whitespace(variant: str) -> None:
    salt = generate_salt()
    assert hash_passphrase(variant, salt) == hash_passphrase("correct horse", salt)
    assert hash_passphrase(variant, salt) == hash_passphrase(normalize_passphrase(variant), salt)


def test_different_passphrases_hash_differently() -> None:
    salt = generate_salt()
    assert hash_passphrase("correct horse", salt) != hash_passphrase("battery staple", salt)


def test_same_passphrase_different_salts_differ() -> None:
    assert hash_passphrase("correct horse", generate_salt()) != hash_passphrase("correct horse", generate_salt())


def test_new_hash_is_bcrypt() -> None:
    pass_hash, pass_salt = hash_new_passphrase("correct horse")
    assert pass_salt.startswith("$2")
    assert pass_hash.startswith(pass_salt[:7])
    assert verify_passphrase("Correct Horse ", pass_hash, pass_salt)


def test_legacy_salt_uses_single_sha256() -> None:
    salt = "0b6e0ae2-5f3c-4c53-9d0e-5b0f6c7b0d11"
    expected = hashlib.sha256(("correct horse" + salt).encode("utf-8")).hexdigest()
    assert hash_passphrase(" Correct Horse ", salt) == expected
    assert verify_passphrase("correct horse", expected, salt)
    assert not verify_passphrase("wrong", expected, salt)


def test_verify_rejects_malformed_bcrypt_salt() -> None:
    assert verify_passphrase("correct horse", "whatever", "$2b$not-a-salt") is False


def test_generate_code_is_random_and_url_safe() -> None:
    codes = {generate_code() for _ in range(50)}
    assert len(codes) == 50
    assert all(len(c) >= 43 and "/" not in c and "+" not in c for c in codes)


# ---------------------------------------------------------------------------
# load_user / authenticate
# ---------------------------------------------------------------------------


def test_load_user_with_right_and_wrong_passphrase(db, user_store, make_user) -> None:
    user = make_user(email="a@b.com", passphrase="correct horse")
    with db.transaction() as conn:
        found = load_user(conn, user_store, user.pin, "correct horse")
        missed = load_user(conn, user_store, user.pin, "wrong")
    assert found is not None
    assert found.user_ref == user.user_ref
    assert missed is None


def test_load_user_rejects_inactive_users(db, user_store, make_user) -> None:
    unverified = make_user(email="u@b.com", status=UserStatus.UNVERIFIED)
    blocked = make_user(email="x@b.com", status=UserStatus.BLOCKED)
    with db.transaction() as conn:
        assert load_user(conn, user_store, unverified.pin, "correct horse") is None
        assert load_user(conn, user_store, blocked.pin, "correct horse") is None


def test_load_user_unknown_pin(db, user_store, make_user) -> None:
    user = make_user()
    other_pin = 1000 if user.pin != 1000 else 1001
    with db.transaction() as conn:
        assert load_user(conn, user_store, other_pin, "correct horse") is None


def test_authenticate_by_email_is_case_insensitive(db, user_store, make_user) -> None:
    user = make_user(email="a@b.com")
    with db.transaction() as conn:
        found = authenticate(conn, user_store, "  A@B.COM ", "correct horse")
    assert found is not None
    assert found.user_ref == user.user_ref


def test_authenticate_by_pin_string(db, user_store, make_user) -> None:
    user = make_user()
    with db.transaction() as conn:
        assert authenticate(conn, user_store, str(user.pin), "CORRECT HORSE") is not None


@pytest.mark.parametrize("identifier,passphrase", [("", "correct horse"), ("a@b.com", ""), ("not-a-pin", "x")])
def test_authenticate_bad_input_returns_none(db, user_store, make_user, identifier, passphrase) -> None:
    make_user()
    with db.transaction() as conn:
        assert authenticate(conn, user_store, identifier, passphrase) is None


def test_authenticate_accepts_legacy_rows(db, user_store) -> None:
    salt = "legacy-salt"
    legacy_hash = hashlib.sha256(("old phrase" + salt).encode("utf-8")).hexdigest()
    with db.transaction() as conn:
        user = user_store.create_user(
            conn,
            User(email="legacy@b.com", pass_hash=legacy_hash, pass_salt=salt, status=UserStatus.ACTIVE),
        )
        assert authenticate(conn, user_store, str(user.pin), "Old Phrase") is not None


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


def test_static_bearer_allow_list() -> None:
    allowed = ["alpha", "beta"]
    assert is_static_bearer("beta", allowed)
    assert not is_static_bearer("gamma", allowed)
    assert not is_static_bearer(None, allowed)
    assert not is_static_bearer("alpha", [])


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected) -> None:
    assert extract_bearer(header) == expected
