import pytest

from app.config import Settings
from app.exceptions import ConfigurationError, DecryptionError
from app.services.crypto import (
    EmailCipher,
    build_cipher,
    generate_unsubscribe_token,
    generate_verification_token,
    hash_email,
    is_well_formed_token,
    validate_verification_token,
)

HOUR_MS = 60 * 60 * 1000
NOW_MS = 1_700_000_000_000


def test_hash_email_normalizes_case_and_whitespace():
    assert hash_email("  Foo@Example.COM ") == hash_email("foo@example.com")
    assert len(hash_email("foo@example.com")) == 64


def test_hash_email_differs_per_address():
    assert hash_email("a@example.com") != hash_email("b@example.com")


def test_cipher_round_trip_and_fresh_iv():
    cipher = EmailCipher("server-secret")
    first = cipher.encrypt("jane@example.com")
    second = cipher.encrypt("jane@example.com")
    assert first != second
    assert cipher.decrypt(first) == "jane@example.com"
    assert cipher.decrypt(second) == "jane@example.com"


def test_cipher_rejects_wrong_key():
    ciphertext = EmailCipher("key-one").encrypt("jane@example.com")
    with pytest.raises(DecryptionError):
        EmailCipher("key-two").decrypt(ciphertext)


def test_cipher_rejects_tampered_ciphertext():
    cipher = EmailCipher("server-secret")
    ciphertext = cipher.encrypt("jane@example.com")
    tampered = ciphertext[:-4] + ("AAAA" if not ciphertext.endswith("AAAA") else "BBBB")
    with pytest.raises(DecryptionError):
        cipher.decrypt(tampered)
    with pytest.raises(DecryptionError):
        cipher.decrypt("not-a-ciphertext")


def test_verification_token_shape():
    token = generate_verification_token(now_ms=NOW_MS)
    timestamp, random_part = token.split(".")
    assert timestamp == str(NOW_MS)
    assert len(random_part) == 32
    int(random_part, 16)


def test_unsubscribe_token_is_64_hex():
    token = generate_unsubscribe_token()
    assert len(token) == 64
    int(token, 16)
    assert token != generate_unsubscribe_token()


def test_ttl_boundary_is_inclusive():
    token = generate_verification_token(now_ms=NOW_MS)
    assert validate_verification_token(token, 24, now_ms=NOW_MS + 24 * HOUR_MS)
    assert not validate_verification_token(token, 24, now_ms=NOW_MS + 24 * HOUR_MS + 1)


def test_future_timestamps_beyond_skew_are_invalid():
    token = generate_verification_token(now_ms=NOW_MS + 60_000)
    assert validate_verification_token(token, 24, now_ms=NOW_MS)
    token = generate_verification_token(now_ms=NOW_MS + 60_001)
    assert not validate_verification_token(token, 24, now_ms=NOW_MS)


@pytest.mark.parametrize("token", ["", "short.abc", "abc.def0123456789", "1700000000000", "1700000000000.", "x" * 101])
def test_malformed_tokens_are_invalid(token):
    assert not validate_verification_token(token, 24, now_ms=NOW_MS)


def test_is_well_formed_token_bounds():
    assert is_well_formed_token("a" * 10)
    assert is_well_formed_token("a" * 100)
    assert not is_well_formed_token("a" * 9)
    assert not is_well_formed_token("a" * 101)
    assert not is_well_formed_token(None)


def test_build_cipher_uses_dev_key_only_in_development():
    dev = Settings(app_env="development", encryption_key="")
    assert build_cipher(dev).decrypt(build_cipher(dev).encrypt("x@example.com")) == "x@example.com"

    prod = Settings(app_env="development", encryption_key="")
    prod.app_env = "production"
    with pytest.raises(ConfigurationError):
        build_cipher(prod)


def test_settings_reject_missing_key_outside_development():
    with pytest.raises(ValueError):
        Settings(app_env="production", encryption_key="")


@pytest.mark.parametrize("env", ["test", "staging", "prod"])
def test_only_development_envs_may_skip_the_key(env):
    with pytest.raises(ValueError):
        Settings(app_env=env, encryption_key="")
    assert Settings(app_env=env, encryption_key="k" * 32).is_development is False
