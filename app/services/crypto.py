"""Crypto primitives: dedup hashing, email encryption at rest, opaque tokens."""
import base64
import hashlib
import logging
import secrets
import time

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import Settings
from app.exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

# Fallback secret for development only
DEV_ENCRYPTION_KEY = "dev-key-32-chars-for-testing-only"

KDF_ITERATIONS = 100_000
TOKEN_MIN_LENGTH = 10
TOKEN_MAX_LENGTH = 100
# Tolerated clock skew for verification token timestamps in the future
FUTURE_SKEW_MS = 60_000


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_email(email: str) -> str:
    """SHA-256 of the normalized email. Used for lookup/dedup only, never reversed."""
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()


class EmailCipher:
    """Authenticated symmetric encryption (Fernet) keyed by a server-held secret."""

    def __init__(self, secret: str, salt: str = "waitlist-email-encryption"):
        if not secret:
            raise ConfigurationError("Encryption key is empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        # Fernet draws a fresh IV per call, so equal plaintexts never share a ciphertext.
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError, AttributeError) as e:
            raise DecryptionError(
                "Failed to decrypt data",
                details=f"{type(e).__name__}: invalid key or corrupted data",
            ) from None


def build_cipher(settings: Settings) -> EmailCipher:
    """Cipher for the configured key. Only development may fall back to the dev key."""
    if settings.encryption_key:
        return EmailCipher(settings.encryption_key, settings.encryption_salt)
    if not settings.is_development:
        raise ConfigurationError("ENCRYPTION_KEY environment variable is required outside development")
    logger.warning("ENCRYPTION_KEY not set; using the development key. Never run like this in production.")
    return EmailCipher(DEV_ENCRYPTION_KEY, settings.encryption_salt)


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_verification_token(now_ms: int | None = None) -> str:
    """'{unix-ms}.{random-hex}'. The timestamp is plaintext and forgeable: a freshness hint only."""
    ts = _now_ms() if now_ms is None else now_ms
    return f"{ts}.{secrets.token_hex(16)}"


def generate_unsubscribe_token() -> str:
    return secrets.token_hex(32)


def is_well_formed_token(token) -> bool:
    return isinstance(token, str) and TOKEN_MIN_LENGTH <= len(token) <= TOKEN_MAX_LENGTH


def validate_verification_token(token: str, max_age_hours: int = 24, now_ms: int | None = None) -> bool:
    """Freshness gate. Valid while age <= TTL (inclusive boundary); never proof of existence."""
    if not is_well_formed_token(token):
        return False
    timestamp_str, sep, random_part = token.partition(".")
    if not sep or not random_part or not timestamp_str.isdigit():
        return False
    timestamp = int(timestamp_str)
    now = _now_ms() if now_ms is None else now_ms
    age = now - timestamp
    if age < -FUTURE_SKEW_MS:
        return False
    return age <= max_age_hours * 60 * 60 * 1000
