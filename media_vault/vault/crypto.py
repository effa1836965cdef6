"""
Vault Crypto Core — Key derivation, authenticated encryption and hashing.

Every encrypted payload shares one binary layout:

    [salt 32B][iv 16B][authTag 16B][ciphertext ...]

- Passphrase layer: PBKDF2-HMAC-SHA256(passphrase, salt) → AES-256-GCM
- Key layer: HKDF-SHA256(vault_key, salt, "mediavault-blob") → AES-256-GCM

Security Note:
    Never log plaintext, ciphertext, passphrases or keys.
    Salt and IV are drawn from the OS CSPRNG on every call; two encryptions
    of the same plaintext under the same passphrase never share bytes.
"""
import os
import hmac
import uuid
import base64
import string
import hashlib
import secrets
import binascii
import logging
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionFailed, InvalidBufferLength
from .config import MIN_KDF_ITERATIONS

logger = logging.getLogger("mediavault.vault")

SALT_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
HEADER_SIZE = SALT_SIZE + IV_SIZE + TAG_SIZE
PBKDF2_ITERATIONS = MIN_KDF_ITERATIONS

_BLOB_INFO = b"mediavault-blob"
_PASSWORD_ALPHABET = (
    string.ascii_letters + string.digits + "!@#$%^&*()_+-=[]{}|;:,.<>?"
)

Secret = Union[str, bytes, bytearray]


def _as_bytes(value: Secret) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    """Return 32 random bytes from the OS CSPRNG."""
    return secrets.token_bytes(SALT_SIZE)


def generate_key() -> bytes:
    """Return a random 32-byte symmetric key."""
    return secrets.token_bytes(KEY_LENGTH)


def generate_uuid() -> str:
    """Return a random (v4) UUID string."""
    return str(uuid.uuid4())


def generate_secure_password(length: int = 32) -> str:
    """Generate a random password drawn from letters, digits and symbols.

    Args:
        length: Number of characters.

    Raises:
        ValueError: If length is not positive.
    """
    if length < 1:
        raise ValueError("Password length must be positive")
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def generate_sha256(data: Secret) -> str:
    """Return the hex SHA-256 digest of data."""
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def constant_time_compare(a: Secret, b: Secret) -> bool:
    """Compare two values without leaking where they differ.

    Unequal lengths return False without inspecting content.
    """
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    passphrase: Secret,
    salt: bytes,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """Derive a 32-byte key using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: User secret.
        salt: Random salt, normally 32 bytes.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(_as_bytes(passphrase))


def _blob_key(key: Secret, salt: bytes) -> bytes:
    """Per-blob key from a high-entropy key and the blob salt."""
    key = _as_bytes(key)
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Key must be {KEY_LENGTH} bytes for AES-256")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=_BLOB_INFO,
    )
    return hkdf.derive(key)


# ---------------------------------------------------------------------------
# Blob layout
# ---------------------------------------------------------------------------

def _seal(key: bytes, salt: bytes, plaintext: bytes) -> bytes:
    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, bytes(plaintext), None)
    # AESGCM appends the tag; the stored layout keeps it ahead of the ciphertext.
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return salt + iv + tag + ciphertext


def _split(blob: bytes) -> tuple[bytes, bytes, bytes, bytes]:
    if len(blob) < HEADER_SIZE:
        raise InvalidBufferLength()
    blob = bytes(blob)
    salt = blob[:SALT_SIZE]
    iv = blob[SALT_SIZE:SALT_SIZE + IV_SIZE]
    tag = blob[SALT_SIZE + IV_SIZE:HEADER_SIZE]
    return salt, iv, tag, blob[HEADER_SIZE:]


def _open(key: bytes, iv: bytes, tag: bytes, ciphertext: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise DecryptionFailed() from None


# ---------------------------------------------------------------------------
# Passphrase encryption
# ---------------------------------------------------------------------------

def encrypt_buffer(plaintext: bytes, passphrase: Secret) -> bytes:
    """Encrypt a buffer with a key derived from passphrase.

    Args:
        plaintext: Data to encrypt, may be empty.
        passphrase: Secret used for PBKDF2 derivation.

    Returns:
        EncryptedBlob bytes: salt ‖ iv ‖ tag ‖ ciphertext.
    """
    salt = generate_salt()
    key = derive_key(passphrase, salt)
    return _seal(key, salt, plaintext)


def decrypt_buffer(blob: bytes, passphrase: Secret) -> bytes:
    """Decrypt an EncryptedBlob produced by encrypt_buffer.

    Raises:
        InvalidBufferLength: If blob is shorter than the 64-byte header.
        DecryptionFailed: If the passphrase is wrong or the blob was altered.
    """
    salt, iv, tag, ciphertext = _split(blob)
    key = derive_key(passphrase, salt)
    return _open(key, iv, tag, ciphertext)


def encrypt_string(text: str, passphrase: Secret) -> str:
    """Encrypt a string; returns the blob as base64 text."""
    return encode_blob(encrypt_buffer(text.encode("utf-8"), passphrase))


def decrypt_string(data: str, passphrase: Secret) -> str:
    """Decrypt base64 text produced by encrypt_string."""
    return _decode_text(decrypt_buffer(decode_blob(data), passphrase))


# ---------------------------------------------------------------------------
# Key encryption (vault key contexts)
# ---------------------------------------------------------------------------

def encrypt_with_key(plaintext: bytes, key: Secret) -> bytes:
    """Encrypt a buffer under a 32-byte key, same blob layout.

    The key is expanded per blob with HKDF so no two blobs share an AES key.
    """
    salt = generate_salt()
    return _seal(_blob_key(key, salt), salt, plaintext)


def decrypt_with_key(blob: bytes, key: Secret) -> bytes:
    """Decrypt a blob produced by encrypt_with_key.

    Raises:
        InvalidBufferLength: If blob is shorter than the 64-byte header.
        DecryptionFailed: If the key is wrong or the blob was altered.
    """
    salt, iv, tag, ciphertext = _split(blob)
    return _open(_blob_key(key, salt), iv, tag, ciphertext)


def encode_blob(blob: bytes) -> str:
    """Base64 text form of a blob, for storage in text columns."""
    return base64.b64encode(blob).decode("ascii")


def decode_blob(data: str) -> bytes:
    """Inverse of encode_blob; malformed text is an invalid buffer."""
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidBufferLength() from None


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionFailed() from None


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: Secret, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Hash a password with a random salt.

    Returns:
        "salt:hash", both hex encoded.
    """
    salt = generate_salt()
    digest = derive_key(password, salt, iterations)
    return f"{salt.hex()}:{digest.hex()}"


def verify_password(
    password: Secret,
    stored: str,
    iterations: int = PBKDF2_ITERATIONS,
) -> bool:
    """Check a password against a "salt:hash" value from hash_password.

    Malformed stored values never verify.
    """
    try:
        salt_hex, hash_hex = stored.split(":", 1)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except (AttributeError, ValueError):
        logger.warning("Rejected malformed password hash")
        return False
    if not salt:
        return False
    candidate = derive_key(password, salt, iterations)
    return constant_time_compare(candidate, expected)
