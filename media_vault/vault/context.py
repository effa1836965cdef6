"""
VaultKeyContext — Derived vault key bound to one unlocked session.

Lifecycle::

    LOCKED --unlock(passphrase verified)--> UNLOCKED --lock|timeout--> LOCKED

The context is owned by the caller's session object; there is no
process-wide vault state. Key users take shared access through ``key()``;
``lock()`` blocks new users, waits for in-flight ones, then zeroes the key.

Security Note:
    Never log passphrases, keys or the vault access token. A thread holding
    ``key()`` must not call ``lock()`` on the same context.
"""
import time
import logging
import threading
from enum import Enum
from typing import Any, Callable, Optional
from contextlib import contextmanager

from ..exceptions import InvalidPassphrase, VaultLocked
from ..models import VaultCredentials
from .config import DEFAULT_VAULT_TIMEOUT
from .crypto import (
    PBKDF2_ITERATIONS,
    constant_time_compare,
    decode_blob,
    decrypt_with_key,
    derive_key,
    encode_blob,
    encrypt_with_key,
    generate_key,
    generate_salt,
    generate_uuid,
    hash_password,
    verify_password,
)

logger = logging.getLogger("mediavault.vault")

LockListener = Callable[["VaultKeyContext", str], Any]


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


def setup_credentials(
    owner_id: str,
    passphrase: str,
    iterations: int = PBKDF2_ITERATIONS,
) -> VaultCredentials:
    """Build the stored verification material for a new vault.

    The passphrase hash and the key salt use independent random salts, so
    the stored hash never equals the working vault key.
    """
    return VaultCredentials(
        owner_id=str(owner_id),
        passphrase_hash=hash_password(passphrase, iterations),
        key_salt=generate_salt().hex(),
        kdf_iterations=iterations,
    )


class VaultKeyContext:
    """Per-session holder of the derived vault key.

    Args:
        owner_id: Identity of the vault owner.
        timeout: Seconds the vault stays unlocked before it locks itself.
        clock: Time source, ``time.time`` by default.
    """

    def __init__(
        self,
        owner_id: str,
        *,
        timeout: int = DEFAULT_VAULT_TIMEOUT * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.owner_id = str(owner_id)
        self._timeout = timeout
        self._clock = clock
        self._transition = threading.Lock()
        self._cond = threading.Condition(threading.Lock())
        self._state = VaultState.LOCKED
        self._closing = False
        self._readers = 0
        self._key: Optional[bytearray] = None
        self._salt: Optional[bytes] = None
        self._token: Optional[str] = None
        self._unlocked_at: Optional[float] = None
        self._expires_at: Optional[float] = None
        self._listeners: list[LockListener] = []

    def __repr__(self) -> str:
        return (
            f"<VaultKeyContext owner={self.owner_id} state={self.state.value}>"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _expired(self) -> bool:
        return (
            self._expires_at is not None
            and self._clock() >= self._expires_at
        )

    @property
    def state(self) -> VaultState:
        if self._state is VaultState.UNLOCKED and not self._closing and not self._expired():
            return VaultState.UNLOCKED
        return VaultState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        return self.state is VaultState.UNLOCKED

    @property
    def token(self) -> Optional[str]:
        """Vault access token, only while unlocked."""
        return self._token if self.is_unlocked else None

    @property
    def salt(self) -> Optional[bytes]:
        return self._salt

    @property
    def unlocked_at(self) -> Optional[float]:
        return self._unlocked_at

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at if self.is_unlocked else None

    @property
    def timeout(self) -> int:
        return self._timeout

    def verify_token(self, token: Optional[str]) -> bool:
        """Check a presented vault access token in constant time."""
        current = self.token
        if not token or current is None:
            return False
        return constant_time_compare(token, current)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_lock(self, callback: LockListener) -> LockListener:
        """Register a callback invoked as ``callback(context, reason)`` after lock."""
        self._listeners.append(callback)
        return callback

    def remove_listener(self, callback: LockListener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def unlock(
        self,
        passphrase: str,
        credentials: VaultCredentials,
    ) -> "VaultKeyContext":
        """Verify passphrase and derive the working vault key.

        Unlocking an already unlocked context verifies the passphrase and
        returns the same context without deriving a new key.

        Raises:
            InvalidPassphrase: If the passphrase does not verify.
            ValueError: If credentials belong to another owner.
        """
        if str(credentials.owner_id) != self.owner_id:
            raise ValueError("Credentials belong to a different vault owner")
        self.expire_if_due()
        with self._transition:
            iterations = credentials.kdf_iterations
            if not verify_password(passphrase, credentials.passphrase_hash, iterations):
                logger.warning("Vault unlock rejected: owner=%s", self.owner_id)
                raise InvalidPassphrase()
            if self.is_unlocked:
                logger.debug("Vault already unlocked: owner=%s", self.owner_id)
                return self
            salt = bytes.fromhex(credentials.key_salt)
            key = bytearray(derive_key(passphrase, salt, iterations))
            now = self._clock()
            with self._cond:
                self._key = key
                self._salt = salt
                self._token = generate_uuid()
                self._unlocked_at = now
                self._expires_at = now + self._timeout
                self._state = VaultState.UNLOCKED
        logger.info(
            "Vault unlocked: owner=%s timeout=%ds", self.owner_id, self._timeout,
        )
        return self

    def lock(self, reason: str = "explicit") -> bool:
        """Destroy key material and notify listeners.

        Waits for operations holding ``key()`` to finish first.

        Returns:
            True if the context was unlocked, False if already locked.
        """
        with self._transition:
            with self._cond:
                if self._state is VaultState.LOCKED:
                    return False
                self._closing = True
                while self._readers:
                    self._cond.wait()
                if self._key is not None:
                    for i in range(len(self._key)):
                        self._key[i] = 0
                self._key = None
                self._salt = None
                self._token = None
                self._expires_at = None
                self._state = VaultState.LOCKED
                self._closing = False
            listeners = list(self._listeners)
        logger.info("Vault locked: owner=%s reason=%s", self.owner_id, reason)
        for callback in listeners:
            try:
                callback(self, reason)
            except Exception:
                logger.exception(
                    "Lock listener %r failed: owner=%s", callback, self.owner_id,
                )
        return True

    def expire_if_due(self) -> bool:
        """Lock the context if its timeout has passed."""
        if self._state is VaultState.UNLOCKED and self._expired():
            return self.lock(reason="timeout")
        return False

    # ------------------------------------------------------------------
    # Key access
    # ------------------------------------------------------------------

    @contextmanager
    def key(self):
        """Shared access to the vault key.

        Raises:
            VaultLocked: If the context is locked, locking or timed out.
        """
        self.expire_if_due()
        with self._cond:
            if self._state is not VaultState.UNLOCKED or self._closing or self._key is None:
                raise VaultLocked()
            self._readers += 1
            key = bytes(self._key)
        try:
            yield key
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    def encrypt(self, plaintext: bytes) -> bytes:
        with self.key() as key:
            return encrypt_with_key(plaintext, key)

    def decrypt(self, blob: bytes) -> bytes:
        with self.key() as key:
            return decrypt_with_key(blob, key)

    # ------------------------------------------------------------------
    # Envelope helpers
    # ------------------------------------------------------------------

    def wrap_key(self, file_key: bytes) -> str:
        """Seal a per-file key under the vault key (base64 text)."""
        return encode_blob(self.encrypt(file_key))

    def unwrap_key(self, wrapped: str) -> bytes:
        return self.decrypt(decode_blob(wrapped))

    def seal(self, data: bytes, wrapped_key: Optional[str] = None) -> tuple[bytes, str]:
        """Encrypt media bytes under a per-file key.

        Args:
            data: Plain media bytes.
            wrapped_key: Existing wrapped file key to reuse (thumbnails of
                the same record); a new file key is generated when omitted.

        Returns:
            Tuple of (encrypted blob, wrapped file key).
        """
        if wrapped_key is None:
            file_key = generate_key()
            wrapped_key = self.wrap_key(file_key)
        else:
            file_key = self.unwrap_key(wrapped_key)
        return encrypt_with_key(data, file_key), wrapped_key

    def open(self, blob: bytes, wrapped_key: str) -> bytes:
        """Decrypt media bytes sealed by ``seal``.

        Raises:
            VaultLocked: If the context is not unlocked.
            DecryptionFailed: Wrong vault key or tampered data.
            InvalidBufferLength: Truncated blob or wrapped key.
        """
        file_key = self.unwrap_key(wrapped_key)
        return decrypt_with_key(blob, file_key)
