"""Exceptions raised by the vault content-protection core."""


class VaultError(Exception):
    """Base exception for vault operations."""


class CryptoError(VaultError):
    """Base exception for cryptographic operations."""


class DecryptionFailed(CryptoError):
    """Authentication tag mismatch.

    Wrong passphrase and tampered ciphertext raise the same error with the
    same message.
    """

    def __init__(self, message: str = "Decryption failed"):
        super().__init__(message)


class InvalidBufferLength(CryptoError):
    """Encrypted blob is shorter than its fixed header."""

    def __init__(self, message: str = "Invalid encrypted buffer length"):
        super().__init__(message)


class VaultLocked(VaultError):
    """No live key context is available for the requested operation."""

    def __init__(self, message: str = "Vault is locked"):
        super().__init__(message)


class InvalidPassphrase(VaultError):
    """Supplied passphrase does not match the stored vault hash."""

    def __init__(self, message: str = "Invalid vault passphrase"):
        super().__init__(message)


class CapabilityError(VaultError):
    """Base exception for capability validation failures."""

    reason: str = "denied"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class SignatureUnknown(CapabilityError):
    reason = "unknown"


class SignatureExpired(CapabilityError):
    reason = "expired"


class SignatureOwnerMismatch(CapabilityError):
    reason = "owner_mismatch"


class CapabilityDenied(CapabilityError):
    """Server refused to issue or honour a capability (client side)."""
    reason = "denied"
