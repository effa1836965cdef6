"""Media Vault.

Content-protection core for a personal media vault: authenticated
encryption, passphrase-derived vault keys held per session, and short-lived
signed capabilities for fetching decrypted media.
"""
from .version import (
    __title__,
    __description__,
    __version__,
    __author__,
    __license__,
)
from .exceptions import (
    VaultError,
    CryptoError,
    DecryptionFailed,
    InvalidBufferLength,
    VaultLocked,
    InvalidPassphrase,
    CapabilityError,
    SignatureUnknown,
    SignatureExpired,
    SignatureOwnerMismatch,
    CapabilityDenied,
)
from .models import VaultCredentials, CapabilityToken, CapabilityCacheEntry
from .vault import VaultConfig, VaultKeyContext, VaultState, setup_credentials, rewrap_vault_keys
from .capability import (
    CapabilityIssuer,
    CapabilityPurpose,
    CapabilityStatus,
    CapabilityCache,
)
from .data import VaultSession
from .mediator import MediaAccessMediator, LocalCapabilitySource
from .client import VaultClient
from .throttle import AttemptLimiter

__all__ = (
    "VaultError",
    "CryptoError",
    "DecryptionFailed",
    "InvalidBufferLength",
    "VaultLocked",
    "InvalidPassphrase",
    "CapabilityError",
    "SignatureUnknown",
    "SignatureExpired",
    "SignatureOwnerMismatch",
    "CapabilityDenied",
    "VaultCredentials",
    "CapabilityToken",
    "CapabilityCacheEntry",
    "VaultConfig",
    "VaultKeyContext",
    "VaultState",
    "setup_credentials",
    "rewrap_vault_keys",
    "CapabilityIssuer",
    "CapabilityPurpose",
    "CapabilityStatus",
    "CapabilityCache",
    "VaultSession",
    "MediaAccessMediator",
    "LocalCapabilitySource",
    "VaultClient",
    "AttemptLimiter",
)
