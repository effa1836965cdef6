"""Vault — Passphrase-derived keys and authenticated encryption of media.

Security Note (Threat Model):
    The derived vault key lives in process memory while the vault is
    unlocked and is zeroed on lock or timeout. A memory dump of the
    application process during that window could expose it. This is an
    accepted limitation; hardware-backed key storage is out of scope.
"""

from .config import VaultConfig
from .context import VaultKeyContext, VaultState, setup_credentials
from .rewrap import rewrap_vault_keys
from . import crypto

__all__ = [
    "VaultConfig",
    "VaultKeyContext",
    "VaultState",
    "setup_credentials",
    "rewrap_vault_keys",
    "crypto",
]
