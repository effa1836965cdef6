"""
Vault Configuration — KDF cost, capability lifetimes and vault timeouts.

Reads settings from environment variables:
    VAULT_KDF_ITERATIONS = <int, minimum 600000>
    VAULT_CAPABILITY_TTL = <seconds>
    VAULT_REFRESH_SKEW = <seconds>
    VAULT_TIMEOUT_MINUTES = <minutes>
    VAULT_PURGE_INTERVAL = <seconds>
    VAULT_MIN_PASSPHRASE = <characters>
    VAULT_UNLOCK_MAX_ATTEMPTS = <attempts per window>
    VAULT_UNLOCK_WINDOW = <seconds>

Security Note:
    Never log passphrases or key material. Only log owner ids and settings.
"""
import os
import logging

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("mediavault.vault")

# Current OWASP guidance for PBKDF2-HMAC-SHA256.
MIN_KDF_ITERATIONS = 600_000
DEFAULT_CAPABILITY_TTL = 5 * 60
DEFAULT_REFRESH_SKEW = 60
DEFAULT_VAULT_TIMEOUT = 120
DEFAULT_UNLOCK_ATTEMPTS = 10
DEFAULT_UNLOCK_WINDOW = 15 * 60


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable.

    Raises:
        ValueError: If the value is set but is not a valid integer.
    """
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=MIN_KDF_ITERATIONS, ge=MIN_KDF_ITERATIONS)
    capability_ttl: int = Field(default=DEFAULT_CAPABILITY_TTL, ge=30, le=3600)
    refresh_skew: int = Field(default=DEFAULT_REFRESH_SKEW, ge=0)
    vault_timeout: int = Field(default=DEFAULT_VAULT_TIMEOUT, ge=5, le=480)
    purge_interval: int = Field(default=300, ge=1)
    min_passphrase_length: int = Field(default=8, ge=8)
    unlock_max_attempts: int = Field(default=DEFAULT_UNLOCK_ATTEMPTS, ge=1)
    unlock_window: int = Field(default=DEFAULT_UNLOCK_WINDOW, ge=1)

    @model_validator(mode="after")
    def validate_refresh_skew(self) -> "VaultConfig":
        """Clients must refresh a capability before it expires."""
        if self.refresh_skew >= self.capability_ttl:
            raise ValueError(
                f"refresh_skew ({self.refresh_skew}s) must be shorter than "
                f"capability_ttl ({self.capability_ttl}s)"
            )
        return self

    @property
    def vault_timeout_seconds(self) -> int:
        return self.vault_timeout * 60

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        config = cls(
            kdf_iterations=_env_int("VAULT_KDF_ITERATIONS", MIN_KDF_ITERATIONS),
            capability_ttl=_env_int("VAULT_CAPABILITY_TTL", DEFAULT_CAPABILITY_TTL),
            refresh_skew=_env_int("VAULT_REFRESH_SKEW", DEFAULT_REFRESH_SKEW),
            vault_timeout=_env_int("VAULT_TIMEOUT_MINUTES", DEFAULT_VAULT_TIMEOUT),
            purge_interval=_env_int("VAULT_PURGE_INTERVAL", 300),
            min_passphrase_length=_env_int("VAULT_MIN_PASSPHRASE", 8),
            unlock_max_attempts=_env_int(
                "VAULT_UNLOCK_MAX_ATTEMPTS", DEFAULT_UNLOCK_ATTEMPTS
            ),
            unlock_window=_env_int("VAULT_UNLOCK_WINDOW", DEFAULT_UNLOCK_WINDOW),
        )
        logger.debug(
            "Vault config loaded: kdf_iterations=%d capability_ttl=%ds "
            "vault_timeout=%dmin",
            config.kdf_iterations, config.capability_ttl, config.vault_timeout,
        )
        return config
