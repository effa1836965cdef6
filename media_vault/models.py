"""Data records shared by the vault, the capability issuer and the client cache."""
from datamodel import BaseModel


class VaultCredentials(BaseModel):
    """Stored verification material for one owner's vault.

    Holds the passphrase hash ("salt:hash") checked before unlocking and the
    salt used to derive the working vault key. Neither value is secret.
    """
    owner_id: str
    passphrase_hash: str
    key_salt: str
    kdf_iterations: int = 600000


class CapabilityToken(BaseModel):
    """Short-lived credential authorizing one fetch type for one resource."""
    resource_id: str
    owner_id: str
    signature: str
    issued_at: float
    expires_at: float
    purpose: str = 'media'

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CapabilityCacheEntry(BaseModel):
    """Client-side cached signature for a resource slot."""
    resource_id: str
    signature: str
    expires_at: float
