"""Signed short-lived capabilities for decrypted media access."""

from .issuer import CapabilityIssuer, CapabilityPurpose, CapabilityStatus
from .cache import CapabilityCache, cache_key

__all__ = [
    "CapabilityIssuer",
    "CapabilityPurpose",
    "CapabilityStatus",
    "CapabilityCache",
    "cache_key",
]
