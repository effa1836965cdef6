"""
CapabilityIssuer — Server-side signed media capabilities.

A capability is a random signature mapped server-side to
``(resource_id, owner_id, purpose, expires_at)``. Browsers present only the
signature in media URLs; the vault key and the vault access token never
leave the session.

Security Note:
    Signatures are random, not derived from key material. Never log a full
    signature; ``_fingerprint`` gives a short prefix for correlation.
"""
import time
import secrets
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from ..exceptions import (
    SignatureExpired,
    SignatureOwnerMismatch,
    SignatureUnknown,
    VaultLocked,
)
from ..models import CapabilityToken
from ..vault.config import DEFAULT_CAPABILITY_TTL
from ..vault.context import VaultKeyContext

logger = logging.getLogger("mediavault.capability")

SIGNATURE_BYTES = 32


class CapabilityPurpose(str, Enum):
    MEDIA = "media"
    THUMBNAIL = "thumbnail"


class CapabilityStatus(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    UNKNOWN = "unknown"
    OWNER_MISMATCH = "owner_mismatch"


_STATUS_ERRORS = {
    CapabilityStatus.EXPIRED: SignatureExpired,
    CapabilityStatus.UNKNOWN: SignatureUnknown,
    CapabilityStatus.OWNER_MISMATCH: SignatureOwnerMismatch,
}


def _fingerprint(signature: str) -> str:
    return f"{signature[:6]}…" if signature else "-"


class CapabilityIssuer:
    """Issues, validates and revokes capability tokens.

    Args:
        ttl: Capability lifetime in seconds (5 minutes by default).
        clock: Time source, ``time.time`` by default.
    """

    def __init__(
        self,
        ttl: int = DEFAULT_CAPABILITY_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._tokens: dict[str, CapabilityToken] = {}
        self._by_owner: dict[str, set[str]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    @property
    def ttl(self) -> int:
        return self._ttl

    def _drop(self, signature: str) -> Optional[CapabilityToken]:
        token = self._tokens.pop(signature, None)
        if token is not None:
            owned = self._by_owner.get(token.owner_id)
            if owned is not None:
                owned.discard(signature)
                if not owned:
                    del self._by_owner[token.owner_id]
        return token

    def issue(
        self,
        resource_id: str,
        owner_id: str,
        context: VaultKeyContext,
        purpose: CapabilityPurpose = CapabilityPurpose.MEDIA,
    ) -> CapabilityToken:
        """Mint a capability for one resource and fetch type.

        Raises:
            VaultLocked: If context is not unlocked or belongs to another owner.
        """
        owner_id = str(owner_id)
        if context is None or not context.is_unlocked or context.owner_id != owner_id:
            logger.warning(
                "Capability refused, vault locked: owner=%s resource=%s",
                owner_id, resource_id,
            )
            raise VaultLocked()
        purpose = CapabilityPurpose(purpose)
        now = self._clock()
        token = CapabilityToken(
            resource_id=str(resource_id),
            owner_id=owner_id,
            signature=secrets.token_urlsafe(SIGNATURE_BYTES),
            issued_at=now,
            expires_at=now + self._ttl,
            purpose=purpose.value,
        )
        with self._lock:
            self._tokens[token.signature] = token
            self._by_owner.setdefault(owner_id, set()).add(token.signature)
        logger.debug(
            "Capability issued: owner=%s resource=%s purpose=%s sig=%s ttl=%ds",
            owner_id, resource_id, purpose.value,
            _fingerprint(token.signature), self._ttl,
        )
        return token

    def validate(
        self,
        signature: Optional[str],
        resource_id: str,
        requester_id: str,
        purpose: CapabilityPurpose = CapabilityPurpose.MEDIA,
    ) -> CapabilityStatus:
        """Check a presented signature.

        Order: lookup, expiry, resource and purpose, owner. The first failing
        check decides the status. Expired entries are dropped.
        """
        if not signature:
            return CapabilityStatus.UNKNOWN
        purpose = CapabilityPurpose(purpose)
        with self._lock:
            token = self._tokens.get(signature)
            if token is None:
                status = CapabilityStatus.UNKNOWN
            elif token.is_expired(self._clock()):
                self._drop(signature)
                status = CapabilityStatus.EXPIRED
            elif token.resource_id != str(resource_id) or token.purpose != purpose.value:
                status = CapabilityStatus.UNKNOWN
            elif token.owner_id != str(requester_id):
                status = CapabilityStatus.OWNER_MISMATCH
            else:
                status = CapabilityStatus.OK
        if status is not CapabilityStatus.OK:
            logger.info(
                "Capability rejected: reason=%s requester=%s resource=%s "
                "purpose=%s sig=%s",
                status.value, requester_id, resource_id, purpose.value,
                _fingerprint(signature),
            )
        return status

    def authorize(
        self,
        signature: Optional[str],
        resource_id: str,
        requester_id: str,
        purpose: CapabilityPurpose = CapabilityPurpose.MEDIA,
    ) -> CapabilityToken:
        """Validate and return the token, raising on any failure.

        Raises:
            SignatureUnknown, SignatureExpired, SignatureOwnerMismatch
        """
        status = self.validate(signature, resource_id, requester_id, purpose)
        if status is not CapabilityStatus.OK:
            raise _STATUS_ERRORS[status]()
        with self._lock:
            token = self._tokens.get(signature)
        if token is None:
            # revoked between validation and lookup
            raise SignatureUnknown()
        return token

    def revoke(self, signature: str) -> bool:
        with self._lock:
            return self._drop(signature) is not None

    def revoke_all(self, owner_id: str) -> int:
        """Invalidate every outstanding capability of an owner.

        Returns:
            Number of revoked capabilities.
        """
        owner_id = str(owner_id)
        with self._lock:
            signatures = self._by_owner.pop(owner_id, set())
            for signature in signatures:
                self._tokens.pop(signature, None)
        logger.info(
            "Capabilities revoked: owner=%s count=%d", owner_id, len(signatures),
        )
        return len(signatures)

    def purge_expired(self) -> int:
        """Drop expired capabilities; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                sig for sig, token in self._tokens.items() if token.is_expired(now)
            ]
            for signature in expired:
                self._drop(signature)
        if expired:
            logger.debug("Purged %d expired capabilities", len(expired))
        return len(expired)

    def on_vault_locked(self, context: VaultKeyContext, reason: str) -> None:
        """Lock listener: revoke the owner's capabilities."""
        self.revoke_all(context.owner_id)
