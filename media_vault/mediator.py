"""
MediaAccessMediator — Turns "show decrypted media" into capability URLs.

The mediator consults the CapabilityCache, asks a capability source for a
fresh signature on a miss, and builds the fetch URL from the resource id and
signature only. Passphrases, vault keys and vault access tokens are never
part of the URL.
"""
import asyncio
import logging
from typing import Optional, Protocol, Union

from yarl import URL

from .capability.cache import CapabilityCache
from .capability.issuer import CapabilityIssuer, CapabilityPurpose
from .exceptions import VaultLocked
from .vault.context import VaultKeyContext

logger = logging.getLogger("mediavault.client")


class CapabilitySource(Protocol):
    async def request_capability(
        self, resource_id: str, purpose: CapabilityPurpose
    ) -> tuple[str, float]:
        ...

    async def lock(self) -> None:
        ...


class LocalCapabilitySource:
    """Capability source backed by an in-process issuer and key context."""

    def __init__(self, issuer: CapabilityIssuer, context: VaultKeyContext):
        self.issuer = issuer
        self.context = context

    async def request_capability(
        self, resource_id: str, purpose: CapabilityPurpose
    ) -> tuple[str, float]:
        token = self.issuer.issue(
            resource_id, self.context.owner_id, self.context, purpose,
        )
        return token.signature, token.expires_at

    async def lock(self) -> None:
        loop = asyncio.get_running_loop()
        # lock() may wait for in-flight decrypts
        await loop.run_in_executor(None, self.context.lock)
        self.issuer.revoke_all(self.context.owner_id)


class MediaAccessMediator:
    """Builds signed media and thumbnail URLs for UI components.

    Args:
        source: Where capabilities come from (local issuer or VaultClient).
        cache: Client capability cache; a fresh one is created if omitted.
        base_url: Prefix of the media routes, e.g. ``https://host/api``.
    """

    def __init__(
        self,
        source: CapabilitySource,
        cache: Optional[CapabilityCache] = None,
        base_url: Union[str, URL] = "/",
    ):
        self.source = source
        self.cache = cache if cache is not None else CapabilityCache()
        self._base = URL(str(base_url))

    def _url(self, *segments: str, signature: str, size: Optional[str] = None) -> str:
        url = self._base
        for segment in ("media", *segments):
            url = url / segment
        query = {"decrypt": "true", "sig": signature}
        if size:
            query["size"] = size
        return str(url.with_query(query))

    async def _signature(
        self,
        resource_id: str,
        purpose: CapabilityPurpose,
        variant: Optional[str] = None,
    ) -> str:
        thumbnail = purpose is CapabilityPurpose.THUMBNAIL
        signature = self.cache.get(resource_id, variant, thumbnail=thumbnail)
        if signature is not None:
            return signature
        generation = self.cache.generation
        try:
            signature, expires_at = await self.source.request_capability(
                resource_id, purpose,
            )
        except VaultLocked:
            self.cache.clear()
            raise
        stored = self.cache.set(
            resource_id, signature, expires_at, variant,
            thumbnail=thumbnail, generation=generation,
        )
        if not stored:
            # locked while the request was in flight; the signature is revoked
            logger.debug("Dropped capability issued before lock: resource=%s", resource_id)
            raise VaultLocked()
        return signature

    async def media_url(self, resource_id: str) -> str:
        """Signed URL for the decrypted media of resource_id.

        Raises:
            VaultLocked: If the vault is locked; the cache is flushed.
        """
        signature = await self._signature(resource_id, CapabilityPurpose.MEDIA)
        return self._url(str(resource_id), signature=signature)

    async def thumbnail_url(self, resource_id: str, size: Optional[str] = None) -> str:
        """Signed URL for a decrypted thumbnail; one cache slot per size."""
        signature = await self._signature(
            resource_id, CapabilityPurpose.THUMBNAIL, size,
        )
        return self._url(str(resource_id), "thumbnail", signature=signature, size=size)

    async def lock(self) -> None:
        """Flush cached signatures, then lock the vault behind the source."""
        self.cache.clear()
        await self.source.lock()
