"""
Storage interfaces consumed by the vault core.

The relational schema and ORM live outside this package; these abstract
stores describe what the core needs from them. The memory implementations
back tests and single-process deployments.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

from .conf import VAULT_CONTEXT
from .data import VaultSession
from .models import VaultCredentials
from .vault.context import VaultKeyContext

logger = logging.getLogger("mediavault.storage")


@dataclass
class MediaRecord:
    """Stored media resource.

    For encrypted records ``data`` and each thumbnail are blobs sealed with a
    per-file key, and ``wrapped_key`` is that key sealed under the vault key.
    """
    resource_id: str
    owner_id: str
    data: bytes
    content_type: str = "application/octet-stream"
    is_encrypted: bool = False
    wrapped_key: Optional[str] = None
    thumbnails: dict[str, bytes] = field(default_factory=dict)
    thumbnail_type: str = "image/jpeg"

    @classmethod
    def sealed(
        cls,
        resource_id: str,
        owner_id: str,
        data: bytes,
        context: VaultKeyContext,
        content_type: str = "application/octet-stream",
        thumbnails: Optional[dict[str, bytes]] = None,
    ) -> "MediaRecord":
        """Encrypt data and thumbnails under one fresh file key."""
        blob, wrapped_key = context.seal(data)
        sealed_thumbs = {
            size: context.seal(thumb, wrapped_key)[0]
            for size, thumb in (thumbnails or {}).items()
        }
        return cls(
            resource_id=str(resource_id),
            owner_id=str(owner_id),
            data=blob,
            content_type=content_type,
            is_encrypted=True,
            wrapped_key=wrapped_key,
            thumbnails=sealed_thumbs,
        )


class AbstractMediaStore(ABC):
    """Media records by resource id."""

    @abstractmethod
    async def get(self, resource_id: str) -> Optional[MediaRecord]:
        ...

    @abstractmethod
    async def put(self, record: MediaRecord) -> None:
        ...

    @abstractmethod
    async def list_encrypted(
        self, owner_id: str, limit: int = 100, offset: int = 0
    ) -> list[MediaRecord]:
        ...

    @abstractmethod
    async def update_wrapped_key(self, resource_id: str, wrapped_key: str) -> None:
        ...


class MemoryMediaStore(AbstractMediaStore):
    def __init__(self):
        self._records: dict[str, MediaRecord] = {}

    async def get(self, resource_id: str) -> Optional[MediaRecord]:
        return self._records.get(str(resource_id))

    async def put(self, record: MediaRecord) -> None:
        self._records[record.resource_id] = record

    async def list_encrypted(
        self, owner_id: str, limit: int = 100, offset: int = 0
    ) -> list[MediaRecord]:
        records = sorted(
            (
                r for r in self._records.values()
                if r.owner_id == str(owner_id) and r.is_encrypted
            ),
            key=lambda r: r.resource_id,
        )
        return records[offset:offset + limit]

    async def update_wrapped_key(self, resource_id: str, wrapped_key: str) -> None:
        record = self._records.get(str(resource_id))
        if record is None:
            raise KeyError(resource_id)
        record.wrapped_key = wrapped_key


class AbstractCredentialStore(ABC):
    """Vault verification material by owner id."""

    @abstractmethod
    async def get(self, owner_id: str) -> Optional[VaultCredentials]:
        ...

    @abstractmethod
    async def put(self, credentials: VaultCredentials) -> None:
        ...


class MemoryCredentialStore(AbstractCredentialStore):
    def __init__(self):
        self._credentials: dict[str, VaultCredentials] = {}

    async def get(self, owner_id: str) -> Optional[VaultCredentials]:
        return self._credentials.get(str(owner_id))

    async def put(self, credentials: VaultCredentials) -> None:
        self._credentials[str(credentials.owner_id)] = credentials


class MemorySessionStorage:
    """Session storage for a single process.

    Serializable session data is kept as jsonpickle text, as a shared
    backend would hold it; in-memory objects (key contexts) stay in a
    process-local map keyed by session id.
    """

    def __init__(self, max_age: Optional[int] = None):
        self.max_age = max_age
        self._payloads: dict[str, str] = {}
        self._objects: dict[str, dict] = {}

    def new_session(self, identity: str) -> VaultSession:
        session = VaultSession(identity=str(identity), new=True, max_age=self.max_age)
        self._objects[session.session_id] = session.session_objects()
        return session

    async def load(self, session_id: Optional[str]) -> Optional[VaultSession]:
        if not session_id:
            return None
        payload = self._payloads.get(session_id)
        if payload is None:
            return None
        session = VaultSession.decode(payload, max_age=self.max_age)
        if session.new:
            # expired
            await self.forget(session_id)
            return None
        objects = self._objects.setdefault(session_id, {})
        session.restore_objects(objects)
        return session

    async def save(self, session: VaultSession) -> None:
        self._payloads[session.session_id] = session.encode()
        self._objects[session.session_id] = session.session_objects()
        session.is_changed = False

    async def forget(self, session_id: str) -> None:
        objects = self._objects.pop(session_id, {})
        self._payloads.pop(session_id, None)
        context = objects.get(VAULT_CONTEXT)
        if context is not None:
            context.lock(reason="session")
        logger.debug("Session forgotten: %s", session_id)

    async def purge_expired(self) -> int:
        """Forget every stored session past ``max_age``; returns the count."""
        if self.max_age is None:
            return 0
        expired = []
        for session_id, payload in list(self._payloads.items()):
            try:
                session = VaultSession.decode(payload, max_age=self.max_age)
            except RuntimeError:
                logger.warning("Dropping undecodable session: %s", session_id)
                expired.append(session_id)
                continue
            if session.new:
                expired.append(session_id)
        for session_id in expired:
            await self.forget(session_id)
        return len(expired)

    def payload(self, session_id: str) -> Optional[str]:
        """Persisted form of a session, as a shared backend would store it."""
        return self._payloads.get(session_id)

    def context_for(
        self,
        session: VaultSession,
        factory: Callable[[str], VaultKeyContext] = VaultKeyContext,
    ) -> VaultKeyContext:
        """Return the session's key context, creating a locked one if absent.

        There is no await between lookup and attach, so concurrent requests
        of one session on the event loop always share a single context.
        """
        context = session.vault_context
        if context is None:
            context = session.attach_context(factory(str(session.identity)))
            self._objects[session.session_id] = session.session_objects()
        return context

    def contexts(self) -> list[VaultKeyContext]:
        return [
            objs[VAULT_CONTEXT] for objs in self._objects.values()
            if VAULT_CONTEXT in objs
        ]
