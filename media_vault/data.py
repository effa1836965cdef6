"""VaultSession: per-caller session that owns the vault key context.

Persisted values are encoded with jsonpickle. The key context, and any value
that would not survive a round trip to another process, stays in memory.
"""
import uuid
from itertools import chain
from typing import Any, Optional
from datetime import datetime, timezone
from collections.abc import Iterator, Mapping, MutableMapping
import jsonpickle
from jsonpickle.unpickler import loadclass
from datamodel import BaseModel
from pydantic import BaseModel as PydanticBaseModel
from .conf import (
    SESSION_KEY,
    SESSION_ID,
    VAULT_CONTEXT
)
from .vault.context import VaultKeyContext

CREATED = 'created'
_SCALARS = (type(None), bool, int, float, str, datetime)


class RecordHandler(jsonpickle.handlers.BaseHandler):
    """RecordHandler.
    Flattens datamodel and pydantic records through their __dict__.
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(obj.__dict__, reset=False)
        return data

    def restore(self, obj):
        cls = loadclass(obj['py/object'])
        record = cls.__new__(cls)
        record.__dict__ = self.context.restore(obj['__dict__'], reset=False)
        return record


jsonpickle.handlers.registry.register(BaseModel, RecordHandler, base=True)
jsonpickle.handlers.registry.register(PydanticBaseModel, RecordHandler, base=True)


def persistable(value: Any) -> bool:
    """True for values jsonpickle restores faithfully in another process.

    bytes are never persisted, so raw key material cannot reach storage.
    """
    if isinstance(value, _SCALARS):
        return True
    if isinstance(value, (BaseModel, PydanticBaseModel)):
        return True
    if isinstance(value, dict):
        return all(persistable(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(persistable(v) for v in value)
    return False


class VaultSession(MutableMapping[str, Any]):
    """Session mapping bound to one authenticated identity.

    Values pass ``persistable`` to land in the persisted part; everything
    else, the VaultKeyContext included, is held per process and gone on
    restart.
    """

    def __init__(
        self,
        *,
        data: Optional[Mapping[str, Any]] = None,
        new: bool = False,
        id: Optional[str] = None,
        identity: Optional[Any] = None,
        max_age: Optional[int] = None
    ) -> None:
        self._persisted: dict[str, Any] = {}
        self._memory: dict[str, Any] = {}
        self._max_age = max_age or None
        now = int(datetime.now(timezone.utc).timestamp())
        created = None
        if data:
            id = data.get(SESSION_ID) or id
            identity = data.get(SESSION_KEY, identity)
            created = data.get(CREATED)
            if self._max_age is not None and created and now - created > self._max_age:
                # expired: start over with the same id and identity
                data, created, new = None, None, True
        else:
            new = True
        self._new = new
        self._changed = new
        self._id = id or uuid.uuid4().hex
        self._identity = identity
        self._created = created or now
        if data:
            self._persisted.update(data)
        self._persisted.update({
            SESSION_ID: self._id,
            SESSION_KEY: self._identity,
            CREATED: self._created,
        })

    def __repr__(self) -> str:
        return (
            f'<VaultSession {self._id} new={self._new} '
            f'data={sorted(self._persisted)} objects={sorted(self._memory)}>'
        )

    @property
    def new(self) -> bool:
        return self._new

    @property
    def session_id(self) -> str:
        return self._id

    @property
    def identity(self) -> Optional[Any]:
        return self._identity

    @property
    def created(self) -> int:
        return self._created

    @property
    def max_age(self) -> Optional[int]:
        return self._max_age

    @property
    def empty(self) -> bool:
        return not self._memory and set(self._persisted) <= {SESSION_ID, SESSION_KEY, CREATED}

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def session_data(self) -> dict:
        """Persisted part of the session."""
        return self._persisted

    def session_objects(self) -> dict:
        """In-memory part of the session."""
        return self._memory

    def restore_objects(self, objects: dict) -> None:
        """Rebind the in-memory part kept by the storage for this session."""
        self._memory = objects

    # --- vault key context ---

    @property
    def vault_context(self) -> Optional[VaultKeyContext]:
        return self._memory.get(VAULT_CONTEXT)

    def attach_context(self, context: VaultKeyContext) -> VaultKeyContext:
        """Bind a key context to this session; one per session.

        Returns the context already attached if there is one.

        Raises:
            ValueError: If the context belongs to another identity.
        """
        current = self.vault_context
        if current is not None:
            return current
        if self._identity is not None and str(self._identity) != context.owner_id:
            raise ValueError("Vault context owner does not match session identity")
        self._memory[VAULT_CONTEXT] = context
        return context

    def detach_context(self) -> Optional[VaultKeyContext]:
        return self._memory.pop(VAULT_CONTEXT, None)

    def invalidate(self) -> None:
        """Lock the vault and drop everything but the session header."""
        context = self.detach_context()
        if context is not None:
            context.lock(reason="session")
        self._persisted = {
            SESSION_ID: self._id,
            SESSION_KEY: self._identity,
            CREATED: self._created,
        }
        self._memory = {}
        self._changed = True

    # --- mapping protocol ---

    def __getitem__(self, key: str) -> Any:
        if key in self._memory:
            return self._memory[key]
        return self._persisted[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if persistable(value):
            self._memory.pop(key, None)
            self._persisted[key] = value
            self._changed = True
            return
        if key in self._persisted:
            del self._persisted[key]
            self._changed = True
        self._memory[key] = value

    def __delitem__(self, key: str) -> None:
        if key in self._persisted:
            del self._persisted[key]
            self._changed = True
            self._memory.pop(key, None)
        else:
            del self._memory[key]

    def __iter__(self) -> Iterator[str]:
        return iter(dict.fromkeys(chain(self._persisted, self._memory)))

    def __len__(self) -> int:
        return len(self._persisted) + len(self._memory)

    # --- persistence ---

    def encode(self, obj: Any = None) -> str:
        """Encode the persisted part (or obj) with jsonpickle.

        Raises:
            RuntimeError: Error converting data to json.
        """
        try:
            return jsonpickle.encode(self._persisted if obj is None else obj)
        except Exception as err:
            raise RuntimeError(err) from err

    @classmethod
    def decode(cls, payload: str, max_age: Optional[int] = None) -> "VaultSession":
        """Rebuild a session from its persisted form.

        Raises:
            RuntimeError: Payload is not valid json or not a mapping.
        """
        try:
            data = jsonpickle.decode(payload)
        except Exception as err:
            raise RuntimeError(err) from err
        if not isinstance(data, dict):
            raise RuntimeError("Session payload is not a mapping")
        return cls(data=data, max_age=max_age)
