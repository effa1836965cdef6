"""
VaultClient — aiohttp client for the vault HTTP surface.

Holds the vault access token in memory and sends it only in JSON request
bodies. Capability issuance is retried with exponential backoff on
transient network failures; authorization failures are never retried.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

import aiohttp
import orjson
from yarl import URL

from .capability.issuer import CapabilityPurpose
from .exceptions import CapabilityDenied, InvalidPassphrase, VaultError, VaultLocked

logger = logging.getLogger("mediavault.client")

RETRYABLE_STATUS = frozenset({502, 503, 504})


class _TransientStatus(Exception):
    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


class VaultClient:
    """Client side of the vault protocol.

    Args:
        base_url: Prefix of the vault routes, e.g. ``https://host/api``.
        session: Existing aiohttp ClientSession; one is created if omitted.
        retries: Extra attempts for transient failures.
        backoff: Initial backoff in seconds, doubled per attempt.
        headers: Headers sent with every request (e.g. auth).
    """

    def __init__(
        self,
        base_url: Union[str, URL],
        session: Optional[aiohttp.ClientSession] = None,
        *,
        retries: int = 3,
        backoff: float = 0.5,
        headers: Optional[dict[str, str]] = None,
    ):
        self._base = URL(str(base_url))
        self._session = session
        self._owns_session = session is None
        self._retries = retries
        self._backoff = backoff
        self._headers = dict(headers or {})
        self._token: Optional[str] = None
        self._listeners: list[Callable[[], Any]] = []

    async def __aenter__(self) -> "VaultClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    @property
    def is_unlocked(self) -> bool:
        return self._token is not None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def on_lock(self, callback: Callable[[], Any]) -> Callable[[], Any]:
        """Register a callback run synchronously when the vault locks."""
        self._listeners.append(callback)
        return callback

    def _locked(self) -> None:
        self._token = None
        for callback in list(self._listeners):
            callback()

    def _url(self, *segments: str) -> URL:
        url = self._base
        for segment in segments:
            url = url / segment
        return url

    async def _send(self, method: str, url: URL, payload: Optional[dict]) -> tuple[int, dict]:
        headers = dict(self._headers)
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = orjson.dumps(payload)
        async with self.session.request(method, url, data=data, headers=headers) as resp:
            if resp.status in RETRYABLE_STATUS:
                raise _TransientStatus(resp.status)
            body = await resp.read()
            try:
                content = orjson.loads(body) if body else {}
            except orjson.JSONDecodeError:
                content = {}
            return resp.status, content

    async def _request(
        self, method: str, *segments: str, payload: Optional[dict] = None, retry: bool = False
    ) -> tuple[int, dict]:
        url = self._url(*segments)
        attempts = self._retries + 1 if retry else 1
        for attempt in range(attempts):
            try:
                return await self._send(method, url, payload)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError, _TransientStatus) as err:
                if attempt + 1 >= attempts:
                    if isinstance(err, _TransientStatus):
                        raise VaultError(f"Vault service unavailable ({err.status})") from err
                    raise
                delay = self._backoff * (2 ** attempt)
                logger.warning(
                    "Transient failure on %s %s (%s), retrying in %.2fs",
                    method, url.path, type(err).__name__, delay,
                )
                await asyncio.sleep(delay)
        raise VaultError("Request failed")  # pragma: no cover

    # ------------------------------------------------------------------
    # Vault operations
    # ------------------------------------------------------------------

    async def setup(self, passphrase: str) -> None:
        status, data = await self._request(
            "POST", "vault", "setup", payload={"passphrase": passphrase},
        )
        if status != 200:
            raise VaultError(data.get("message", f"Vault setup failed ({status})"))

    async def unlock(self, passphrase: str) -> dict:
        """Unlock the vault; keeps the returned access token in memory.

        Raises:
            InvalidPassphrase: Wrong passphrase.
            VaultError: Any other failure (e.g. no vault configured).
        """
        status, data = await self._request(
            "POST", "vault", "unlock", payload={"passphrase": passphrase},
        )
        if status == 401:
            raise InvalidPassphrase()
        if status != 200:
            raise VaultError(data.get("message", f"Vault unlock failed ({status})"))
        self._token = data["accessToken"]
        return {k: v for k, v in data.items() if k != "accessToken"}

    async def status(self) -> dict:
        status, data = await self._request("GET", "vault", "status", retry=True)
        if status != 200:
            raise VaultError(data.get("message", f"Vault status failed ({status})"))
        if data.get("isUnlocked"):
            self._token = data.get("accessToken")
        elif self._token is not None:
            self._locked()
        return data

    async def lock(self) -> None:
        """Drop local capability state first, then lock the server vault."""
        self._locked()
        status, data = await self._request("POST", "vault", "lock")
        if status != 200:
            raise VaultError(data.get("message", f"Vault lock failed ({status})"))

    async def request_capability(
        self, resource_id: str, purpose: CapabilityPurpose = CapabilityPurpose.MEDIA
    ) -> tuple[str, float]:
        """Ask the server to sign a fetch of resource_id.

        Returns:
            Tuple of (signature, expiry as POSIX timestamp).

        Raises:
            VaultLocked: No access token, or the server reports the vault locked.
            CapabilityDenied: Server refused the capability.
        """
        if self._token is None:
            raise VaultLocked()
        status, data = await self._request(
            "POST", "vault", "sign-url",
            payload={
                "resourceId": str(resource_id),
                "vaultToken": self._token,
                "purpose": CapabilityPurpose(purpose).value,
            },
            retry=True,
        )
        if status == 401:
            self._locked()
            raise VaultLocked()
        if status == 403:
            raise CapabilityDenied()
        if status != 200:
            raise VaultError(data.get("message", f"Capability request failed ({status})"))
        expires_at = datetime.fromisoformat(data["expiresAt"]).timestamp()
        return data["signature"], expires_at
