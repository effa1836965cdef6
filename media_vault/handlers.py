"""
HTTP surface of the vault core (aiohttp).

Routes (relative to ``prefix``):

    POST /vault/setup        {passphrase}
    POST /vault/unlock       {passphrase}
    GET  /vault/status
    POST /vault/lock
    POST /vault/sign-url     {resourceId, vaultToken, purpose?}
    GET  /media/{resource_id}?decrypt=true&sig=...
    GET  /media/{resource_id}/thumbnail?decrypt=true&sig=...&size=...

The host application authenticates users and places the user id in
``request[AUTH_IDENTITY]`` before these handlers run.

Security Note:
    Decrypted bytes are only ever served after a capability validates.
    Rejections share one client-visible message; the reason goes to the log.
"""
import time
import asyncio
import logging
import contextlib
from datetime import datetime, timezone
from typing import Callable, Optional

import orjson
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .capability.issuer import CapabilityIssuer, CapabilityPurpose, CapabilityStatus
from .conf import (
    AUTH_IDENTITY,
    NO_STORE_CACHE,
    PUBLIC_CACHE,
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    SESSION_OBJECT,
)
from .data import VaultSession
from .exceptions import CryptoError, InvalidPassphrase, VaultLocked
from .storage import (
    AbstractCredentialStore,
    AbstractMediaStore,
    MediaRecord,
    MemorySessionStorage,
)
from .throttle import AttemptLimiter
from .vault.config import VaultConfig
from .vault.context import VaultKeyContext, setup_credentials

logger = logging.getLogger("mediavault.http")

VAULT_CONFIG = web.AppKey("mediavault_config", VaultConfig)
VAULT_ISSUER = web.AppKey("mediavault_issuer", CapabilityIssuer)
MEDIA_STORE = web.AppKey("mediavault_media_store", AbstractMediaStore)
CREDENTIAL_STORE = web.AppKey("mediavault_credential_store", AbstractCredentialStore)
SESSION_STORAGE = web.AppKey("mediavault_session_storage", MemorySessionStorage)
CONTEXT_FACTORY = web.AppKey("mediavault_context_factory", Callable[[str], VaultKeyContext])
COOKIE_SECURE = web.AppKey("mediavault_cookie_secure", bool)
UNLOCK_LIMITER = web.AppKey("mediavault_unlock_limiter", AttemptLimiter)

NO_STORE_HEADERS = {
    "Cache-Control": NO_STORE_CACHE,
    "X-Content-Type-Options": "nosniff",
}
DENIED = "Access denied"


class PassphraseRequest(BaseModel):
    passphrase: str = Field(min_length=1)


class SignUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource_id: str = Field(alias="resourceId", min_length=1, max_length=255)
    vault_token: str = Field(alias="vaultToken", min_length=1)
    purpose: CapabilityPurpose = CapabilityPurpose.MEDIA


def _dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


def _isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _json(data: dict, status: int = 200) -> web.Response:
    return web.json_response(
        data, status=status, headers=NO_STORE_HEADERS, dumps=_dumps,
    )


def _deny(status: int, message: str = DENIED) -> web.Response:
    return _json({"message": message}, status=status)


async def _parse(request: web.Request, model: type[BaseModel]) -> Optional[BaseModel]:
    try:
        payload = orjson.loads(await request.read())
        return model.model_validate(payload)
    except (orjson.JSONDecodeError, ValidationError):
        return None


async def _in_executor(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


# ---------------------------------------------------------------------------
# Session middleware
# ---------------------------------------------------------------------------

@web.middleware
async def session_middleware(request: web.Request, handler):
    """Bind a VaultSession to authenticated requests."""
    identity = request.get(AUTH_IDENTITY)
    if identity is None:
        return await handler(request)
    storage = request.app[SESSION_STORAGE]
    session = await storage.load(request.cookies.get(SESSION_COOKIE))
    if session is None or str(session.identity) != str(identity):
        session = storage.new_session(str(identity))
    request[SESSION_OBJECT] = session
    response = await handler(request)
    await storage.save(session)
    if session.new:
        response.set_cookie(
            SESSION_COOKIE,
            session.session_id,
            httponly=True,
            samesite="Strict",
            secure=request.app[COOKIE_SECURE],
            max_age=storage.max_age,
        )
    return response


def _session(request: web.Request) -> Optional[VaultSession]:
    return request.get(SESSION_OBJECT)


# ---------------------------------------------------------------------------
# Vault routes
# ---------------------------------------------------------------------------

async def vault_setup(request: web.Request) -> web.Response:
    identity = request.get(AUTH_IDENTITY)
    if identity is None:
        return _deny(401, "Authentication required")
    config = request.app[VAULT_CONFIG]
    body = await _parse(request, PassphraseRequest)
    if body is None or len(body.passphrase) < config.min_passphrase_length:
        return _deny(
            400,
            f"Passphrase must be at least {config.min_passphrase_length} characters long",
        )
    store = request.app[CREDENTIAL_STORE]
    if await store.get(str(identity)) is not None:
        return _deny(409, "Vault already configured")
    credentials = await _in_executor(
        setup_credentials, str(identity), body.passphrase, config.kdf_iterations,
    )
    await store.put(credentials)
    logger.info("VAULT_SETUP: owner=%s", identity)
    return _json({"success": True})


async def vault_unlock(request: web.Request) -> web.Response:
    session = _session(request)
    if session is None:
        return _deny(401, "Authentication required")
    limiter = request.app[UNLOCK_LIMITER]
    owner = str(session.identity)
    wait = limiter.acquire(owner)
    if wait:
        logger.warning(
            "VAULT_UNLOCK_THROTTLED: owner=%s ip=%s", owner, request.remote,
        )
        response = _deny(429, "Too many vault unlock attempts")
        response.headers["Retry-After"] = str(wait)
        return response
    body = await _parse(request, PassphraseRequest)
    if body is None:
        return _deny(400, "Passphrase is required")
    credentials = await request.app[CREDENTIAL_STORE].get(str(session.identity))
    if credentials is None:
        return _deny(404, "No vault configured for this user")
    storage = request.app[SESSION_STORAGE]
    context = storage.context_for(session, request.app[CONTEXT_FACTORY])
    try:
        await _in_executor(context.unlock, body.passphrase, credentials)
    except InvalidPassphrase:
        logger.warning(
            "VAULT_ACCESS_FAILED: owner=%s ip=%s", session.identity, request.remote,
        )
        return _deny(401, "Invalid vault passphrase")
    limiter.reset(owner)
    logger.info("VAULT_ACCESS_SUCCESS: owner=%s", session.identity)
    return _json({
        "success": True,
        "accessToken": context.token,
        "expiresAt": _isoformat(context.expires_at),
        "timeoutMinutes": context.timeout // 60,
    })


async def vault_status(request: web.Request) -> web.Response:
    session = _session(request)
    if session is None:
        return _deny(401, "Authentication required")
    context = session.vault_context
    if context is not None:
        await _in_executor(context.expire_if_due)
    if context is None or not context.is_unlocked:
        return _json({"isUnlocked": False, "accessToken": None, "expiresAt": None})
    return _json({
        "isUnlocked": True,
        "accessToken": context.token,
        "expiresAt": _isoformat(context.expires_at),
    })


async def vault_lock(request: web.Request) -> web.Response:
    session = _session(request)
    if session is None:
        return _deny(401, "Authentication required")
    context = session.vault_context
    locked = False
    if context is not None:
        # lock listeners revoke capabilities before this returns
        locked = await _in_executor(context.lock)
    if not locked:
        request.app[VAULT_ISSUER].revoke_all(str(session.identity))
    logger.info("VAULT_LOCKED: owner=%s", session.identity)
    return _json({"success": True, "isUnlocked": False})


async def vault_sign_url(request: web.Request) -> web.Response:
    session = _session(request)
    if session is None:
        return _deny(401, "Authentication required")
    body = await _parse(request, SignUrlRequest)
    if body is None:
        return _deny(400, "Missing resourceId or vaultToken")
    context = session.vault_context
    if context is not None:
        await _in_executor(context.expire_if_due)
    if context is None or not context.verify_token(body.vault_token):
        logger.warning(
            "Sign-url refused, invalid vault token: owner=%s resource=%s",
            session.identity, body.resource_id,
        )
        return _deny(401, "Invalid or expired vault token")
    try:
        token = request.app[VAULT_ISSUER].issue(
            body.resource_id, str(session.identity), context, body.purpose,
        )
    except VaultLocked:
        return _deny(401, "Vault is locked")
    return _json({
        "signature": token.signature,
        "expiresAt": _isoformat(token.expires_at),
    })


# ---------------------------------------------------------------------------
# Media routes
# ---------------------------------------------------------------------------

def _select(record: MediaRecord, purpose: CapabilityPurpose, size: Optional[str]):
    """Return (payload, content type) for the requested variant."""
    if purpose is CapabilityPurpose.THUMBNAIL:
        return record.thumbnails.get(size or "default"), record.thumbnail_type
    return record.data, record.content_type


async def _owned_record(
    request: web.Request, resource_id: str, session: VaultSession,
) -> Optional[MediaRecord]:
    """Look up a record; another owner's record is reported as missing."""
    record = await request.app[MEDIA_STORE].get(resource_id)
    if record is None:
        return None
    if record.owner_id != str(session.identity):
        logger.warning(
            "Media fetch for foreign record: owner=%s resource=%s",
            session.identity, resource_id,
        )
        return None
    return record


def _plain_response(payload: bytes, content_type: str) -> web.Response:
    return web.Response(
        body=payload,
        headers={
            "Content-Type": content_type,
            "Cache-Control": PUBLIC_CACHE,
            "X-Content-Type-Options": "nosniff",
        },
    )


async def _serve_decrypted(
    request: web.Request,
    resource_id: str,
    purpose: CapabilityPurpose,
) -> web.Response:
    session = _session(request)
    signature = request.query.get("sig")
    if not signature:
        return _deny(401, "Signature required")
    status = request.app[VAULT_ISSUER].validate(
        signature, resource_id, str(session.identity), purpose,
    )
    if status is not CapabilityStatus.OK:
        logger.warning(
            "Media fetch denied: reason=%s owner=%s resource=%s",
            status.value, session.identity, resource_id,
        )
        return _deny(403)
    context = session.vault_context
    if context is None or not context.is_unlocked:
        return _deny(401, "Vault is locked")
    record = await _owned_record(request, resource_id, session)
    if record is None:
        return _deny(404, "Not found")
    size = request.query.get("size")
    payload, content_type = _select(record, purpose, size)
    if payload is None:
        return _deny(404, "Not found")
    if not record.is_encrypted:
        return _plain_response(payload, content_type)
    try:
        data = await _in_executor(context.open, payload, record.wrapped_key)
    except VaultLocked:
        return _deny(401, "Vault is locked")
    except CryptoError as err:
        logger.error(
            "Media decryption failed: owner=%s resource=%s error=%s",
            session.identity, resource_id, type(err).__name__,
        )
        return _deny(403)
    return web.Response(
        body=data,
        headers={"Content-Type": content_type, **NO_STORE_HEADERS},
    )


async def _serve(request: web.Request, purpose: CapabilityPurpose) -> web.Response:
    resource_id = request.match_info["resource_id"]
    if "vt" in request.query or "vaultToken" in request.query:
        logger.warning(
            "VAULT_TOKEN_IN_URL_REJECTED: ip=%s path=%s",
            request.remote, request.path,
        )
        return _deny(400, "Vault tokens in URL parameters are not allowed")
    session = _session(request)
    if session is None:
        return _deny(401, "Authentication required")
    if request.query.get("decrypt") == "true":
        return await _serve_decrypted(request, resource_id, purpose)
    record = await _owned_record(request, resource_id, session)
    if record is None:
        return _deny(404, "Not found")
    if record.is_encrypted:
        return _deny(403, "Content is encrypted and requires decryption")
    payload, content_type = _select(record, purpose, request.query.get("size"))
    if payload is None:
        return _deny(404, "Not found")
    return _plain_response(payload, content_type)


async def media(request: web.Request) -> web.Response:
    return await _serve(request, CapabilityPurpose.MEDIA)


async def media_thumbnail(request: web.Request) -> web.Response:
    return await _serve(request, CapabilityPurpose.THUMBNAIL)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

def sweep_vault(issuer: CapabilityIssuer, contexts: list[VaultKeyContext]) -> dict:
    """Purge expired capabilities and lock timed-out key contexts."""
    purged = issuer.purge_expired()
    expired = sum(1 for context in contexts if context.expire_if_due())
    return {"purged": purged, "expired": expired}


async def sweep_app(app: web.Application) -> dict:
    """One maintenance pass over capabilities, key contexts and sessions."""
    storage = app[SESSION_STORAGE]
    stats = await _in_executor(sweep_vault, app[VAULT_ISSUER], storage.contexts())
    stats["sessions"] = await storage.purge_expired()
    stats["throttled"] = app[UNLOCK_LIMITER].purge()
    return stats


async def _sweep_loop(app: web.Application) -> None:
    interval = app[VAULT_CONFIG].purge_interval
    while True:
        await asyncio.sleep(interval)
        try:
            stats = await sweep_app(app)
        except Exception:
            logger.exception("Vault sweep failed")
            continue
        logger.debug("Vault sweep: %s", stats)


async def _sweeper(app: web.Application):
    task = asyncio.create_task(_sweep_loop(app))
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def setup_vault(
    app: web.Application,
    *,
    media_store: AbstractMediaStore,
    credential_store: AbstractCredentialStore,
    session_storage: Optional[MemorySessionStorage] = None,
    issuer: Optional[CapabilityIssuer] = None,
    config: Optional[VaultConfig] = None,
    prefix: str = "",
    cookie_secure: bool = True,
    clock: Callable[[], float] = time.time,
) -> web.Application:
    """Register vault routes, session middleware and the periodic sweep."""
    config = config or VaultConfig.from_env()
    if issuer is None:
        issuer = CapabilityIssuer(ttl=config.capability_ttl, clock=clock)
    if session_storage is None:
        session_storage = MemorySessionStorage(max_age=SESSION_MAX_AGE)

    def make_context(owner_id: str) -> VaultKeyContext:
        context = VaultKeyContext(
            owner_id, timeout=config.vault_timeout_seconds, clock=clock,
        )
        context.on_lock(issuer.on_vault_locked)
        return context

    app[VAULT_CONFIG] = config
    app[VAULT_ISSUER] = issuer
    app[MEDIA_STORE] = media_store
    app[CREDENTIAL_STORE] = credential_store
    app[SESSION_STORAGE] = session_storage
    app[CONTEXT_FACTORY] = make_context
    app[COOKIE_SECURE] = cookie_secure
    app[UNLOCK_LIMITER] = AttemptLimiter(
        config.unlock_max_attempts, config.unlock_window, clock=clock,
    )

    prefix = prefix.rstrip("/")
    app.router.add_post(f"{prefix}/vault/setup", vault_setup)
    app.router.add_post(f"{prefix}/vault/unlock", vault_unlock)
    app.router.add_get(f"{prefix}/vault/status", vault_status)
    app.router.add_post(f"{prefix}/vault/lock", vault_lock)
    app.router.add_post(f"{prefix}/vault/sign-url", vault_sign_url)
    app.router.add_get(f"{prefix}/media/{{resource_id}}", media)
    app.router.add_get(f"{prefix}/media/{{resource_id}}/thumbnail", media_thumbnail)
    app.middlewares.append(session_middleware)
    app.cleanup_ctx.append(_sweeper)
    logger.debug("Vault routes registered under %r", prefix or "/")
    return app
