"""Shared fixtures for the media vault tests."""
import pytest
from aiohttp import web

from media_vault.conf import AUTH_IDENTITY
from media_vault.handlers import setup_vault
from media_vault.storage import MemoryCredentialStore, MemoryMediaStore
from media_vault.vault.config import VaultConfig
from media_vault.vault.context import VaultKeyContext, setup_credentials

OWNER = "alice"
OTHER_OWNER = "bob"
PASSPHRASE = "correct horse battery staple"
OTHER_PASSPHRASE = "tr0ub4dor&3-is-weak"
# Stored credentials carry their own iteration count; keep it low in tests.
TEST_ITERATIONS = 1000


class FakeClock:
    """Controllable time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credentials():
    return setup_credentials(OWNER, PASSPHRASE, iterations=TEST_ITERATIONS)


@pytest.fixture
def other_credentials():
    return setup_credentials(OTHER_OWNER, OTHER_PASSPHRASE, iterations=TEST_ITERATIONS)


@pytest.fixture
def context(clock, credentials):
    """Unlocked key context for OWNER with a one hour timeout."""
    ctx = VaultKeyContext(OWNER, timeout=3600, clock=clock)
    return ctx.unlock(PASSPHRASE, credentials)


@pytest.fixture
def other_context(clock, other_credentials):
    ctx = VaultKeyContext(OTHER_OWNER, timeout=3600, clock=clock)
    return ctx.unlock(OTHER_PASSPHRASE, other_credentials)


@web.middleware
async def header_auth(request, handler):
    """Stand-in for the host application's authentication."""
    user = request.headers.get("X-User-Id")
    if user:
        request[AUTH_IDENTITY] = user
    return await handler(request)


@pytest.fixture
def media_store():
    return MemoryMediaStore()


@pytest.fixture
async def credential_store(credentials):
    store = MemoryCredentialStore()
    await store.put(credentials)
    return store


@pytest.fixture
def vault_app(clock, media_store, credential_store):
    app = web.Application(middlewares=[header_auth])
    setup_vault(
        app,
        media_store=media_store,
        credential_store=credential_store,
        config=VaultConfig(),
        cookie_secure=False,
        clock=clock,
    )
    return app


@pytest.fixture
async def client(aiohttp_client, vault_app):
    return await aiohttp_client(vault_app)
