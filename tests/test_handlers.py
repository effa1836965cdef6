"""Tests for the aiohttp vault routes and media serving."""
from datetime import datetime

import pytest

from media_vault.capability.issuer import CapabilityIssuer, CapabilityPurpose
from media_vault.conf import NO_STORE_CACHE, PUBLIC_CACHE, SESSION_COOKIE
from media_vault.handlers import (
    CREDENTIAL_STORE,
    SESSION_STORAGE,
    UNLOCK_LIMITER,
    VAULT_ISSUER,
    sweep_app,
    sweep_vault,
)
from media_vault.storage import MediaRecord
from media_vault.vault.context import VaultKeyContext

from .conftest import OTHER_OWNER, OWNER, PASSPHRASE

ALICE = {"X-User-Id": OWNER}
BOB = {"X-User-Id": OTHER_OWNER}
PHOTO = b"\xff\xd8\xff\xe0 full size jpeg"
THUMB = b"\xff\xd8 default thumbnail"
THUMB_SMALL = b"\xff\xd8 small thumbnail"


async def unlock(client) -> dict:
    resp = await client.post("/vault/unlock", json={"passphrase": PASSPHRASE}, headers=ALICE)
    assert resp.status == 200
    return await resp.json()


async def sign(client, token, resource_id="photo-1", purpose="media"):
    return await client.post(
        "/vault/sign-url",
        json={"resourceId": resource_id, "vaultToken": token, "purpose": purpose},
        headers=ALICE,
    )


@pytest.fixture
async def unlocked(client, vault_app, media_store):
    """Unlocked vault with one encrypted and one plain record; yields the access token."""
    body = await unlock(client)
    context = vault_app[SESSION_STORAGE].contexts()[0]
    await media_store.put(MediaRecord.sealed(
        "photo-1", OWNER, PHOTO, context, "image/jpeg",
        {"default": THUMB, "small": THUMB_SMALL},
    ))
    await media_store.put(MediaRecord("plain-1", OWNER, b"public bytes", "image/png"))
    return body["accessToken"]


class TestVaultSetup:

    async def test_requires_authentication(self, client):
        resp = await client.post("/vault/setup", json={"passphrase": "long enough"})
        assert resp.status == 401

    async def test_short_passphrase(self, client):
        resp = await client.post("/vault/setup", json={"passphrase": "short"}, headers=BOB)
        assert resp.status == 400
        assert "8 characters" in (await resp.json())["message"]

    async def test_setup_then_conflict(self, client, vault_app):
        resp = await client.post(
            "/vault/setup", json={"passphrase": "bobs passphrase"}, headers=BOB,
        )
        assert resp.status == 200
        assert await resp.json() == {"success": True}
        stored = await vault_app[CREDENTIAL_STORE].get(OTHER_OWNER)
        assert stored.kdf_iterations >= 600_000
        assert "bobs passphrase" not in stored.passphrase_hash
        resp = await client.post(
            "/vault/setup", json={"passphrase": "another passphrase"}, headers=BOB,
        )
        assert resp.status == 409


class TestVaultUnlock:

    async def test_unlock(self, client, clock):
        resp = await client.post(
            "/vault/unlock", json={"passphrase": PASSPHRASE}, headers=ALICE,
        )
        assert resp.status == 200
        assert resp.headers["Cache-Control"] == NO_STORE_CACHE
        body = await resp.json()
        assert body["success"] is True
        assert body["accessToken"]
        assert body["timeoutMinutes"] == 120
        expires = datetime.fromisoformat(body["expiresAt"]).timestamp()
        assert expires == pytest.approx(clock.now + 7200)
        assert SESSION_COOKIE in resp.cookies

    async def test_wrong_passphrase(self, client):
        resp = await client.post(
            "/vault/unlock", json={"passphrase": "wrong passphrase"}, headers=ALICE,
        )
        assert resp.status == 401
        assert "accessToken" not in await resp.json()

    async def test_no_vault(self, client):
        resp = await client.post(
            "/vault/unlock", json={"passphrase": "anything at all"}, headers=BOB,
        )
        assert resp.status == 404

    async def test_missing_body(self, client):
        resp = await client.post("/vault/unlock", data=b"", headers=ALICE)
        assert resp.status == 400

    async def test_unlock_twice_keeps_token(self, client):
        first = await unlock(client)
        second = await unlock(client)
        assert first["accessToken"] == second["accessToken"]


class TestUnlockThrottle:

    async def wrong(self, client):
        return await client.post(
            "/vault/unlock", json={"passphrase": "wrong passphrase"}, headers=ALICE,
        )

    async def test_attempts_limited_per_window(self, client, clock):
        for _ in range(10):
            assert (await self.wrong(client)).status == 401
        resp = await self.wrong(client)
        assert resp.status == 429
        assert resp.headers["Cache-Control"] == NO_STORE_CACHE
        assert int(resp.headers["Retry-After"]) == 900
        # the right passphrase is refused too while throttled
        resp = await client.post(
            "/vault/unlock", json={"passphrase": PASSPHRASE}, headers=ALICE,
        )
        assert resp.status == 429
        clock.advance(900)
        assert (await unlock(client))["success"] is True

    async def test_throttle_is_per_owner(self, client):
        for _ in range(11):
            await self.wrong(client)
        resp = await client.post(
            "/vault/unlock", json={"passphrase": "anything at all"}, headers=BOB,
        )
        assert resp.status == 404

    async def test_success_resets_attempts(self, client, vault_app):
        for _ in range(9):
            await self.wrong(client)
        await unlock(client)
        assert vault_app[UNLOCK_LIMITER].retry_after(OWNER) == 0
        for _ in range(10):
            assert (await self.wrong(client)).status == 401


class TestVaultStatusAndLock:

    async def test_status_locked(self, client):
        resp = await client.get("/vault/status", headers=ALICE)
        assert resp.status == 200
        assert await resp.json() == {
            "isUnlocked": False, "accessToken": None, "expiresAt": None,
        }

    async def test_status_requires_authentication(self, client):
        resp = await client.get("/vault/status")
        assert resp.status == 401

    async def test_status_unlocked(self, client, unlocked):
        resp = await client.get("/vault/status", headers=ALICE)
        body = await resp.json()
        assert body["isUnlocked"] is True
        assert body["accessToken"] == unlocked

    async def test_lock(self, client, unlocked):
        sig = (await (await sign(client, unlocked)).json())["signature"]
        resp = await client.post("/vault/lock", headers=ALICE)
        assert resp.status == 200
        assert await resp.json() == {"success": True, "isUnlocked": False}
        status = await (await client.get("/vault/status", headers=ALICE)).json()
        assert status["isUnlocked"] is False
        # capabilities revoked with the vault
        resp = await client.get(f"/media/photo-1?decrypt=true&sig={sig}", headers=ALICE)
        assert resp.status == 403
        resp = await sign(client, unlocked)
        assert resp.status == 401

    async def test_lock_when_never_unlocked(self, client):
        resp = await client.post("/vault/lock", headers=ALICE)
        assert resp.status == 200

    async def test_timeout_locks_vault(self, client, unlocked, clock, vault_app):
        issuer = vault_app[VAULT_ISSUER]
        assert (await sign(client, unlocked)).status == 200
        clock.advance(7200)
        status = await (await client.get("/vault/status", headers=ALICE)).json()
        assert status["isUnlocked"] is False
        # revoked on timeout, not merely expired
        assert len(issuer) == 0
        resp = await sign(client, unlocked)
        assert resp.status == 401


class TestSignUrl:

    async def test_sign(self, client, unlocked, clock):
        resp = await sign(client, unlocked)
        assert resp.status == 200
        assert resp.headers["Cache-Control"] == NO_STORE_CACHE
        body = await resp.json()
        assert len(body["signature"]) >= 43
        expires = datetime.fromisoformat(body["expiresAt"]).timestamp()
        assert expires == pytest.approx(clock.now + 300)

    async def test_invalid_token(self, client, unlocked):
        resp = await sign(client, "not-the-token")
        assert resp.status == 401

    async def test_locked_vault(self, client):
        resp = await sign(client, "any-token")
        assert resp.status == 401

    @pytest.mark.parametrize("payload", [
        {"resourceId": "photo-1"},
        {"vaultToken": "abc"},
        {"resourceId": "photo-1", "vaultToken": "abc", "purpose": "download"},
    ])
    async def test_bad_body(self, client, unlocked, payload):
        resp = await client.post("/vault/sign-url", json=payload, headers=ALICE)
        assert resp.status == 400


class TestMediaServing:

    async def test_decrypted_media(self, client, unlocked):
        sig = (await (await sign(client, unlocked)).json())["signature"]
        resp = await client.get(f"/media/photo-1?decrypt=true&sig={sig}", headers=ALICE)
        assert resp.status == 200
        assert await resp.read() == PHOTO
        assert resp.headers["Content-Type"] == "image/jpeg"
        assert resp.headers["Cache-Control"] == NO_STORE_CACHE

    async def test_signature_reusable_until_expiry(self, client, unlocked, clock):
        sig = (await (await sign(client, unlocked)).json())["signature"]
        url = f"/media/photo-1?decrypt=true&sig={sig}"
        assert (await client.get(url, headers=ALICE)).status == 200
        clock.advance(299)
        assert (await client.get(url, headers=ALICE)).status == 200
        clock.advance(2)
        assert (await client.get(url, headers=ALICE)).status == 403

    async def test_decrypted_thumbnail(self, client, unlocked):
        sig = (await (await sign(client, unlocked, purpose="thumbnail")).json())["signature"]
        resp = await client.get(
            f"/media/photo-1/thumbnail?decrypt=true&sig={sig}&size=small", headers=ALICE,
        )
        assert resp.status == 200
        assert await resp.read() == THUMB_SMALL
        resp = await client.get(
            f"/media/photo-1/thumbnail?decrypt=true&sig={sig}", headers=ALICE,
        )
        assert await resp.read() == THUMB

    async def test_purpose_is_enforced(self, client, unlocked):
        sig = (await (await sign(client, unlocked)).json())["signature"]
        resp = await client.get(
            f"/media/photo-1/thumbnail?decrypt=true&sig={sig}", headers=ALICE,
        )
        assert resp.status == 403

    async def test_missing_signature(self, client, unlocked):
        resp = await client.get("/media/photo-1?decrypt=true", headers=ALICE)
        assert resp.status == 401

    async def test_forged_signature(self, client, unlocked):
        resp = await client.get("/media/photo-1?decrypt=true&sig=forged", headers=ALICE)
        assert resp.status == 403
        assert resp.headers["Cache-Control"] == NO_STORE_CACHE
        assert await resp.json() == {"message": "Access denied"}

    async def test_signature_bound_to_resource(self, client, unlocked):
        sig = (await (await sign(client, unlocked, resource_id="photo-2")).json())["signature"]
        resp = await client.get(f"/media/photo-1?decrypt=true&sig={sig}", headers=ALICE)
        assert resp.status == 403

    async def test_missing_resource(self, client, unlocked):
        sig = (await (await sign(client, unlocked, resource_id="gone")).json())["signature"]
        resp = await client.get(f"/media/gone?decrypt=true&sig={sig}", headers=ALICE)
        assert resp.status == 404

    async def test_vault_token_in_url_rejected(self, client, unlocked):
        for name in ("vt", "vaultToken"):
            resp = await client.get(f"/media/photo-1?{name}={unlocked}", headers=ALICE)
            assert resp.status == 400

    async def test_encrypted_without_decrypt(self, client, unlocked):
        resp = await client.get("/media/photo-1", headers=ALICE)
        assert resp.status == 403

    async def test_plain_media_is_cacheable(self, client, unlocked):
        resp = await client.get("/media/plain-1", headers=ALICE)
        assert resp.status == 200
        assert await resp.read() == b"public bytes"
        assert resp.headers["Cache-Control"] == PUBLIC_CACHE

    async def test_requires_authentication(self, client, unlocked):
        resp = await client.get("/media/plain-1")
        assert resp.status == 401

    async def test_other_user_denied(self, client, unlocked):
        sig = (await (await sign(client, unlocked)).json())["signature"]
        resp = await client.get(f"/media/photo-1?decrypt=true&sig={sig}", headers=BOB)
        assert resp.status == 403

    async def test_foreign_plain_record_not_found(self, client, unlocked, media_store):
        await media_store.put(MediaRecord("bob-private", OTHER_OWNER, b"bob bytes", "image/png"))
        resp = await client.get("/media/bob-private", headers=ALICE)
        assert resp.status == 404
        assert b"bob bytes" not in await resp.read()
        resp = await client.get("/media/bob-private", headers=BOB)
        assert resp.status == 200

    async def test_foreign_encrypted_record_not_found(
        self, client, unlocked, vault_app, media_store,
    ):
        # sealed under a key alice holds; ownership alone must refuse it
        context = vault_app[SESSION_STORAGE].contexts()[0]
        await media_store.put(MediaRecord.sealed(
            "bob-photo", OTHER_OWNER, b"bob jpeg", context, "image/jpeg",
            {"default": b"bob thumb"},
        ))
        media_sig = (await (await sign(client, unlocked, resource_id="bob-photo")).json())["signature"]
        resp = await client.get(f"/media/bob-photo?decrypt=true&sig={media_sig}", headers=ALICE)
        assert resp.status == 404
        thumb_sig = (await (await sign(
            client, unlocked, resource_id="bob-photo", purpose="thumbnail",
        )).json())["signature"]
        resp = await client.get(
            f"/media/bob-photo/thumbnail?decrypt=true&sig={thumb_sig}", headers=ALICE,
        )
        assert resp.status == 404


class TestSweep:

    def test_sweep_vault(self, clock, context):
        issuer = CapabilityIssuer(ttl=300, clock=clock)
        context.on_lock(issuer.on_vault_locked)
        idle = VaultKeyContext(OWNER, clock=clock)
        issuer.issue("photo-1", OWNER, context, CapabilityPurpose.MEDIA)
        clock.advance(301)
        assert sweep_vault(issuer, [context, idle]) == {"purged": 1, "expired": 0}
        clock.advance(3600)
        assert sweep_vault(issuer, [context, idle]) == {"purged": 0, "expired": 1}
        assert not context.is_unlocked

    async def test_sweep_app_drops_expired_sessions(self, vault_app, context):
        storage = vault_app[SESSION_STORAGE]
        stale = storage.new_session(OWNER)
        stale.attach_context(context)
        await storage.save(stale)
        storage._payloads[stale.session_id] = stale.encode(
            {**stale.session_data(), "created": 1000}
        )
        live = storage.new_session(OTHER_OWNER)
        await storage.save(live)
        stats = await sweep_app(vault_app)
        assert stats["sessions"] == 1
        assert storage.payload(stale.session_id) is None
        assert storage.payload(live.session_id) is not None
        assert not context.is_unlocked
