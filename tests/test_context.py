"""Tests for VaultKeyContext lifecycle and key access."""
import logging
import threading

import pytest

from media_vault.exceptions import DecryptionFailed, InvalidPassphrase, VaultLocked
from media_vault.vault.context import VaultKeyContext, VaultState, setup_credentials
from media_vault.vault.crypto import verify_password

from .conftest import OWNER, PASSPHRASE, TEST_ITERATIONS


class TestSetupCredentials:

    def test_hash_verifies(self, credentials):
        assert credentials.owner_id == OWNER
        assert credentials.kdf_iterations == TEST_ITERATIONS
        assert verify_password(PASSPHRASE, credentials.passphrase_hash, TEST_ITERATIONS)

    def test_key_salt_independent_of_hash_salt(self, credentials):
        hash_salt = credentials.passphrase_hash.split(":")[0]
        assert credentials.key_salt != hash_salt
        assert len(bytes.fromhex(credentials.key_salt)) == 32


class TestUnlock:

    def test_starts_locked(self, clock):
        ctx = VaultKeyContext(OWNER, clock=clock)
        assert ctx.state is VaultState.LOCKED
        assert ctx.token is None
        assert ctx.expires_at is None
        with pytest.raises(VaultLocked):
            ctx.encrypt(b"data")

    def test_unlock(self, clock, credentials):
        ctx = VaultKeyContext(OWNER, timeout=600, clock=clock)
        assert ctx.unlock(PASSPHRASE, credentials) is ctx
        assert ctx.is_unlocked
        assert ctx.state is VaultState.UNLOCKED
        assert ctx.token
        assert ctx.unlocked_at == clock.now
        assert ctx.expires_at == clock.now + 600
        assert ctx.salt == bytes.fromhex(credentials.key_salt)

    def test_wrong_passphrase_leaves_no_key(self, clock, credentials):
        ctx = VaultKeyContext(OWNER, clock=clock)
        with pytest.raises(InvalidPassphrase):
            ctx.unlock("wrong passphrase", credentials)
        assert ctx.state is VaultState.LOCKED
        assert ctx._key is None
        with pytest.raises(VaultLocked):
            with ctx.key():
                pass

    def test_credentials_of_other_owner(self, clock, other_credentials):
        ctx = VaultKeyContext(OWNER, clock=clock)
        with pytest.raises(ValueError):
            ctx.unlock(PASSPHRASE, other_credentials)

    def test_unlock_twice_keeps_context(self, context, credentials):
        token = context.token
        assert context.unlock(PASSPHRASE, credentials) is context
        assert context.token == token

    def test_unlock_twice_still_checks_passphrase(self, context, credentials):
        with pytest.raises(InvalidPassphrase):
            context.unlock("wrong passphrase", credentials)
        assert context.is_unlocked

    def test_same_passphrase_same_key_across_contexts(self, context, clock, credentials):
        blob = context.encrypt(b"persisted")
        later = VaultKeyContext(OWNER, clock=clock).unlock(PASSPHRASE, credentials)
        assert later.token != context.token
        assert later.decrypt(blob) == b"persisted"

    def test_verify_token(self, context):
        assert context.verify_token(context.token)
        assert not context.verify_token("forged")
        assert not context.verify_token(None)


class TestLock:

    def test_lock_zeroes_key(self, context):
        key = context._key
        assert any(key)
        assert context.lock() is True
        assert key == bytearray(len(key))
        assert context._key is None
        assert context.token is None
        assert context.salt is None
        assert context.state is VaultState.LOCKED

    def test_lock_is_idempotent(self, context):
        assert context.lock() is True
        assert context.lock() is False

    def test_listeners_receive_reason(self, context):
        calls = []
        context.on_lock(lambda ctx, reason: calls.append((ctx, reason)))
        context.lock(reason="session")
        assert calls == [(context, "session")]

    def test_failing_listener_does_not_block_others(self, context, caplog):
        calls = []

        def broken(ctx, reason):
            raise RuntimeError("listener bug")

        context.on_lock(broken)
        context.on_lock(lambda ctx, reason: calls.append(reason))
        with caplog.at_level(logging.ERROR, logger="mediavault.vault"):
            assert context.lock() is True
        assert calls == ["explicit"]
        assert not context.is_unlocked
        assert any("Lock listener" in r.getMessage() for r in caplog.records)

    def test_remove_listener(self, context):
        calls = []

        def listener(ctx, reason):
            calls.append(reason)

        context.on_lock(listener)
        context.remove_listener(listener)
        context.remove_listener(listener)
        context.lock()
        assert calls == []

    def test_key_unusable_after_lock(self, context):
        context.lock()
        with pytest.raises(VaultLocked):
            context.decrypt(b"\x00" * 80)

    def test_relock_after_unlock(self, context, credentials):
        context.lock()
        context.unlock(PASSPHRASE, credentials)
        assert context.is_unlocked

    def test_lock_waits_for_key_holder(self, context):
        entered = threading.Event()
        release = threading.Event()

        def reader():
            with context.key():
                entered.set()
                release.wait(5)

        holder = threading.Thread(target=reader)
        holder.start()
        assert entered.wait(5)

        locker = threading.Thread(target=context.lock)
        locker.start()
        locker.join(0.2)
        try:
            assert locker.is_alive()
            # closing: no new key users, reported as locked
            assert not context.is_unlocked
            with pytest.raises(VaultLocked):
                with context.key():
                    pass
        finally:
            release.set()
            holder.join(5)
            locker.join(5)
        assert not locker.is_alive()
        assert context._key is None


class TestTimeout:

    def test_expires_after_timeout(self, context, clock):
        calls = []
        context.on_lock(lambda ctx, reason: calls.append(reason))
        clock.advance(3599)
        assert context.is_unlocked
        assert context.expire_if_due() is False
        clock.advance(1)
        assert not context.is_unlocked
        assert context.token is None
        assert context.expire_if_due() is True
        assert calls == ["timeout"]

    def test_key_access_after_timeout(self, context, clock):
        calls = []
        context.on_lock(lambda ctx, reason: calls.append(reason))
        clock.advance(3601)
        with pytest.raises(VaultLocked):
            context.encrypt(b"late")
        assert calls == ["timeout"]
        assert context._key is None


class TestEnvelope:

    def test_wrap_unwrap(self, context):
        file_key = b"k" * 32
        wrapped = context.wrap_key(file_key)
        assert isinstance(wrapped, str)
        assert context.unwrap_key(wrapped) == file_key

    def test_seal_open(self, context):
        blob, wrapped = context.seal(b"raw jpeg bytes")
        assert b"raw jpeg bytes" not in blob
        assert context.open(blob, wrapped) == b"raw jpeg bytes"

    def test_seal_reuses_file_key(self, context):
        blob, wrapped = context.seal(b"full size")
        thumb, same = context.seal(b"thumb", wrapped)
        assert same == wrapped
        assert context.open(thumb, wrapped) == b"thumb"

    def test_other_vault_cannot_open(self, context, other_context):
        blob, wrapped = context.seal(b"private")
        with pytest.raises(DecryptionFailed):
            other_context.open(blob, wrapped)

    def test_open_requires_unlock(self, context):
        blob, wrapped = context.seal(b"private")
        context.lock()
        with pytest.raises(VaultLocked):
            context.open(blob, wrapped)
