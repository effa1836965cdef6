"""
Vault Key Rewrap — Re-seal per-file keys when the vault passphrase changes.

Media blobs are encrypted under random per-file keys; only the wrapped file
keys depend on the vault key. A passphrase change therefore rewraps keys in
batches and leaves the media bytes untouched.

Security Note:
    File keys exist in memory only while each record is rewrapped.
    Never log keys or wrapped key values.
"""
import logging
from typing import Any

from .context import VaultKeyContext
from ..exceptions import VaultError, VaultLocked

logger = logging.getLogger("mediavault.vault")


async def rewrap_vault_keys(
    store: Any,
    owner_id: str,
    old_context: VaultKeyContext,
    new_context: VaultKeyContext,
    batch_size: int = 100,
) -> dict:
    """Rewrap all encrypted records of owner_id from old_context to new_context.

    Args:
        store: AbstractMediaStore-compatible media store.
        owner_id: Vault owner whose records are rewrapped.
        old_context: Unlocked context holding the current vault key.
        new_context: Unlocked context holding the new vault key.
        batch_size: Number of records read per batch.

    Returns:
        Stats dict with keys: total, rewrapped, errors.

    Raises:
        VaultLocked: If either context is locked.
        ValueError: If a context belongs to another owner.
    """
    owner_id = str(owner_id)
    for context in (old_context, new_context):
        if context.owner_id != owner_id:
            raise ValueError("Key context belongs to a different vault owner")
        if not context.is_unlocked:
            raise VaultLocked()

    stats = {"total": 0, "rewrapped": 0, "errors": 0}
    offset = 0

    logger.info(
        "Starting key rewrap for owner=%s (batch_size=%d)", owner_id, batch_size,
    )

    while True:
        records = await store.list_encrypted(owner_id, limit=batch_size, offset=offset)
        if not records:
            break

        batch_num = (offset // batch_size) + 1
        logger.info("Processing batch %d (%d records)", batch_num, len(records))

        for record in records:
            stats["total"] += 1
            try:
                file_key = old_context.unwrap_key(record.wrapped_key)
                wrapped = new_context.wrap_key(file_key)
                await store.update_wrapped_key(record.resource_id, wrapped)
                stats["rewrapped"] += 1
            except VaultLocked:
                raise
            except (VaultError, KeyError, TypeError) as err:
                logger.error(
                    "Error rewrapping resource=%s: %s",
                    record.resource_id, type(err).__name__,
                )
                stats["errors"] += 1

        offset += len(records)

    logger.info("Key rewrap complete: %s", stats)
    return stats
