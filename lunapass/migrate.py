"""
LunaPass - Migration

One-time move of a legacy database (passphrase envelopes) to the keyring
scheme, keeping every entry's full history.

Steps:
    1. Skip if a keyring already exists (already migrated)
    2. Read the legacy index - a wrong passphrase fails HERE, before any write
    3. Skip if there is nothing to migrate
    4. Back up the database file to <db>.bak (never deleted automatically)
    5. Create a keyring from the same passphrase
    6. For every entry, rebuild its chain oldest-first under the new key
    7. Save the new index (same `added` values)
    8. Verify: re-read both schemes and compare every generation

Nothing is rolled back on failure: the backup is the recovery path.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from . import crypto
from .entries import walk
from .errors import AuthenticationFailed, Mismatch, MigrationVerificationFailed
from .keyring import create_keyring, has_keyring
from .legacy import LegacyAdapter
from .records import Index, IndexValue, RecordStore, VersionObject
from .storage import LEGACY, ObjectStore, SQLiteStore

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    migrated: bool
    entries: int = 0
    backup_path: Optional[str] = None
    recovery_phrase: List[str] = field(default_factory=list)


class MigrationEngine:
    """
    Usage:
        engine = MigrationEngine(store, LegacyAdapter(store.namespace(LEGACY), passphrase),
                                 backup_path="lunapass.db.bak")
        report = await engine.run()
    """

    def __init__(self, store: ObjectStore, legacy: LegacyAdapter, backup_path: str,
                 scrypt_n: int = crypto.SCRYPT_N):
        self.store = store
        self.legacy = legacy
        self.backup_path = backup_path
        self.scrypt_n = scrypt_n

    async def run(self) -> MigrationReport:
        """
        Migrate if needed.

        Raises:
            AuthenticationFailed: Wrong passphrase (nothing has been written)
            MigrationVerificationFailed: The new data doesn't match; the new
                index and the backup are left in place for inspection
        """
        if await has_keyring(self.store):
            logger.debug("Keyring exists; already migrated")
            return MigrationReport(migrated=False)

        original = await self.legacy.get_index()
        if not original:
            return MigrationReport(migrated=False)

        # Private copy: the adapter's cache must not be touched while rebuilding
        original = {id: IndexValue(v.added, v.head) for id, v in original.items()}

        self.store.backup(self.backup_path)
        logger.info("Backup made at %s", self.backup_path)
        logger.info("Beginning migration of %d entries...", len(original))

        keyring, phrase = await create_keyring(self.store, self.legacy.passphrase, self.scrypt_n)
        records = RecordStore(self.store, keyring.content_key)

        mismatches: List[Mismatch] = []
        new_index: Index = {}
        for id, value in original.items():
            head = await self._copy_chain(records, value.head)
            if head is None:
                logger.error("%s: head object is missing, entry not migrated", id)
                mismatches.append((id, 0, "missing"))
                continue
            new_index[id] = IndexValue(added=value.added, head=head)

        await records.save_index(new_index)
        logger.info("Migration complete.\nRunning checks...")

        # Fresh session so the index is read back from storage
        mismatches += await self.verify(RecordStore(self.store, keyring.content_key), original)
        if mismatches:
            raise MigrationVerificationFailed(mismatches)

        logger.info("Checks pass. Backup kept at %s", self.backup_path)
        return MigrationReport(True, len(original), self.backup_path, phrase)

    async def _old_chain(self, head: str) -> Tuple[List[Dict[str, str]], bool]:
        """
        Props of a legacy chain, newest first, and whether the walk got all
        the way to the first version. A missing or unreadable object ends it
        early.
        """
        chain = []
        cid: Optional[str] = head
        while cid:
            try:
                version = await self.legacy.get_version(cid)
            except AuthenticationFailed:
                version = None
            if version is None:
                logger.error("Legacy object %s is missing or unreadable", cid)
                return chain, False
            chain.append(version.props)
            cid = version.prev
        return chain, True

    async def _copy_chain(self, records: RecordStore, head: str) -> Optional[str]:
        """Rewrite one chain under the new key. Returns the new head CID."""
        # Newest first, so the oldest is on top of the stack
        stack, _ = await self._old_chain(head)

        prev = None
        while stack:
            prev = await records.put_version(VersionObject(stack.pop(), prev))
        return prev

    async def verify(self, records: RecordStore, original: Index) -> List[Mismatch]:
        """
        Compare the new index and chains against the legacy ones.

        Every mismatch is logged and collected; checking never stops early.
        """
        mismatches: List[Mismatch] = []

        def mismatch(id: str, generation: int, kind: str) -> None:
            logger.error("%s{%d}: %s does not match", id, generation, kind)
            mismatches.append((id, generation, kind))

        after = await records.get_index()

        for id in after.keys() - original.keys():
            mismatch(id, 0, "extra")

        for id, value in original.items():
            new_value = after.get(id)
            if new_value is None:
                continue  # already reported while copying
            if new_value.added != value.added:
                mismatch(id, 0, "added")

            old_chain, reached_root = await self._old_chain(value.head)
            generation = 0
            complete = True
            async for _, version in walk(records, new_value.head):
                if version is None:
                    mismatch(id, generation, "missing")
                    complete = False
                    break
                if generation >= len(old_chain):
                    mismatch(id, generation, "prev")
                    complete = False
                    break
                if crypto.encode_json(version.props) != crypto.encode_json(old_chain[generation]):
                    mismatch(id, generation, "props")
                generation += 1

            if not reached_root:
                mismatch(id, len(old_chain), "missing")
            elif complete and generation != len(old_chain):
                mismatch(id, generation, "prev")

        return mismatches


async def migrate(db_path: str, passphrase: str, scrypt_n: int = crypto.SCRYPT_N) -> MigrationReport:
    """Migrate the database file at `db_path` (backup: `<db_path>.bak`)."""
    store = SQLiteStore.open(db_path, must_exist=True)
    try:
        engine = MigrationEngine(
            store,
            LegacyAdapter(store.namespace(LEGACY), passphrase),
            backup_path=f"{db_path}.bak",
            scrypt_n=scrypt_n,
        )
        return await engine.run()
    finally:
        store.close()
