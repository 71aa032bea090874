"""
LunaPass - Legacy Reader

Read access to databases written before keyrings existed. Every legacy
object is a passphrase envelope (PBKDF2 per object), the index values name
their head `cid` instead of `head`, and CIDs are sha256.
"""

from typing import Dict, Optional

from . import crypto
from .errors import NotFound
from .records import INDEX_POINTER, IndexValue, VersionObject
from .storage import ObjectStore


class LegacyAdapter:
    """
    Usage:
        legacy = LegacyAdapter(store.namespace(LEGACY), passphrase)
        index = await legacy.get_index()
        version = await legacy.get_version(index["github"].head)
    """

    def __init__(self, store: ObjectStore, passphrase: str, index_name: str = INDEX_POINTER):
        self.store = store
        self.passphrase = passphrase
        self.index_name = index_name
        self._index: Optional[Dict[str, IndexValue]] = None

    async def get_index(self) -> Dict[str, IndexValue]:
        """
        Load the legacy index (cached). Empty if there is none.

        Raises:
            AuthenticationFailed: Wrong passphrase
            NotFound: The pointer names an object that is gone
        """
        if self._index is None:
            cid = await self.store.get_pointer(self.index_name)
            raw = {}
            if cid is not None:
                data = await self.store.get(cid)
                if data is None:
                    raise NotFound(f"Legacy index object {cid} is missing")
                raw = crypto.open_json(data, self.passphrase)
            self._index = {
                id: IndexValue(added=value["added"], head=value["cid"])
                for id, value in raw.items()
            }
        return self._index

    async def get_version(self, cid: str) -> Optional[VersionObject]:
        """
        Load a legacy version object, or None if it's missing.

        Raises:
            AuthenticationFailed: The object exists but won't decrypt
        """
        data = await self.store.get(cid)
        if data is None:
            return None
        return VersionObject.from_json(crypto.open_json(data, self.passphrase))
