"""
LunaPass - Record Store

The index and the version objects, sealed with the keyring's content key.

Data model:
    Index (one object behind the "lunapass" pointer):
        {entry id: {"added": <ISO timestamp>, "head": <CID>}}

    Version object (immutable, one per edit):
        {"prev": <CID of the previous version> (absent for the first),
         "props": {key: value, ..., "updated": <ISO timestamp>}}

Walking head -> prev -> prev ... gives the full history, newest first.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from . import crypto
from .errors import AuthenticationFailed, NotFound
from .storage import ObjectStore

INDEX_POINTER = "lunapass"


@dataclass
class IndexValue:
    added: str
    head: str

    def to_json(self) -> dict:
        return {"added": self.added, "head": self.head}

    @classmethod
    def from_json(cls, value: dict) -> "IndexValue":
        return cls(added=value["added"], head=value["head"])


@dataclass
class VersionObject:
    props: Dict[str, str] = field(default_factory=dict)
    prev: Optional[str] = None

    def to_json(self) -> dict:
        value = {"props": self.props}
        if self.prev is not None:
            value["prev"] = self.prev
        return value

    @classmethod
    def from_json(cls, value: dict) -> "VersionObject":
        return cls(props=dict(value.get("props") or {}), prev=value.get("prev"))


Index = Dict[str, IndexValue]


class RecordStore:
    """
    One session against a database.

    Owns the index cache: it's loaded on first use and then read-modify-write
    within this process. Saving replaces the whole index (no CAS, last
    writer wins across processes).

    Usage:
        records = RecordStore(store, keyring.content_key)
        index = await records.get_index()
        ...
        records.close()
    """

    def __init__(self, store: ObjectStore, key: bytes, index_name: str = INDEX_POINTER):
        self.store = store
        self.key = key
        self.index_name = index_name
        self._index: Optional[Index] = None

    async def get_index(self) -> Index:
        """
        Load the index (cached for the session).

        A database without an index pointer yields an empty index; nothing is
        written until the first save.

        Raises:
            AuthenticationFailed: Wrong key
            NotFound: The pointer names an object that is gone
        """
        if self._index is None:
            cid = await self.store.get_pointer(self.index_name)
            if cid is None:
                self._index = {}
            else:
                data = await self.store.get(cid)
                if data is None:
                    raise NotFound(f"Index object {cid} is missing")
                raw = crypto.open_json(data, self.key)
                self._index = {id: IndexValue.from_json(v) for id, v in raw.items()}
        return self._index

    async def save_index(self, new_index: Optional[Index] = None) -> str:
        """Seal and store the index (or `new_index`, which becomes the cache)."""
        if new_index is not None:
            self._index = new_index
        index = await self.get_index()
        cid = await self.put_blob(crypto.encode_json(
            {id: value.to_json() for id, value in index.items()}
        ))
        await self.store.put_pointer(self.index_name, cid)
        return cid

    async def get_version(self, cid: str) -> Optional[VersionObject]:
        """
        Load a version object.

        Returns None if the object is missing or can't be decrypted, so chain
        walks end cleanly on partially deleted history.
        """
        data = await self.get_blob(cid)
        return VersionObject.from_json(crypto.decode_json(data)) if data is not None else None

    async def put_version(self, version: VersionObject) -> str:
        return await self.put_blob(crypto.encode_json(version.to_json()))

    async def get_blob(self, cid: str) -> Optional[bytes]:
        data = await self.store.get(cid)
        if data is None:
            return None
        try:
            return crypto.open_envelope(data, self.key)
        except AuthenticationFailed:
            return None

    async def put_blob(self, plaintext: bytes) -> str:
        return await self.store.put(crypto.seal(plaintext, self.key))

    def close(self) -> None:
        """End the session: drop the cached index and close the store."""
        self._index = None
        self.store.close()
