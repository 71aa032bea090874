"""
LunaPass - Entry Operations

add / update / get / rename / delete / list on top of the record store.

An entry is either absent (no index value) or present. Every write makes a
new immutable version object whose `prev` is the old head; the index only
ever moves the head. `added` lives in the index and never changes after
creation; `updated` lives in the props of every version.
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple

from . import crypto
from .errors import AlreadyExists, NotFound, StoreUnavailable
from .records import IndexValue, RecordStore, VersionObject

logger = logging.getLogger(__name__)

# Props managed by LunaPass itself
ADDED = "added"
UPDATED = "updated"


async def _require(records: RecordStore, id: str) -> IndexValue:
    value = (await records.get_index()).get(id)
    if value is None:
        raise NotFound(f"Entry '{id}' does not exist")
    return value


async def _require_absent(records: RecordStore, id: str) -> None:
    if id in await records.get_index():
        raise AlreadyExists(f"Entry '{id}' already exists")


async def add(records: RecordStore, id: str, props: Mapping[str, str]) -> IndexValue:
    """
    Create an entry.

    `updated` defaults to now. An `added` prop, if given, becomes the index
    creation time instead of being stored in the version.

    Raises:
        AlreadyExists: `id` is already present
    """
    await _require_absent(records, id)

    props = dict(props)
    now = crypto.now_iso()
    props.setdefault(UPDATED, now)
    added = props.pop(ADDED, None) or now

    index = await records.get_index()
    index[id] = IndexValue(added=added, head=await records.put_version(VersionObject(props)))
    await records.save_index()
    logger.debug("Added entry %s", id)
    return index[id]


async def update(records: RecordStore, id: str, patch: Optional[Mapping[str, str]] = None,
                 keys_to_delete: Iterable[str] = ()) -> IndexValue:
    """
    Write a new version of an entry.

    The new props are the current props, minus `keys_to_delete`, merged with
    `patch`. `updated` is set to now unless the patch supplies it. `added`
    can't be changed; a patched value is ignored.

    Raises:
        NotFound: `id` is absent or its head can't be read
    """
    value = await _require(records, id)
    props = await get_props(records, id)
    del props[ADDED]

    for key in keys_to_delete:
        props.pop(key, None)

    patch = dict(patch or {})
    if patch.pop(ADDED, None) is not None:
        logger.warning("Ignoring '%s' for %s: creation time can't be updated", ADDED, id)
    patch.setdefault(UPDATED, crypto.now_iso())
    props.update(patch)

    head = await records.put_version(VersionObject(props, prev=value.head))
    index = await records.get_index()
    index[id] = IndexValue(added=value.added, head=head)
    await records.save_index()
    logger.debug("Updated entry %s", id)
    return index[id]


async def get_entry(records: RecordStore, id: str) -> VersionObject:
    """
    The head version of an entry.

    Raises:
        NotFound: `id` is absent or its head can't be read
    """
    value = await _require(records, id)
    version = await records.get_version(value.head)
    if version is None:
        raise NotFound(f"Entry '{id}' not found")
    return version


async def get_props(records: RecordStore, id: str) -> Dict[str, str]:
    """Head props plus `added` from the index."""
    version = await get_entry(records, id)
    props = dict(version.props)
    props[ADDED] = (await records.get_index())[id].added
    return props


async def rename(records: RecordStore, old_id: str, new_id: str) -> None:
    """
    Give an entry a new ID. Only the index changes; versions are untouched.

    Raises:
        NotFound: `old_id` is absent
        AlreadyExists: `new_id` is present
    """
    await _require(records, old_id)
    await _require_absent(records, new_id)

    index = await records.get_index()
    index[new_id] = index.pop(old_id)
    await records.save_index()
    logger.debug("Renamed entry %s -> %s", old_id, new_id)


async def walk(records: RecordStore, head: Optional[str]) -> AsyncIterator[Tuple[str, Optional[VersionObject]]]:
    """
    Yield (cid, version) from `head` backwards.

    Stops after the first version without `prev`, or after the first CID
    that can't be loaded (yielded with version None).
    """
    cid = head
    while cid:
        version = await records.get_version(cid)
        yield cid, version
        if version is None:
            break
        cid = version.prev


async def history(records: RecordStore, id: str) -> List[Dict[str, str]]:
    """Props of every reachable version, newest first."""
    value = await _require(records, id)
    return [version.props async for _, version in walk(records, value.head) if version]


async def delete(records: RecordStore, id: str) -> None:
    """
    Remove an entry and every version reachable from its head.

    The index save and the object deletions run concurrently. A missing
    version ends the walk quietly (history already trimmed). Every branch is
    awaited before any failure is reported.

    Raises:
        NotFound: `id` is absent
        StoreUnavailable: One or more branches failed (all listed)
    """
    await _require(records, id)
    index = await records.get_index()
    head = index.pop(id).head

    tasks = [asyncio.ensure_future(records.save_index())]
    async for cid, _ in walk(records, head):
        tasks.append(asyncio.ensure_future(records.store.delete(cid)))

    results = await asyncio.gather(*tasks, return_exceptions=True)
    errors = [r for r in results if isinstance(r, BaseException)]
    for error in errors:
        logger.error("Deleting %s: %s", id, error)
    if errors:
        raise StoreUnavailable(f"{len(errors)} operation(s) failed deleting '{id}'", errors)
    logger.debug("Deleted entry %s (%d objects)", id, len(tasks) - 1)


async def list_ids(records: RecordStore, search: Optional[str] = None) -> List[str]:
    """All entry IDs, sorted. `search` filters by case-insensitive substring."""
    ids = list(await records.get_index())
    if search:
        search = search.strip().lower()
        ids = [id for id in ids if search in id.lower()]
    return sorted(ids)
