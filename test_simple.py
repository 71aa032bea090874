"""
LunaPass - Self-Tests (crypto, storage, keyring, entries)

Run with: pytest  (or: python test_simple.py)

Covers:
- Envelope round-trip, layout and tamper detection
- Wrong key / wrong passphrase detection
- Content-addressed storage (memory + SQLite)
- Keyring creation, unlock and SLIP-0039 recovery
- Entry chains: add / update / get / rename / delete / list / history
"""

import asyncio
import os
import tempfile

from lunapass import crypto, entries
from lunapass.errors import AlreadyExists, AuthenticationFailed, NotFound, StoreUnavailable
from lunapass.keyring import (combine_recovery_shares, create_keyring, generate_recovery_shares,
                              has_keyring, load_keyring, recover_keyring)
from lunapass.records import INDEX_POINTER, RecordStore
from lunapass.storage import LEGACY, MemoryStore, SQLiteStore, content_identifier

# Cheap scrypt for tests; real databases use crypto.SCRYPT_N
TEST_SCRYPT_N = 2**10


def new_records() -> RecordStore:
    return RecordStore(MemoryStore(), os.urandom(32))


async def chain_of(records: RecordStore, id: str):
    """[(cid, version), ...] from the head of `id`."""
    head = (await records.get_index())[id].head
    return [(cid, version) async for cid, version in entries.walk(records, head)]


# =============================================================================
# Envelope codec
# =============================================================================

def test_seal_round_trip():
    """Passphrase and key envelopes both give back the plaintext."""
    print("Testing Envelope Round-Trip...")

    plaintext = b"This is a secret message!"

    assert crypto.open_envelope(crypto.seal(plaintext, "pw"), "pw") == plaintext
    key = os.urandom(32)
    assert crypto.open_envelope(crypto.seal(plaintext, key), key) == plaintext
    assert crypto.open_envelope(crypto.seal(b"", key), key) == b""

    value = {"b": "2", "a": {"nested": "ü"}}
    assert crypto.open_json(crypto.seal_json(value, key), key) == value

    print("  [OK] Round-trip works")


def test_envelope_layout():
    """nonce || salt || ct || tag for passphrases, nonce || ct || tag for keys."""
    plaintext = b"12345"

    assert len(crypto.seal(plaintext, "pw")) == 12 + 16 + len(plaintext) + 16
    assert len(crypto.seal(plaintext, os.urandom(32))) == 12 + len(plaintext) + 16


def test_seal_is_never_deterministic():
    """Fresh nonce (and salt) every time, so identical plaintexts never collide."""
    key = os.urandom(32)
    assert crypto.seal(b"same", key) != crypto.seal(b"same", key)
    assert crypto.seal(b"same", "pw") != crypto.seal(b"same", "pw")


def test_tampering_detected():
    """Every single-bit flip of an envelope fails authentication."""
    print("Testing Tamper Detection...")

    key = os.urandom(32)
    envelope = crypto.seal(b"secret", key)

    for i in range(len(envelope) * 8):
        tampered = bytearray(envelope)
        tampered[i // 8] ^= 1 << (i % 8)
        try:
            crypto.open_envelope(bytes(tampered), key)
            assert False, f"Bit {i} flip should have been detected"
        except AuthenticationFailed:
            pass

    # Passphrase envelopes: one flip in each region (nonce, salt, ct, tag)
    envelope = crypto.seal(b"secret", "pw")
    for offset in (0, 12, 28, len(envelope) - 1):
        tampered = bytearray(envelope)
        tampered[offset] ^= 0x80
        try:
            crypto.open_envelope(bytes(tampered), "pw")
            assert False, f"Flip at {offset} should have been detected"
        except AuthenticationFailed:
            pass

    print("  [OK] Tampering detection works")


def test_wrong_key_and_garbage():
    """Wrong key, wrong passphrase and truncated input all fail the same way."""
    key_envelope = crypto.seal(b"secret", os.urandom(32))
    pass_envelope = crypto.seal(b"secret", "right")

    cases = [
        (key_envelope, os.urandom(32)),
        (pass_envelope, "wrong"),
        (b"short", os.urandom(32)),
        (pass_envelope[:30], "right"),
    ]
    messages = set()
    for envelope, key in cases:
        try:
            crypto.open_envelope(envelope, key)
            assert False, "Should have failed"
        except AuthenticationFailed as e:
            messages.add(str(e))

    # No hint about which part was wrong
    assert len(messages) == 1


def test_now_iso():
    ts = crypto.now_iso()
    assert ts.endswith("Z") and "T" in ts
    assert len(ts) == len("2024-01-01T00:00:00.000Z")


# =============================================================================
# Storage
# =============================================================================

def test_memory_store():
    async def run():
        store = MemoryStore()
        cid = await store.put(b"data")
        assert cid == content_identifier(b"data")
        assert await store.put(b"data") == cid
        assert await store.get(cid) == b"data"

        await store.delete(cid)
        await store.delete(cid)  # idempotent
        assert await store.get(cid) is None

        assert await store.get_pointer("name") is None
        await store.put_pointer("name", cid)
        assert await store.get_pointer("name") == cid

    asyncio.run(run())


def test_sqlite_store():
    """Objects, pointers, namespaces and backup on a real file."""
    print("Testing SQLite Store...")

    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "test.db")

        async def run():
            store = SQLiteStore.open(db_path)
            legacy = store.namespace(LEGACY)
            try:
                cid = await store.put(b"current")
                legacy_cid = await legacy.put(b"legacy")
                assert cid.startswith("blake2b:")
                assert legacy_cid.startswith("sha256:")

                # Namespaces don't see each other
                assert await legacy.get(cid) is None
                assert await store.get(legacy_cid) is None

                await store.put_pointer("p", cid)
                await store.put_pointer("p", legacy_cid)  # last writer wins
                assert await store.get_pointer("p") == legacy_cid
                assert await legacy.get_pointer("p") is None

                backup_path = db_path + ".bak"
                store.backup(backup_path)
            finally:
                store.close()

            copy = SQLiteStore.open(backup_path)
            try:
                assert await copy.get(cid) == b"current"
                assert await copy.namespace(LEGACY).get(legacy_cid) == b"legacy"
            finally:
                copy.close()

        asyncio.run(run())

        try:
            SQLiteStore.open(os.path.join(tmp, "missing.db"), must_exist=True)
            assert False, "Should require the file"
        except StoreUnavailable:
            pass

    print("  [OK] SQLite store works")


# =============================================================================
# Keyring
# =============================================================================

def test_keyring():
    """Create, unlock, reject wrong passphrase, recover with the phrase."""
    print("Testing Keyring...")

    async def run():
        store = MemoryStore()
        assert not await has_keyring(store)

        keyring, phrase = await create_keyring(store, "pw", n=TEST_SCRYPT_N)
        assert await has_keyring(store)
        assert len(keyring.content_key) == 32
        assert len(phrase) >= 20

        assert (await load_keyring(store, "pw")).content_key == keyring.content_key

        try:
            await load_keyring(store, "wrong")
            assert False, "Wrong passphrase should fail"
        except AuthenticationFailed:
            pass

        recovered = await recover_keyring(store, [" ".join(phrase)], "new", n=TEST_SCRYPT_N)
        assert recovered.content_key == keyring.content_key
        assert (await load_keyring(store, "new")).content_key == keyring.content_key

    asyncio.run(run())

    try:
        asyncio.run(load_keyring(MemoryStore(), "pw"))
        assert False, "No keyring should be NotFound"
    except NotFound:
        pass

    print("  [OK] Keyring works")


def test_recovery_rejects_foreign_shares():
    """Valid phrases for some other secret change nothing."""
    async def run():
        store = MemoryStore()
        keyring, _ = await create_keyring(store, "pw", n=TEST_SCRYPT_N)
        records = RecordStore(store, keyring.content_key)
        await entries.add(records, "site", {"user": "bob"})

        foreign = generate_recovery_shares(os.urandom(32), 1, 1)
        try:
            await recover_keyring(store, foreign, "new", n=TEST_SCRYPT_N)
            assert False, "Foreign shares should be rejected"
        except AuthenticationFailed:
            pass

        # Old passphrase still unlocks, the data is still readable
        unlocked = await load_keyring(store, "pw")
        records = RecordStore(store, unlocked.content_key)
        assert (await entries.get_props(records, "site"))["user"] == "bob"

        try:
            await load_keyring(store, "new")
            assert False, "New passphrase must not have been set"
        except AuthenticationFailed:
            pass

    asyncio.run(run())

    try:
        phrase = generate_recovery_shares(os.urandom(32), 1, 1)
        asyncio.run(recover_keyring(MemoryStore(), phrase, "new", n=TEST_SCRYPT_N))
        assert False, "No keyring should be NotFound"
    except NotFound:
        pass

    print("  [OK] Foreign recovery shares rejected")


def test_recovery_shares():
    """Shamir k-of-n shares of the master secret."""
    secret = os.urandom(32)

    shares = generate_recovery_shares(secret, k=3, n=5)
    assert len(shares) == 5
    assert combine_recovery_shares([shares[0], shares[2], shares[4]]) == secret
    assert combine_recovery_shares([shares[1], shares[3], shares[4]]) == secret

    try:
        combine_recovery_shares([shares[0], shares[1]])
        assert False, "Should require at least k shares"
    except ValueError:
        pass

    for k, n in ((4, 3), (1, 3), (2, 17)):
        try:
            generate_recovery_shares(secret, k, n)
            assert False, f"k={k}, n={n} should be rejected"
        except ValueError:
            pass


# =============================================================================
# Record store
# =============================================================================

def test_index_is_lazy():
    """An empty database yields an empty index and writes nothing."""
    async def run():
        records = new_records()
        assert await records.get_index() == {}
        assert records.store.pointers == {}
        assert records.store.objects == {}

        await records.save_index()
        assert INDEX_POINTER in records.store.pointers

    asyncio.run(run())


def test_index_wrong_key():
    async def run():
        store = MemoryStore()
        records = RecordStore(store, os.urandom(32))
        await entries.add(records, "site", {"user": "bob"})

        try:
            await RecordStore(store, os.urandom(32)).get_index()
            assert False, "Wrong key should fail"
        except AuthenticationFailed:
            pass

    asyncio.run(run())


def test_session_reload():
    """A new session reads back what the previous one saved."""
    async def run():
        store = MemoryStore()
        key = os.urandom(32)
        await entries.add(RecordStore(store, key), "site", {"user": "bob"})

        props = await entries.get_props(RecordStore(store, key), "site")
        assert props["user"] == "bob"

    asyncio.run(run())


def test_get_version_missing_or_undecryptable():
    async def run():
        records = new_records()
        assert await records.get_version("blake2b:00") is None

        foreign = await records.store.put(crypto.seal_json({"props": {}}, os.urandom(32)))
        assert await records.get_version(foreign) is None

    asyncio.run(run())


# =============================================================================
# Entries
# =============================================================================

def test_scenario():
    """add -> get -> update -> get -> delete -> get."""
    print("Testing Entry Lifecycle...")

    async def run():
        records = new_records()

        await entries.add(records, "site", {"user": "bob"})
        props = await entries.get_props(records, "site")
        ts0 = props["added"]
        assert props == {"user": "bob", "updated": ts0, "added": ts0}

        await entries.update(records, "site", {"user": "bob2"})
        props = await entries.get_props(records, "site")
        assert props["user"] == "bob2"
        assert props["added"] == ts0
        assert props["updated"] >= ts0

        chain = await chain_of(records, "site")
        assert len(chain) == 2

        await entries.delete(records, "site")
        try:
            await entries.get_props(records, "site")
            assert False, "Deleted entry should be NotFound"
        except NotFound:
            pass

        for cid, _ in chain:
            assert await records.store.get(cid) is None

    asyncio.run(run())
    print("  [OK] Lifecycle works")


def test_preconditions():
    async def run():
        records = new_records()
        await entries.add(records, "a", {"k": "v"})

        for call, error in [
            (entries.add(records, "a", {}), AlreadyExists),
            (entries.update(records, "missing", {"k": "v"}), NotFound),
            (entries.get_entry(records, "missing"), NotFound),
            (entries.delete(records, "missing"), NotFound),
            (entries.history(records, "missing"), NotFound),
        ]:
            try:
                await call
                assert False, f"Should raise {error.__name__}"
            except error:
                pass

    asyncio.run(run())


def test_add_keeps_added_out_of_versions():
    async def run():
        records = new_records()
        await entries.add(records, "a", {"k": "v", "added": "2020-01-01T00:00:00.000Z"})

        assert (await records.get_index())["a"].added == "2020-01-01T00:00:00.000Z"
        version = await entries.get_entry(records, "a")
        assert "added" not in version.props
        assert version.prev is None
        assert "updated" in version.props

    asyncio.run(run())


def test_chain_integrity():
    """N writes give N versions, newest first, ending at the original props."""
    async def run():
        records = new_records()
        await entries.add(records, "e", {"n": "0"})
        for i in range(1, 6):
            await entries.update(records, "e", {"n": str(i)})

        chain = await chain_of(records, "e")
        assert [v.props["n"] for _, v in chain] == ["5", "4", "3", "2", "1", "0"]
        assert chain[-1][1].prev is None
        assert "added" not in chain[-1][1].props

        history = await entries.history(records, "e")
        assert [p["n"] for p in history] == ["5", "4", "3", "2", "1", "0"]

    asyncio.run(run())


def test_update_merges_and_deletes_keys():
    async def run():
        records = new_records()
        await entries.add(records, "e", {"user": "bob", "pin": "1234"})
        added = (await records.get_index())["e"].added

        await entries.update(records, "e", {"url": "x.com", "added": "1999-01-01T00:00:00Z"},
                             keys_to_delete=["pin"])
        props = await entries.get_props(records, "e")
        assert props["user"] == "bob"
        assert props["url"] == "x.com"
        assert "pin" not in props
        assert props["added"] == added

        await entries.update(records, "e", {"updated": "2030-01-01T00:00:00.000Z"})
        assert (await entries.get_props(records, "e"))["updated"] == "2030-01-01T00:00:00.000Z"

    asyncio.run(run())


def test_rename_preserves_history():
    async def run():
        records = new_records()
        await entries.add(records, "a", {"k": "1"})
        await entries.update(records, "a", {"k": "2"})
        before = (await records.get_index())["a"]
        chain = await chain_of(records, "a")
        await entries.add(records, "c", {})

        await entries.rename(records, "a", "b")

        assert (await records.get_index())["b"] == before
        assert await chain_of(records, "b") == chain
        try:
            await entries.get_entry(records, "a")
            assert False, "Old ID should be NotFound"
        except NotFound:
            pass

        try:
            await entries.rename(records, "b", "c")
            assert False, "Should not overwrite an existing entry"
        except AlreadyExists:
            pass
        try:
            await entries.rename(records, "a", "d")
            assert False, "Old ID must exist"
        except NotFound:
            pass

    asyncio.run(run())


def test_delete_tolerates_missing_history():
    """A chain with a middle version already gone still deletes cleanly."""
    async def run():
        records = new_records()
        await entries.add(records, "e", {"n": "0"})
        for i in range(1, 4):
            await entries.update(records, "e", {"n": str(i)})
        chain = await chain_of(records, "e")

        await records.store.delete(chain[2][0])
        await entries.delete(records, "e")

        assert "e" not in await records.get_index()
        assert await records.store.get(chain[0][0]) is None
        assert await records.store.get(chain[1][0]) is None
        # Beyond the gap is unreachable, so it stays
        assert await records.store.get(chain[3][0]) is not None

    asyncio.run(run())


class FlakyStore(MemoryStore):
    """Fails deletes of chosen CIDs."""

    def __init__(self):
        super().__init__()
        self.fail = set()
        self.deleted = []

    async def delete(self, cid):
        if cid in self.fail:
            raise StoreUnavailable(f"cannot delete {cid}")
        self.deleted.append(cid)
        await super().delete(cid)


def test_delete_reports_every_failure():
    async def run():
        store = FlakyStore()
        records = RecordStore(store, os.urandom(32))
        await entries.add(records, "e", {"n": "0"})
        for i in range(1, 4):
            await entries.update(records, "e", {"n": str(i)})
        chain = await chain_of(records, "e")
        store.fail = {chain[0][0], chain[2][0]}

        try:
            await entries.delete(records, "e")
            assert False, "Should report failures"
        except StoreUnavailable as e:
            assert len(e.errors) == 2

        # The other branches still ran
        assert store.deleted == [chain[1][0], chain[3][0]]
        assert "e" not in await RecordStore(store, records.key).get_index()

    asyncio.run(run())


def test_list_ids():
    async def run():
        records = new_records()
        for id in ("beta", "Alpha", "gamma", "alphabet"):
            await entries.add(records, id, {})

        assert await entries.list_ids(records) == ["Alpha", "alphabet", "beta", "gamma"]
        assert await entries.list_ids(records, " ALPHA ") == ["Alpha", "alphabet"]
        assert await entries.list_ids(records, "zzz") == []

    asyncio.run(run())


def run_all_tests():
    """Run every test in this file."""
    print("=" * 70)
    print("LunaPass - Test Suite")
    print("=" * 70)
    print()

    tests = [v for k, v in sorted(globals().items()) if k.startswith("test_") and callable(v)]
    failed = []

    for test in tests:
        try:
            test()
        except Exception as e:
            print(f"  [FAIL] {test.__name__}: {e!r}")
            failed.append((test.__name__, e))

    print("=" * 70)
    if not failed:
        print("[OK] ALL TESTS PASSED!")
    else:
        print(f"[FAIL] {len(failed)} TESTS FAILED:")
        for name, error in failed:
            print(f"  - {name}: {error}")
    print("=" * 70)

    return len(failed) == 0


if __name__ == "__main__":
    import sys
    sys.exit(0 if run_all_tests() else 1)
