"""
LunaPass - Command Line Interface

Usage:
    lunapass add github -p user=alice -s password
    lunapass update github -p user=alice2 -d old-key
    lunapass get github
    lunapass list [search]
    lunapass rename github github-work
    lunapass delete github-work
    lunapass history github
    lunapass note
    lunapass migrate
    lunapass recovery-create -k 3 -n 5
    lunapass recover
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from . import __version__, entries
from .errors import AlreadyExists, LunaPassError
from .keyring import (create_keyring, format_recovery_kit, generate_recovery_shares,
                      has_keyring, load_keyring, recover_keyring,
                      unlock_with_shares)
from .legacy import LegacyAdapter
from .migrate import MigrationEngine, migrate
from .note import edit_note
from .records import INDEX_POINTER, RecordStore
from .storage import LEGACY, SQLiteStore

DATA_DIR = os.environ.get("LUNAPASS_HOME") or os.path.join(os.path.expanduser("~"), ".lunapass")
DB_FILENAME = "lunapass.db"
LEGACY_DB_FILENAME = "astrobase.sql"

DATE_PROPS = (entries.ADDED, entries.UPDATED)


# =============================================================================
# Configuration
# =============================================================================

def default_db_path(data_dir: str = DATA_DIR) -> str:
    """
    Default database path, creating the data directory.

    Older versions used a different file name; it's renamed into place if
    the new one doesn't exist yet.
    """
    os.makedirs(data_dir, exist_ok=True)
    db_path = os.path.join(data_dir, DB_FILENAME)
    legacy_path = os.path.join(data_dir, LEGACY_DB_FILENAME)
    if not os.path.exists(db_path) and os.path.exists(legacy_path):
        os.rename(legacy_path, db_path)
    return db_path


class PassphrasePrompt:
    """Asks for the database passphrase once per process."""

    def __init__(self, prompt: Optional[Callable[[str], str]] = None):
        self.prompt = prompt or getpass.getpass
        self.passphrase: Optional[str] = None

    def __call__(self, prefix: str = "Enter") -> str:
        if self.passphrase is None:
            self.passphrase = self.prompt(f"{prefix} database passphrase: ")
        return self.passphrase

    def confirm(self) -> bool:
        return self.prompt("Confirm database passphrase: ") == self.passphrase


# =============================================================================
# Opening a database
# =============================================================================

def print_recovery_phrase(words: List[str]) -> None:
    print("\nRecovery phrase (write it down, it is shown only once):\n")
    print(f"  {' '.join(words)}\n")


async def open_records(db_path: str, ask: PassphrasePrompt) -> RecordStore:
    """
    Open a session, migrating a legacy database or creating a new one first.
    """
    store = SQLiteStore.open(db_path)
    try:
        if not await has_keyring(store):
            legacy_store = store.namespace(LEGACY)
            if await legacy_store.get_pointer(INDEX_POINTER) is not None:
                engine = MigrationEngine(store, LegacyAdapter(legacy_store, ask()), f"{db_path}.bak")
                report = await engine.run()
                if report.migrated:
                    print_recovery_phrase(report.recovery_phrase)

        if not await has_keyring(store):
            passphrase = ask("Choose a")
            if not ask.confirm():
                raise LunaPassError("Passphrases do not match")
            keyring, phrase = await create_keyring(store, passphrase)
            print(f"✓ Database created at {db_path}")
            print_recovery_phrase(phrase)
            return RecordStore(store, keyring.content_key)

        keyring = await load_keyring(store, ask())
        return RecordStore(store, keyring.content_key)
    except BaseException:
        store.close()
        raise


# =============================================================================
# Argument types
# =============================================================================

def parse_property(value: str) -> Tuple[str, str]:
    """key=value, where the key and value are both non-empty."""
    sep = value.find("=")
    if sep <= 0 or sep == len(value) - 1:
        raise argparse.ArgumentTypeError(
            "--property expects a key value pair, e.g. `--property key=value`")
    key, val = value[:sep], value[sep + 1:]
    if key in DATE_PROPS:
        try:
            datetime.fromisoformat(val.replace("Z", "+00:00"))
        except ValueError:
            raise argparse.ArgumentTypeError(f"Property '{key}' must use date format") from None
    return key, val


def parse_secret_key(value: str) -> str:
    if "=" in value:
        print("WARN: Secrets may have been leaked via command line input", file=sys.stderr)
        raise argparse.ArgumentTypeError(
            "--secret cannot accept a value on the command line for security reasons")
    if value in DATE_PROPS:
        raise argparse.ArgumentTypeError(
            f"Cannot use --secret for property '{value}'. Use --property instead.")
    return value


def collect_props(args: argparse.Namespace) -> Dict[str, str]:
    props = dict(args.property or [])
    for key in args.secret or []:
        props[key] = getpass.getpass(f"Enter value for '{key}': ")
    return props


# =============================================================================
# Commands
# =============================================================================

async def cmd_add(records: RecordStore, args: argparse.Namespace) -> None:
    # Fail before prompting for secrets
    if args.id in await records.get_index():
        raise AlreadyExists(f"Entry '{args.id}' already exists")
    await entries.add(records, args.id, collect_props(args))
    print(f"✓ Added '{args.id}'")


async def cmd_update(records: RecordStore, args: argparse.Namespace) -> None:
    await entries.get_entry(records, args.id)
    await entries.update(records, args.id, collect_props(args), args.delete or [])
    print(f"✓ Updated '{args.id}'")


async def cmd_get(records: RecordStore, args: argparse.Namespace) -> None:
    props = await entries.get_props(records, args.id)
    for key in sorted(props):
        print(f"{key[:1].upper()}{key[1:]}: {props[key]}")


async def cmd_list(records: RecordStore, args: argparse.Namespace) -> None:
    for id in await entries.list_ids(records, args.search):
        print(id)


async def cmd_rename(records: RecordStore, args: argparse.Namespace) -> None:
    await entries.rename(records, args.id, args.new_id)
    print(f"✓ Renamed '{args.id}' to '{args.new_id}'")


async def cmd_delete(records: RecordStore, args: argparse.Namespace) -> None:
    await entries.delete(records, args.id)
    print(f"✓ Deleted '{args.id}'")


async def cmd_history(records: RecordStore, args: argparse.Namespace) -> None:
    versions = await entries.history(records, args.id)
    for i, props in enumerate(versions):
        print(f"=== Version {len(versions) - i} ===")
        for key in sorted(props):
            print(f"  {key}: {props[key]}")


async def cmd_note(records: RecordStore, args: argparse.Namespace) -> None:
    print("Note saved" if await edit_note(records) else "No change")


async def cmd_recovery_create(records: RecordStore, args: argparse.Namespace) -> None:
    keyring = await load_keyring(records.store, args.ask())
    try:
        shares = generate_recovery_shares(keyring.master_secret, args.k, args.n)
    except ValueError as e:
        raise LunaPassError(str(e)) from e
    fd = os.open(args.output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)  # an existing file keeps its old mode otherwise
    with os.fdopen(fd, "w") as f:
        f.write(format_recovery_kit(shares, args.k))
    print(f"✓ Recovery kit saved to: {args.output}")


RECORD_COMMANDS = {
    "add": cmd_add,
    "update": cmd_update,
    "get": cmd_get,
    "list": cmd_list,
    "rename": cmd_rename,
    "delete": cmd_delete,
    "history": cmd_history,
    "note": cmd_note,
    "recovery-create": cmd_recovery_create,
}


async def cmd_migrate(args: argparse.Namespace) -> None:
    report = await migrate(args.db, args.ask())
    if not report.migrated:
        print("Nothing to migrate.")
        return
    print(f"✓ Migrated {report.entries} entries. Backup kept at {report.backup_path}")
    print_recovery_phrase(report.recovery_phrase)


async def cmd_recover(args: argparse.Namespace) -> None:
    store = SQLiteStore.open(args.db, must_exist=True)
    try:
        print("Enter recovery shares (one per line). Press Enter on empty line when done.\n")
        shares = []
        while True:
            share = input(f"Share {len(shares) + 1}: ").strip()
            if not share:
                break
            shares.append(" ".join(share.split()))

        # Check the shares before asking for a new passphrase
        try:
            await unlock_with_shares(store, shares)
        except ValueError as e:
            raise LunaPassError(str(e)) from e

        ask = PassphrasePrompt()
        passphrase = ask("Choose a new")
        if not ask.confirm():
            raise LunaPassError("Passphrases do not match")

        await recover_keyring(store, shares, passphrase)
        print("✓ Passphrase replaced. Use your NEW passphrase from now on.")
    finally:
        store.close()


async def run(args: argparse.Namespace) -> None:
    if args.command == "migrate":
        return await cmd_migrate(args)
    if args.command == "recover":
        return await cmd_recover(args)

    records = await open_records(args.db, args.ask)
    try:
        await RECORD_COMMANDS[args.command](records, args)
    finally:
        records.close()


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lunapass", description="Local encrypted password manager")
    parser.add_argument("-v", "--version", action="version", version=__version__)
    parser.add_argument("--db", help="path to db file")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def with_props(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("-p", "--property", nargs="+", action="extend", type=parse_property,
                       metavar="KEY=VALUE", help="set properties on the entry")
        p.add_argument("-s", "--secret", nargs="+", action="extend", type=parse_secret_key,
                       metavar="KEY", help="secret property key names to ask for")
        return p

    with_props(sub.add_parser("add", help="Add an entry")).add_argument("id")

    p = with_props(sub.add_parser("update", help="Update an existing entry"))
    p.add_argument("id")
    p.add_argument("-d", "--delete", nargs="+", action="extend", metavar="KEY",
                   help="specify keys to delete")

    sub.add_parser("get", help="Retrieve an entry").add_argument("id")
    sub.add_parser("list", help="List entries").add_argument("search", nargs="?")

    p = sub.add_parser("rename", help="Assign a new ID to an entry")
    p.add_argument("id")
    p.add_argument("new_id")

    sub.add_parser("delete", help="Delete an entry").add_argument("id")
    sub.add_parser("history", help="Show every version of an entry").add_argument("id")
    sub.add_parser("note", help="Edit the note")
    sub.add_parser("migrate", help="Migrate a legacy database")

    p = sub.add_parser("recovery-create", help="Create a k-of-n recovery kit")
    p.add_argument("-k", type=int, default=3, help="shares needed to recover")
    p.add_argument("-n", type=int, default=5, help="total shares")
    p.add_argument("-o", "--output", default="recovery_kit.txt")

    sub.add_parser("recover", help="Set a new passphrase using recovery shares")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(message)s")
    args.db = args.db or default_db_path()
    args.ask = PassphrasePrompt()

    try:
        asyncio.run(run(args))
    except LunaPassError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nExiting...")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
