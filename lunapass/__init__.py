"""
LunaPass - Local Encrypted Password Manager

Entries are arbitrary key/value property sets, stored as encrypted,
content-addressed, immutable version objects. A mutable index points at the
newest version of each entry; every version points back at the one before,
so the full edit history is kept.

Components:
- crypto.py: Envelope encryption (ChaCha20-Poly1305), KDFs, canonical JSON
- storage.py: Content-addressed object store + named pointers (SQLite)
- keyring.py: Passphrase-wrapped master secret and SLIP-0039 recovery
- records.py: The index and version objects (one session per process)
- entries.py: add / update / get / rename / delete / list / history
- legacy.py + migrate.py: One-time move off the legacy passphrase scheme
- note.py: The free-text note, edited in $EDITOR
- cli.py: Command-line interface (argparse)

Usage:
    lunapass add github -p user=alice -s password
    lunapass get github
    lunapass list
"""

__version__ = "1.0.0"
