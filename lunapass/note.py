"""
LunaPass - Note

One free-text note per database, stored as an encrypted blob behind the
`lunapass-note` pointer and edited in the user's $EDITOR.

The plaintext has to touch the disk while the editor runs, so the temp file
is created 0600 and shredded on every exit path.
"""

import logging
import os
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import LunaPassError, NotFound
from .records import RecordStore

logger = logging.getLogger(__name__)

NOTE_POINTER = "lunapass-note"
DEFAULT_EDITOR = "vim"


async def get_note(records: RecordStore) -> bytes:
    """The note's bytes (empty if no note was ever saved)."""
    cid = await records.store.get_pointer(NOTE_POINTER)
    if cid is None:
        return b""
    note = await records.get_blob(cid)
    if note is None:
        raise NotFound("Note is missing or unreadable")
    return note


async def save_note(records: RecordStore, note: bytes) -> str:
    cid = await records.put_blob(note)
    await records.store.put_pointer(NOTE_POINTER, cid)
    return cid


def shred(path: str) -> None:
    """
    Overwrite and remove a file.

    Uses `shred` when available; otherwise zero-fills the file and unlinks it.
    """
    if not os.path.exists(path):
        return
    try:
        result = subprocess.run(
            ["shred", "--remove", "--zero", "--iterations=3", path],
            capture_output=True,
        )
        if result.returncode == 0:
            return
    except OSError:
        pass

    logger.warning("Shred failed; using fallback")
    try:
        size = os.path.getsize(path)
        with open(path, "r+b") as f:
            f.write(b"\0" * size)
            f.flush()
            os.fsync(f.fileno())
        os.remove(path)
    except FileNotFoundError:
        # shred got as far as removing it
        pass


@contextmanager
def sensitive_tempfile(data: bytes) -> Iterator[str]:
    """Write `data` to a private temp file, yield its path, always shred it."""
    fd, path = tempfile.mkstemp(prefix="lunapass-")
    try:
        os.chmod(path, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        yield path
    finally:
        shred(path)


async def edit_note(records: RecordStore, editor: Optional[str] = None) -> bool:
    """
    Open the note in an editor and save it if it changed.

    Args:
        editor: Command line to run (the temp file path is appended).
            Defaults to $EDITOR, then vim.

    Returns:
        True if a new version was saved
    """
    note = await get_note(records)
    command = shlex.split(editor or os.environ.get("EDITOR") or DEFAULT_EDITOR)

    with sensitive_tempfile(note) as path:
        try:
            result = subprocess.run(command + [path])
        except OSError as e:
            raise LunaPassError(f"Cannot run editor {command[0]}: {e}") from e
        if result.returncode != 0:
            raise LunaPassError(f"Editor exited with status {result.returncode}")
        with open(path, "rb") as f:
            new_note = f.read()

    if new_note == note:
        return False

    await save_note(records, new_note)
    return True
