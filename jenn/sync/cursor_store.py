"""SQLite-backed per-mailbox UID watermarks.

The watermark only ever moves up. ``advance`` is a compare-and-raise: it
succeeds only if the stored value still equals the value read at the start
of the pass, so two overlapping passes (cron + manual sync) cannot both
commit over the same range.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from jenn.schemas.mail import SyncCursor

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS sync_cursors (
    mailbox         TEXT PRIMARY KEY,
    last_seen_uid   TEXT NOT NULL,
    updated_at      TEXT NOT NULL
)
"""

_SELECT = "SELECT mailbox, last_seen_uid, updated_at FROM sync_cursors WHERE mailbox = ?"

_INSERT_IF_MISSING = """
INSERT INTO sync_cursors (mailbox, last_seen_uid, updated_at)
VALUES (?, ?, ?)
ON CONFLICT (mailbox) DO NOTHING
"""

_COMPARE_AND_RAISE = """
UPDATE sync_cursors
SET last_seen_uid = ?, updated_at = ?
WHERE mailbox = ? AND last_seen_uid = ?
"""


class CursorConflictError(Exception):
    """Another sync pass moved the watermark since it was read."""

    def __init__(self, mailbox: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Watermark for {mailbox} moved from {expected} to {actual} during sync"
        )
        self.mailbox = mailbox
        self.expected = expected
        self.actual = actual


def _parse_uid(value: str | None) -> int:
    try:
        return max(0, int(value or "0"))
    except ValueError:
        return 0


class CursorStore:
    """Persistent store of one ``last_seen_uid`` per mailbox.

    UIDs are stored as string-encoded integers.

    Usage::

        with CursorStore("/path/to/cursors.db") as cursors:
            start = cursors.get("user@example.com").last_seen_uid
            ...
            cursors.advance("user@example.com", expected=start, new_uid=1234)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_TABLE)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "CursorStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get(self, mailbox: str) -> SyncCursor:
        """Return the cursor for a mailbox (watermark 0 if never synced)."""
        row = self._conn.execute(_SELECT, (mailbox,)).fetchone()
        if row is None:
            return SyncCursor(mailbox=mailbox)
        return SyncCursor(
            mailbox=row[0],
            last_seen_uid=_parse_uid(row[1]),
            updated_at=datetime.fromisoformat(row[2]),
        )

    def advance(self, mailbox: str, *, expected: int, new_uid: int) -> SyncCursor:
        """Raise the watermark from ``expected`` to ``max(expected, new_uid)``.

        Raises:
            CursorConflictError: If the stored watermark is no longer ``expected``.
        """
        target = max(expected, new_uid)
        if target == expected:
            return self.get(mailbox)

        now = datetime.now(UTC).isoformat()
        self._conn.execute(_INSERT_IF_MISSING, (mailbox, "0", now))
        cursor = self._conn.execute(
            _COMPARE_AND_RAISE, (str(target), now, mailbox, str(expected))
        )
        self._conn.commit()

        if cursor.rowcount == 0:
            actual = self.get(mailbox).last_seen_uid
            logger.warning(
                "Cursor conflict for %s: expected %d, found %d", mailbox, expected, actual
            )
            raise CursorConflictError(mailbox, expected, actual)

        logger.info("Advanced watermark for %s: %d -> %d", mailbox, expected, target)
        return SyncCursor(
            mailbox=mailbox,
            last_seen_uid=target,
            updated_at=datetime.fromisoformat(now),
        )

    def reset(self, mailbox: str) -> bool:
        """Forget a mailbox's watermark (mailbox removal). Returns True if it existed."""
        cursor = self._conn.execute("DELETE FROM sync_cursors WHERE mailbox = ?", (mailbox,))
        self._conn.commit()
        return cursor.rowcount > 0
