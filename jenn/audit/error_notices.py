"""SQLite-backed store of account-visible error notices.

Fatal LLM errors (bad API key, invalid model, insufficient balance, ...) are
persisted here by category so the account owner sees an actionable message
instead of a raw exception. The latest notice per category wins.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from jenn.schemas.llm import ErrorType, UserErrorNotice

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS user_error_notices (
    account_email   TEXT NOT NULL,
    error_type      TEXT NOT NULL,
    message         TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    PRIMARY KEY (account_email, error_type)
)
"""

_UPSERT = """
INSERT INTO user_error_notices (account_email, error_type, message, created_at)
VALUES (?, ?, ?, ?)
ON CONFLICT (account_email, error_type)
DO UPDATE SET message = excluded.message, created_at = excluded.created_at
"""

_SELECT_FOR_ACCOUNT = (
    "SELECT * FROM user_error_notices WHERE account_email = ? ORDER BY created_at DESC"
)


def _row_to_notice(row: sqlite3.Row) -> UserErrorNotice:
    return UserErrorNotice(
        account_email=row["account_email"],
        error_type=ErrorType(row["error_type"]),
        message=row["message"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class ErrorNoticeStore:
    """Persist category-tagged error notices per account.

    Usage::

        with ErrorNoticeStore("/path/to/notices.db") as notices:
            notices.add("a@example.com", ErrorType.INCORRECT_API_KEY, "Fix your API key")
            for notice in notices.list_for_account("a@example.com"):
                print(notice.error_type, notice.message)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_TABLE)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "ErrorNoticeStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def add(self, account_email: str, error_type: ErrorType, message: str) -> UserErrorNotice:
        """Record a notice, replacing any previous one of the same category."""
        now = datetime.now(UTC)
        self._conn.execute(
            _UPSERT, (account_email, error_type.value, message, now.isoformat())
        )
        self._conn.commit()
        logger.info("Error notice for %s: %s", account_email, error_type.value)
        return UserErrorNotice(
            account_email=account_email,
            error_type=error_type,
            message=message,
            created_at=now,
        )

    def list_for_account(self, account_email: str) -> list[UserErrorNotice]:
        """Notices for an account, newest first."""
        rows = self._conn.execute(_SELECT_FOR_ACCOUNT, (account_email,)).fetchall()
        return [_row_to_notice(r) for r in rows]

    def clear(self, account_email: str, error_type: ErrorType | None = None) -> int:
        """Remove notices for an account. Returns the number removed."""
        if error_type is None:
            cursor = self._conn.execute(
                "DELETE FROM user_error_notices WHERE account_email = ?", (account_email,)
            )
        else:
            cursor = self._conn.execute(
                "DELETE FROM user_error_notices WHERE account_email = ? AND error_type = ?",
                (account_email, error_type.value),
            )
        self._conn.commit()
        return cursor.rowcount
