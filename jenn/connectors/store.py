"""SQLite-backed store of encrypted business-system connections.

One row per (account, connector). Credentials are serialized to JSON and
encrypted with AES-256-GCM; the account id and connector kind are bound as
associated data so a blob cannot be replayed under another account.
Decrypted blobs are validated once into a typed connection model.
"""

import base64
import binascii
import logging
import os
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from jenn.connectors.errors import ConfigurationError
from jenn.schemas.connectors import (
    CONNECTION_ADAPTER,
    Connection,
    ConnectorKind,
    StoredConnection,
)

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS connections (
    account_id      TEXT NOT NULL,
    kind            TEXT NOT NULL,
    nonce           TEXT NOT NULL,
    ciphertext      TEXT NOT NULL,
    is_active       INTEGER NOT NULL DEFAULT 1,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (account_id, kind)
)
"""

_UPSERT = """
INSERT INTO connections (account_id, kind, nonce, ciphertext, is_active, updated_at)
VALUES (?, ?, ?, ?, 1, ?)
ON CONFLICT (account_id, kind)
DO UPDATE SET nonce = excluded.nonce, ciphertext = excluded.ciphertext,
              is_active = 1, updated_at = excluded.updated_at
"""


def decode_key(value: str) -> bytes:
    """Decode a base64 credential key and check it is 256 bits.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes.
    """
    try:
        key = base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Credential key is not valid base64: {exc}") from exc
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Credential key must be {KEY_LENGTH} bytes (got {len(key)})")
    return key


def generate_key() -> str:
    """A new random key, base64 encoded."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def _aad(account_id: str, kind: str) -> bytes:
    return f"{account_id}:{kind}".encode()


class ConnectionStore:
    """Encrypted per-account connector credentials.

    Usage::

        with ConnectionStore("/path/to/connections.db", key) as store:
            store.save("acc_1", OdooConnection(url=..., db=..., username=..., password=...))
            odoo = store.get_active("acc_1", ConnectorKind.ODOO)
    """

    def __init__(self, db_path: str | Path, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Credential key must be {KEY_LENGTH} bytes (got {len(key)})")
        self._aesgcm = AESGCM(key)
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_CREATE_TABLE)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "ConnectionStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def _encrypt(self, account_id: str, connection: Connection) -> tuple[str, str]:
        nonce = os.urandom(NONCE_LENGTH)
        plaintext = connection.model_dump_json().encode("utf-8")
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, _aad(account_id, connection.kind))
        return (
            base64.b64encode(nonce).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        )

    def _decrypt(self, row: sqlite3.Row) -> Connection:
        account_id, kind = row["account_id"], row["kind"]
        try:
            plaintext = self._aesgcm.decrypt(
                base64.b64decode(row["nonce"]),
                base64.b64decode(row["ciphertext"]),
                _aad(account_id, kind),
            )
            return CONNECTION_ADAPTER.validate_json(plaintext)
        except (InvalidTag, binascii.Error, ValidationError) as exc:
            logger.error("Stored %s connection for %s is unreadable: %r", kind, account_id, exc)
            raise ConfigurationError(
                kind, f"Stored connection for account {account_id} is invalid; reconnect it"
            ) from exc

    def _to_stored(self, row: sqlite3.Row) -> StoredConnection:
        return StoredConnection(
            account_id=row["account_id"],
            connection=self._decrypt(row),
            is_active=bool(row["is_active"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def save(self, account_id: str, connection: Connection) -> StoredConnection:
        """Store (or replace) a connection and mark it active."""
        nonce, ciphertext = self._encrypt(account_id, connection)
        now = datetime.now(UTC)
        self._conn.execute(
            _UPSERT, (account_id, connection.kind, nonce, ciphertext, now.isoformat())
        )
        self._conn.commit()
        logger.info("Saved %s connection for %s", connection.kind, account_id)
        return StoredConnection(account_id=account_id, connection=connection, updated_at=now)

    def get_active(self, account_id: str, kind: ConnectorKind) -> Connection | None:
        """The active connection of a kind, or None if not connected.

        Raises:
            ConfigurationError: If the stored blob cannot be decrypted or validated.
        """
        row = self._conn.execute(
            "SELECT * FROM connections WHERE account_id = ? AND kind = ? AND is_active = 1",
            (account_id, kind.value),
        ).fetchone()
        if row is None:
            return None
        return self._decrypt(row)

    def list_active(self, account_id: str) -> list[Connection]:
        """All active connections for an account; unreadable rows are skipped."""
        rows = self._conn.execute(
            "SELECT * FROM connections WHERE account_id = ? AND is_active = 1 ORDER BY kind",
            (account_id,),
        ).fetchall()
        connections: list[Connection] = []
        for row in rows:
            try:
                connections.append(self._decrypt(row))
            except ConfigurationError:
                continue
        return connections

    def list_for_account(self, account_id: str) -> list[StoredConnection]:
        rows = self._conn.execute(
            "SELECT * FROM connections WHERE account_id = ? ORDER BY kind", (account_id,)
        ).fetchall()
        return [self._to_stored(r) for r in rows]

    def deactivate(self, account_id: str, kind: ConnectorKind) -> bool:
        cursor = self._conn.execute(
            "UPDATE connections SET is_active = 0, updated_at = ? WHERE account_id = ? AND kind = ?",
            (datetime.now(UTC).isoformat(), account_id, kind.value),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def delete(self, account_id: str, kind: ConnectorKind) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM connections WHERE account_id = ? AND kind = ?",
            (account_id, kind.value),
        )
        self._conn.commit()
        return cursor.rowcount > 0
