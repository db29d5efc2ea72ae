import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from .errors import Forbidden

UPLOAD_ROLES = frozenset({"operator", "admin"})


@dataclass(frozen=True)
class OperatorCredential:
    id: str
    owner: str
    role: str

    @property
    def can_upload(self) -> bool:
        return self.role in UPLOAD_ROLES


def require_operator(credential: Optional[OperatorCredential]) -> OperatorCredential:
    if credential is None or not credential.can_upload:
        raise Forbidden("A valid operator credential is required")
    return credential


class KeyManager:
    """
    Verifies operator API keys stored as SHA-256 hashes in a local SQLite database.

    A master key from configuration, when set, authenticates as ``admin``.
    """

    def __init__(self, db_path: str = "data/keys.db", master_key: str = ""):
        self.db_path = Path(db_path)
        self._master_hash = self._hash_key(master_key) if master_key else None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, owner: str, role: str = "operator") -> Tuple[str, dict]:
        """
        Generate a new API key.

        Returns:
            Tuple[str, dict]: (raw_api_key, key_record_dict)
            WARNING: raw_api_key is shown ONLY ONCE here.
        """
        raw_key = f"kmk_{secrets.token_urlsafe(32)}"
        key_id = str(uuid4())
        created_at = datetime.now(timezone.utc).isoformat()

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, owner, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (key_id, self._hash_key(raw_key), raw_key[:8], owner, role, created_at))
            conn.commit()

        record = {
            "id": key_id,
            "prefix": raw_key[:8],
            "owner": owner,
            "role": role,
            "is_active": True,
            "created_at": created_at,
        }
        return raw_key, record

    def validate_key(self, key: Optional[str]) -> Optional[OperatorCredential]:
        if not key:
            return None

        key_hash = self._hash_key(key)
        if self._master_hash and secrets.compare_digest(key_hash, self._master_hash):
            return OperatorCredential(id="master", owner="master", role="admin")

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT id, owner, role FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (key_hash,)
            ).fetchone()

        if row:
            return OperatorCredential(id=row["id"], owner=row["owner"], role=row["role"])
        return None

    def list_keys(self) -> list[dict]:
        """List all API keys (admin only)."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT id, prefix, owner, role, is_active, created_at FROM api_keys ORDER BY created_at DESC"
            ).fetchall()
            return [dict(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            conn.commit()
            return cursor.rowcount > 0
