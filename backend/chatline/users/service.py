"""DuckDB-backed User Directory.

The realtime core consumes users through this narrow interface: lookup by
id/username, and read/write of ``status`` / ``hide_presence``. Account
creation is exposed only so that tooling and tests can seed users.

Database Schema:
    users table:
        - id: Primary key (opaque string)
        - username: Unique handle
        - name: Display name
        - status: online | away | busy | offline
        - hide_presence: Presence opt-out flag
        - avatar_url: Optional avatar location
"""
import logging
import uuid
from typing import Iterable, List, Optional

import duckdb

from chatline.errors import ValidationError

from .schemas import PresenceStatus, UserRecord

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id            VARCHAR PRIMARY KEY,
    username      VARCHAR NOT NULL UNIQUE,
    name          VARCHAR NOT NULL DEFAULT '',
    status        VARCHAR NOT NULL DEFAULT 'offline',
    hide_presence BOOLEAN NOT NULL DEFAULT FALSE,
    avatar_url    VARCHAR NOT NULL DEFAULT ''
)
"""

_COLUMNS = "id, username, name, status, hide_presence, avatar_url"

# Caps taken over from the directory listing endpoints
MAX_LIST_SIZE = 400
MAX_SEARCH_RESULTS = 25


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class UserDirectory:
    """Singleton service for user lookups and presence attributes."""

    _instance: Optional["UserDirectory"] = None
    _default_db_path: str = "users.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        logger.info("[UserDirectory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UserDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        name: str = "",
        user_id: Optional[str] = None,
        hide_presence: bool = False,
        status: PresenceStatus = PresenceStatus.OFFLINE,
    ) -> UserRecord:
        """Insert a user. Raises ValidationError if the username is taken."""
        if self.find_by_username(username) is not None:
            raise ValidationError("Username already in use")
        user_id = user_id or uuid.uuid4().hex
        self._conn.execute(
            f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, '')",
            [user_id, username, name or username, PresenceStatus(status).value, hide_presence],
        )
        logger.info("[UserDirectory] Created user %s (%s)", user_id, username)
        return self.get(user_id)

    def set_status(self, user_id: str, status: PresenceStatus) -> bool:
        """Persist a user's status. Returns False if the user is unknown."""
        if self.get(user_id) is None:
            return False
        self._conn.execute(
            "UPDATE users SET status = ? WHERE id = ?",
            [PresenceStatus(status).value, user_id],
        )
        return True

    def set_hide_presence(self, user_id: str, hidden: bool) -> bool:
        if self.get(user_id) is None:
            return False
        self._conn.execute(
            "UPDATE users SET hide_presence = ? WHERE id = ?", [hidden, user_id]
        )
        return True

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[UserRecord]:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id]
        ).fetchone()
        return self._row_to_user(row) if row else None

    def find_by_username(self, username: str) -> Optional[UserRecord]:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM users WHERE username = ?", [username]
        ).fetchone()
        return self._row_to_user(row) if row else None

    def get_many(self, user_ids: Iterable[str]) -> List[UserRecord]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM users WHERE id IN ({_placeholders(len(ids))}) ORDER BY username",
            ids,
        ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def is_hidden(self, user_id: str) -> bool:
        """True when the user opted out of presence broadcasts.

        Unknown users count as visible, matching a user document that
        could not be loaded.
        """
        row = self._conn.execute(
            "SELECT hide_presence FROM users WHERE id = ?", [user_id]
        ).fetchone()
        return bool(row[0]) if row else False

    def list_users(self, limit: int = MAX_LIST_SIZE) -> List[UserRecord]:
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM users ORDER BY username LIMIT ?",
            [min(limit, MAX_LIST_SIZE)],
        ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def search(
        self,
        query: str,
        exclude_ids: Iterable[str] = (),
        limit: int = 20,
    ) -> List[UserRecord]:
        """Case-insensitive substring search over username and name."""
        excluded = list(dict.fromkeys(exclude_ids))
        sql = (
            f"SELECT {_COLUMNS} FROM users "
            "WHERE (position(lower(?) IN lower(username)) > 0 "
            "OR position(lower(?) IN lower(name)) > 0)"
        )
        params: list = [query, query]
        if excluded:
            sql += f" AND id NOT IN ({_placeholders(len(excluded))})"
            params.extend(excluded)
        sql += " ORDER BY username LIMIT ?"
        params.append(min(limit, MAX_SEARCH_RESULTS))
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_user(r) for r in rows]

    def visible_presence(self) -> List[UserRecord]:
        """Users whose status is not offline and who do not hide presence."""
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM users "
            "WHERE status <> 'offline' AND NOT hide_presence ORDER BY username"
        ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @staticmethod
    def _row_to_user(row) -> UserRecord:
        return UserRecord(
            id=row[0],
            username=row[1],
            name=row[2],
            status=PresenceStatus(row[3]),
            hidePresence=bool(row[4]),
            avatarUrl=row[5] or "",
        )
