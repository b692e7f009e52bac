import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Mapping, Optional

from .config import settings
from .errors import ProfileNotFound, RevertWriteFailure, ServerNotFound
from .models import ConfigurationSnapshot, Profile, ProfileVariable, RunLease, Server


class PanelStore:
    """sqlite-backed view of the panel records this package touches.

    Values in ``server_variables`` are never deleted when a server changes
    profile. They are simply ignored until a profile declaring the same slot
    becomes active again.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or settings.panel_db_path
        self._local = threading.local()

    def init_db(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL,
                    author TEXT NOT NULL,
                    name TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profile_variables (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    profile_id INTEGER NOT NULL,
                    env_variable TEXT NOT NULL,
                    default_value TEXT NOT NULL DEFAULT '',
                    UNIQUE (profile_id, env_variable),
                    FOREIGN KEY (profile_id) REFERENCES profiles(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS servers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    profile_id INTEGER NOT NULL,
                    profile_group_id INTEGER NOT NULL,
                    status TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS server_variables (
                    server_id INTEGER NOT NULL,
                    variable_id INTEGER NOT NULL,
                    variable_value TEXT NOT NULL,
                    PRIMARY KEY (server_id, variable_id),
                    FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS install_runs (
                    run_id TEXT PRIMARY KEY,
                    server_id INTEGER NOT NULL,
                    acquired_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    released_at REAL
                )
                """
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run every store call made on this thread inside one transaction."""
        current = getattr(self._local, "conn", None)
        if current is not None:
            yield current
            return
        conn = self._open()
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    # Profiles

    def create_profile(
        self,
        group_id: int,
        author: str,
        name: str,
        variables: Optional[Mapping[str, str]] = None,
    ) -> Profile:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO profiles (group_id, author, name) VALUES (?, ?, ?)",
                (group_id, author, name),
            )
            profile_id = cursor.lastrowid
            for env_variable, default_value in (variables or {}).items():
                conn.execute(
                    """
                    INSERT INTO profile_variables (profile_id, env_variable, default_value)
                    VALUES (?, ?, ?)
                    """,
                    (profile_id, env_variable, default_value),
                )
        profile = self.get_profile(profile_id)
        assert profile is not None
        return profile

    def get_profile(self, profile_id: int) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, group_id, author, name FROM profiles WHERE id = ?",
                (profile_id,),
            ).fetchone()
            if not row:
                return None
            return self._profile_from_row(conn, row)

    def find_profile_by_author(self, author: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, group_id, author, name FROM profiles WHERE author = ? ORDER BY id LIMIT 1",
                (author,),
            ).fetchone()
            if not row:
                return None
            return self._profile_from_row(conn, row)

    # Servers

    def create_server(self, uuid: str, name: str, profile_id: int) -> Server:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {profile_id} does not exist")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO servers (uuid, name, profile_id, profile_group_id)
                VALUES (?, ?, ?, ?)
                """,
                (uuid, name, profile.id, profile.group_id),
            )
            server_id = cursor.lastrowid
        return self.get_server(server_id)

    def get_server(self, server_id: int) -> Server:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, uuid, name, profile_id, profile_group_id, status
                FROM servers WHERE id = ?
                """,
                (server_id,),
            ).fetchone()
        if not row:
            raise ServerNotFound(f"Server {server_id} not found")
        return Server(
            id=row["id"],
            uuid=row["uuid"],
            name=row["name"],
            profile_id=row["profile_id"],
            profile_group_id=row["profile_group_id"],
            status=row["status"],
        )

    def set_active_profile(self, server_id: int, profile_id: int, profile_group_id: int) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE servers SET profile_id = ?, profile_group_id = ? WHERE id = ?",
                (profile_id, profile_group_id, server_id),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise ServerNotFound(f"Server {server_id} not found")

    def force_profile(self, server_id: int, profile_id: int, profile_group_id: int) -> None:
        """Write the profile fields on a fresh connection, outside any open transaction."""
        conn = self._open()
        try:
            with conn:
                cursor = conn.execute(
                    "UPDATE servers SET profile_id = ?, profile_group_id = ? WHERE id = ?",
                    (profile_id, profile_group_id, server_id),
                )
                updated = cursor.rowcount
        except sqlite3.Error as exc:
            raise RevertWriteFailure(f"Direct profile write failed: {exc}") from exc
        finally:
            conn.close()
        if updated == 0:
            raise RevertWriteFailure(f"Direct profile write matched no server {server_id}")

    def set_status(self, server_id: int, status: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE servers SET status = ? WHERE id = ?", (status, server_id))

    # Configuration values

    def get_values(self, server_id: int) -> dict[int, str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT variable_id, variable_value FROM server_variables WHERE server_id = ?",
                (server_id,),
            ).fetchall()
        return {row["variable_id"]: row["variable_value"] for row in rows}

    def upsert_value(self, server_id: int, variable_id: int, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO server_variables (server_id, variable_id, variable_value)
                VALUES (?, ?, ?)
                ON CONFLICT (server_id, variable_id)
                DO UPDATE SET variable_value = excluded.variable_value
                """,
                (server_id, variable_id, value),
            )

    def write_values(self, server_id: int, values: Mapping[int, str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO server_variables (server_id, variable_id, variable_value)
                VALUES (?, ?, ?)
                ON CONFLICT (server_id, variable_id)
                DO UPDATE SET variable_value = excluded.variable_value
                """,
                [(server_id, variable_id, value) for variable_id, value in values.items()],
            )

    def environment(self, server_id: int) -> dict[str, str]:
        """Effective environment of the server under its active profile."""
        server = self.get_server(server_id)
        profile = self.get_profile(server.profile_id)
        if profile is None:
            return {}
        values = self.get_values(server_id)
        return {
            variable.env_variable: values.get(variable.id, variable.default_value)
            for variable in profile.variables
        }

    def capture_snapshot(self, server_id: int) -> ConfigurationSnapshot:
        server = self.get_server(server_id)
        return ConfigurationSnapshot(
            server_id=server.id,
            original_profile_id=server.profile_id,
            original_profile_group_id=server.profile_group_id,
            original_values=self.get_values(server_id),
        )

    # Run leases

    def acquire_lease(
        self, run_id: str, server_id: int, ttl_seconds: float, now: Optional[float] = None
    ) -> RunLease:
        now = time.time() if now is None else now
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO install_runs (run_id, server_id, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, server_id, now, now + ttl_seconds),
            )
        return RunLease(run_id=run_id, server_id=server_id, acquired_at=now, expires_at=now + ttl_seconds)

    def release_lease(self, run_id: str, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._connect() as conn:
            conn.execute(
                "UPDATE install_runs SET released_at = ? WHERE run_id = ? AND released_at IS NULL",
                (now, run_id),
            )

    def get_lease(self, run_id: str) -> Optional[RunLease]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT run_id, server_id, acquired_at, expires_at, released_at
                FROM install_runs WHERE run_id = ?
                """,
                (run_id,),
            ).fetchone()
        if not row:
            return None
        return RunLease(
            run_id=row["run_id"],
            server_id=row["server_id"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
            released_at=row["released_at"],
        )

    def _profile_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Profile:
        variables = conn.execute(
            """
            SELECT id, profile_id, env_variable, default_value
            FROM profile_variables WHERE profile_id = ? ORDER BY id
            """,
            (row["id"],),
        ).fetchall()
        return Profile(
            id=row["id"],
            group_id=row["group_id"],
            author=row["author"],
            name=row["name"],
            variables=tuple(
                ProfileVariable(
                    id=variable["id"],
                    profile_id=variable["profile_id"],
                    env_variable=variable["env_variable"],
                    default_value=variable["default_value"],
                )
                for variable in variables
            ),
        )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        current = getattr(self._local, "conn", None)
        if current is not None:
            yield current
            return
        conn = self._open()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn
