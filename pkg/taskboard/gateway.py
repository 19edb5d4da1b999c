"""
Data gateway (SQLite).

Typed select / insert / update / delete over the five dashboard tables, with
the nested task -> board -> project join the views need. Failures surface as
``GatewayError(code, message)`` using PostgREST / Postgres codes so callers
can tell the "no rows" outcome apart from real failures.

All public methods are coroutines; the SQLite work runs in a worker thread.
"""
import asyncio
import logging
import sqlite3
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

NOT_FOUND = "PGRST116"
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"
UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
INTERNAL = "XX000"


class GatewayError(Exception):
    """Error returned by the data gateway as a ``{code, message}`` pair."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.code == NOT_FOUND

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


SCHEMA = {
    "profiles": """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            first_name TEXT,
            last_name TEXT,
            avatar_url TEXT,
            theme_preference TEXT,
            compact_mode INTEGER,
            language_preference TEXT,
            email_notifications INTEGER,
            browser_notifications INTEGER,
            task_reminders INTEGER,
            mentions INTEGER,
            auto_save INTEGER,
            usage_analytics INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "projects": """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            deadline TEXT,
            status TEXT DEFAULT 'Not Started',
            owner_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "project_members": """
        CREATE TABLE IF NOT EXISTS project_members (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'member',
            created_at TEXT NOT NULL,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
    """,
    "boards": """
        CREATE TABLE IF NOT EXISTS boards (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            title TEXT NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
    """,
    "tasks": """
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            board_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            status TEXT DEFAULT 'To Do',
            priority TEXT DEFAULT 'Medium',
            due_date TEXT,
            assignee_id TEXT,
            created_by TEXT NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (board_id) REFERENCES boards(id) ON DELETE CASCADE
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_projects_owner ON projects(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_members_project ON project_members(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_boards_project ON boards(project_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_board ON tasks(board_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks(assignee_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(assignee_id, due_date)",
]

BOOL_COLUMNS = {
    "profiles": {
        "compact_mode", "email_notifications", "browser_notifications",
        "task_reminders", "mentions", "auto_save", "usage_analytics",
    },
}


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def encode_value(value: Any) -> Any:
    """Convert a Python value into its stored column form.

    Timestamps are stored as UTC ISO-8601 strings with a fixed width so
    range filters can compare them as text.
    """
    if isinstance(value, Enum):
        value = value.value
        return value or None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat(
            timespec="microseconds"
        )
    return value


def _now() -> str:
    return encode_value(datetime.now(timezone.utc))


class DataGateway:
    """SQLite-backed gateway for the dashboard tables."""

    def __init__(self, db_path: str = None):
        """Initialize gateway and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "taskboard.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._columns: Dict[str, List[str]] = {}
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            for ddl in SCHEMA.values():
                conn.execute(ddl)
            for ddl in INDEXES:
                conn.execute(ddl)
            conn.commit()
            for table in SCHEMA:
                rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
                self._columns[table] = [r["name"] for r in rows]

    # ── Helpers ──────────────────────────────────────────────────────────

    def _check_table(self, table: str) -> List[str]:
        columns = self._columns.get(table)
        if columns is None:
            raise GatewayError(UNDEFINED_TABLE, f'relation "{table}" does not exist')
        return columns

    def _check_columns(self, table: str, names: Iterable[str]) -> None:
        columns = self._check_table(table)
        for name in names:
            if name not in columns:
                raise GatewayError(
                    UNDEFINED_COLUMN,
                    f'column {table}.{name} does not exist',
                )

    def _decode_row(self, table: str, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for col in BOOL_COLUMNS.get(table, ()):
            if data.get(col) is not None:
                data[col] = bool(data[col])
        return data

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except GatewayError:
            raise
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "UNIQUE" in message:
                code = UNIQUE_VIOLATION
            elif "FOREIGN KEY" in message:
                code = FOREIGN_KEY_VIOLATION
            elif "NOT NULL" in message:
                code = NOT_NULL_VIOLATION
            else:
                code = INTERNAL
            raise GatewayError(code, message) from e
        except sqlite3.Error as e:
            logger.error(f"Gateway query failed: {e}")
            raise GatewayError(INTERNAL, str(e)) from e

    @staticmethod
    def _where(
        prefix: str,
        eq: Optional[Dict[str, Any]],
        gte: Optional[Dict[str, Any]],
        lte: Optional[Dict[str, Any]],
        any_eq: Optional[Dict[str, Any]],
        in_: Optional[Dict[str, Iterable[Any]]] = None,
    ):
        clauses, params = [], []
        for col, values in (in_ or {}).items():
            values = [encode_value(v) for v in values]
            if not values:
                clauses.append("0 = 1")
                continue
            clauses.append(f"{prefix}{col} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        for col, value in (eq or {}).items():
            if value is None:
                clauses.append(f"{prefix}{col} IS NULL")
            else:
                clauses.append(f"{prefix}{col} = ?")
                params.append(encode_value(value))
        for col, value in (gte or {}).items():
            clauses.append(f"{prefix}{col} >= ?")
            params.append(encode_value(value))
        for col, value in (lte or {}).items():
            clauses.append(f"{prefix}{col} <= ?")
            params.append(encode_value(value))
        if any_eq:
            ors = []
            for col, value in any_eq.items():
                ors.append(f"{prefix}{col} = ?")
                params.append(encode_value(value))
            clauses.append("(" + " OR ".join(ors) + ")")
        sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return sql, params

    # ── Queries ──────────────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        *,
        eq: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lte: Optional[Dict[str, Any]] = None,
        any_eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows matching every filter (``any_eq`` is OR-ed)."""
        self._check_columns(
            table,
            list(eq or {}) + list(gte or {}) + list(lte or {}) + list(any_eq or {})
            + list(in_ or {}) + ([order_by] if order_by else []),
        )
        where, params = self._where("", eq, gte, lte, any_eq, in_)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            sql += f" ORDER BY {order_by} {'ASC' if ascending else 'DESC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        def query():
            with _connect(self.db_path) as conn:
                return [self._decode_row(table, r) for r in conn.execute(sql, params).fetchall()]

        return await self._run(query)

    async def select_one(self, table: str, *, eq: Dict[str, Any]) -> Dict[str, Any]:
        """Select exactly one row; raises ``GatewayError(PGRST116)`` on zero rows."""
        rows = await self.select(table, eq=eq, limit=2)
        if len(rows) != 1:
            raise GatewayError(
                NOT_FOUND,
                "JSON object requested, multiple (or no) rows returned",
            )
        return rows[0]

    async def select_tasks(
        self,
        *,
        eq: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lte: Optional[Dict[str, Any]] = None,
        any_eq: Optional[Dict[str, Any]] = None,
        project_ids: Optional[Iterable[str]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Dict[str, Any]]:
        """Select tasks with the nested ``board -> project`` join.

        Each row carries ``board: {id, title, project: {id, title}}``.
        ``project_ids`` restricts to tasks whose board belongs to one of them.
        """
        self._check_columns(
            "tasks",
            list(eq or {}) + list(gte or {}) + list(lte or {}) + list(any_eq or {})
            + ([order_by] if order_by else []),
        )
        where, params = self._where("t.", eq, gte, lte, any_eq)
        if project_ids is not None:
            ids = list(project_ids)
            if ids:
                clause = f"b.project_id IN ({', '.join('?' for _ in ids)})"
                params.extend(ids)
            else:
                clause = "0 = 1"
            where = f"{where} AND {clause}" if where else f" WHERE {clause}"
        sql = (
            "SELECT t.*, b.title AS _board_title, p.id AS _project_id, p.title AS _project_title "
            "FROM tasks t "
            "LEFT JOIN boards b ON b.id = t.board_id "
            "LEFT JOIN projects p ON p.id = b.project_id"
            f"{where}"
        )
        if order_by:
            sql += f" ORDER BY t.{order_by} {'ASC' if ascending else 'DESC'}"

        def query():
            with _connect(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
            result = []
            for r in rows:
                data = dict(r)
                board_title = data.pop("_board_title")
                project_id = data.pop("_project_id")
                project_title = data.pop("_project_title")
                project = {"id": project_id, "title": project_title} if project_id else None
                data["board"] = {"id": data["board_id"], "title": board_title or "", "project": project}
                result.append(data)
            return result

        return await self._run(query)

    # ── Mutations ────────────────────────────────────────────────────────

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as stored (generated id/timestamps included)."""
        columns = self._check_table(table)
        data = {k: encode_value(v) for k, v in row.items()}
        self._check_columns(table, data)
        if "id" not in data or not data["id"]:
            data["id"] = str(uuid.uuid4())
        now = _now()
        for col in ("created_at", "updated_at"):
            if col in columns and not data.get(col):
                data[col] = now

        names = list(data)
        sql = (
            f"INSERT INTO {table} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )

        def write():
            with _connect(self.db_path) as conn:
                conn.execute(sql, [data[n] for n in names])
                conn.commit()
                stored = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (data["id"],)).fetchone()
                return self._decode_row(table, stored)

        return await self._run(write)

    async def update(self, table: str, row_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update by id and return the updated row."""
        columns = self._check_table(table)
        data = {k: encode_value(v) for k, v in changes.items() if k != "id"}
        self._check_columns(table, data)
        if "updated_at" in columns:
            data["updated_at"] = _now()
        if not data:
            return await self.select_one(table, eq={"id": row_id})

        assignments = ", ".join(f"{k} = ?" for k in data)
        sql = f"UPDATE {table} SET {assignments} WHERE id = ?"

        def write():
            with _connect(self.db_path) as conn:
                cur = conn.execute(sql, list(data.values()) + [row_id])
                conn.commit()
                if cur.rowcount == 0:
                    raise GatewayError(NOT_FOUND, f"No {table} row with id {row_id}")
                stored = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
                return self._decode_row(table, stored)

        return await self._run(write)

    async def delete(self, table: str, row_id: str) -> None:
        """Delete one row by id. Children go with it through FK cascades."""
        self._check_table(table)

        def write():
            with _connect(self.db_path) as conn:
                cur = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
                conn.commit()
                if cur.rowcount == 0:
                    raise GatewayError(NOT_FOUND, f"No {table} row with id {row_id}")

        await self._run(write)
