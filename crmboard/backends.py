"""
Table store backends.

The gateway builds a TableQuery (search, conditions, ordering) and hands it to
a backend. Two backends are provided:

  SqliteTableBackend - local SQLite file, rows scoped to one user
  RestTableBackend   - PostgREST-compatible HTTP store (Supabase style)

Backends raise StoreError with the store's own message; the gateway decides
how that surfaces to users.
"""
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .errors import StoreError

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Query model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class Condition:
    """column <op> value, op is one of eq / gte / lte."""
    column: str
    op: str
    value: Any


@dataclass(frozen=True)
class Search:
    """Case-insensitive substring match, OR-ed across columns."""
    columns: Tuple[str, ...]
    term: str


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True
    nulls_last: bool = False
    rank: Optional[Tuple[str, ...]] = None  # explicit value order instead of collation


@dataclass
class TableQuery:
    """Builder for a single-table select."""
    search: Optional[Search] = None
    conditions: List[Condition] = field(default_factory=list)
    orders: List[Order] = field(default_factory=list)

    def ilike_any(self, columns: Sequence[str], term: str) -> "TableQuery":
        self.search = Search(tuple(columns), term)
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self.conditions.append(Condition(column, "eq", value))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self.conditions.append(Condition(column, "gte", value))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self.conditions.append(Condition(column, "lte", value))
        return self

    def order(self, column: str, ascending: bool = True, nulls_last: bool = False,
              rank: Optional[Sequence[str]] = None) -> "TableQuery":
        self.orders.append(Order(column, ascending, nulls_last, tuple(rank) if rank else None))
        return self


def sort_rows(rows: List[Dict[str, Any]], orders: Sequence[Order]) -> List[Dict[str, Any]]:
    """Sort rows in Python following the same rules the SQL backends apply."""
    result = list(rows)
    # Stable sort: apply the least significant clause first
    for o in reversed(orders):
        present = [r for r in result if r.get(o.column) is not None]
        missing = [r for r in result if r.get(o.column) is None]
        if o.rank:
            rank = {v: i for i, v in enumerate(o.rank)}
            key = lambda r, c=o.column: rank.get(r[c], len(rank))
        else:
            key = lambda r, c=o.column: r[c]
        present.sort(key=key, reverse=not o.ascending)
        # Postgres default: NULLS LAST ascending, NULLS FIRST descending
        if o.nulls_last or o.ascending:
            result = present + missing
        else:
            result = missing + present
    return result


class TableBackend:
    """Interface every table store implements."""

    def select(self, table: str, query: TableQuery) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def select_one(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, row_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, table: str, row_id: str) -> None:
        raise NotImplementedError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


TABLE_COLUMNS = {
    "contacts": (
        "id", "user_id", "first_name", "last_name", "email", "phone", "company",
        "job_title", "address", "city", "state", "postal_code", "country", "notes",
        "tags", "attachments", "created_at", "updated_at",
    ),
    "tasks": (
        "id", "user_id", "title", "description", "status", "priority", "due_date",
        "completed_at", "assigned_to", "contact_id", "tags", "created_at", "updated_at",
    ),
}

JSON_COLUMNS = {"tags", "attachments"}


def _casefold(value):
    return str(value).casefold() if value is not None else None


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode and the casefold() search function."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteTableBackend(TableBackend):
    """
    SQLite-backed table store. Every row belongs to ``user_id``.

    Built-in LIKE only folds ASCII, so search compares Python-casefolded
    text on both sides.
    """

    def __init__(self, db_path: str = None, user_id: str = "local-user"):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "crmboard" / "crm.db")
        self.db_path = db_path
        self.user_id = user_id
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    phone TEXT,
                    company TEXT,
                    job_title TEXT,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    postal_code TEXT,
                    country TEXT,
                    notes TEXT,
                    tags TEXT,         -- JSON list
                    attachments TEXT,  -- JSON list of attachment objects
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    due_date TEXT,
                    completed_at TEXT,
                    assigned_to TEXT,
                    contact_id TEXT,
                    tags TEXT,  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_user ON contacts(user_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.commit()

    def _columns(self, table: str) -> Tuple[str, ...]:
        try:
            return TABLE_COLUMNS[table]
        except KeyError:
            raise StoreError(f"relation \"{table}\" does not exist")

    def _check_columns(self, table: str, names) -> None:
        unknown = set(names) - set(self._columns(table))
        if unknown:
            raise StoreError(
                f"Could not find column(s) {', '.join(sorted(unknown))} of '{table}'"
            )

    def _encode(self, values: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for k, v in values.items():
            if k in JSON_COLUMNS and v is not None:
                v = json.dumps(v)
            encoded[k] = v
        return encoded

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for col in JSON_COLUMNS:
            if isinstance(data.get(col), str):
                try:
                    data[col] = json.loads(data[col])
                except (json.JSONDecodeError, TypeError):
                    data[col] = None
        return data

    def _order_sql(self, o: Order, params: list) -> List[str]:
        direction = "ASC" if o.ascending else "DESC"
        parts = []
        if o.nulls_last:
            parts.append(f"{o.column} IS NULL ASC")
        if o.rank:
            cases = " ".join(f"WHEN ? THEN {i}" for i in range(len(o.rank)))
            params.extend(o.rank)
            parts.append(f"CASE {o.column} {cases} ELSE {len(o.rank)} END {direction}")
        else:
            parts.append(f"{o.column} {direction}")
        return parts

    def select(self, table: str, query: TableQuery) -> List[Dict[str, Any]]:
        columns = [c.column for c in query.conditions] + [o.column for o in query.orders]
        if query.search:
            columns.extend(query.search.columns)
        self._check_columns(table, columns)

        clauses = ["user_id = ?"]
        params: list = [self.user_id]
        if query.search:
            like = f"%{_escape_like(query.search.term.casefold())}%"
            clauses.append(
                "(" + " OR ".join(f"casefold({c}) LIKE ? ESCAPE '\\'" for c in query.search.columns) + ")"
            )
            params.extend([like] * len(query.search.columns))
        ops = {"eq": "=", "gte": ">=", "lte": "<="}
        for cond in query.conditions:
            if cond.op not in ops:
                raise StoreError(f"unsupported operator: {cond.op}")
            clauses.append(f"{cond.column} {ops[cond.op]} ?")
            params.append(cond.value)

        order_parts: List[str] = []
        for o in query.orders:
            order_parts.extend(self._order_sql(o, params))
        # Ties resolve to most recently inserted first
        order_parts.append("rowid DESC")

        sql = f"SELECT * FROM {table} WHERE {' AND '.join(clauses)} ORDER BY {', '.join(order_parts)}"
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return [self._row_to_dict(r) for r in rows]

    def select_one(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        self._columns(table)
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ? AND user_id = ?",
                    (row_id, self.user_id),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return self._row_to_dict(row) if row else None

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        row = {k: v for k, v in values.items() if k not in ("id", "user_id", "created_at", "updated_at")}
        row.update(id=str(uuid.uuid4()), user_id=self.user_id, created_at=now, updated_at=now)
        self._check_columns(table, row.keys())
        row = self._encode(row)
        names = list(row.keys())
        try:
            with _connect(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                    [row[n] for n in names],
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return self.select_one(table, row["id"])

    def update(self, table: str, row_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        changes = {k: v for k, v in values.items() if k not in ("id", "user_id", "created_at")}
        changes["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._check_columns(table, changes.keys())
        changes = self._encode(changes)
        assignments = ", ".join(f"{k} = ?" for k in changes)
        try:
            with _connect(self.db_path) as conn:
                cur = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ? AND user_id = ?",
                    [*changes.values(), row_id, self.user_id],
                )
                conn.commit()
                if cur.rowcount == 0:
                    return None
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return self.select_one(table, row_id)

    def delete(self, table: str, row_id: str) -> None:
        self._columns(table)
        try:
            with _connect(self.db_path) as conn:
                conn.execute(
                    f"DELETE FROM {table} WHERE id = ? AND user_id = ?",
                    (row_id, self.user_id),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PostgREST backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _pgrst_value(value: Any) -> str:
    """Quote a filter value when it contains PostgREST reserved characters."""
    text = str(value)
    if any(ch in text for ch in ',.:()"\\ '):
        text = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


class RestTableBackend(TableBackend):
    """HTTP client for a PostgREST table API (``{base_url}/rest/v1/{table}``).

    Row ownership is enforced by the store's own policies; ``user_id`` is only
    stamped onto inserts.
    """

    def __init__(self, base_url: str, api_key: str, access_token: Optional[str] = None,
                 user_id: Optional[str] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.user_id = user_id
        self.timeout = timeout
        self.session = requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _request(self, method: str, table: str, params=None, body=None) -> Any:
        try:
            r = self.session.request(
                method,
                self._url(table),
                params=params,
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StoreError(str(e)) from e
        if not r.ok:
            message = r.text
            try:
                payload = r.json()
                message = payload.get("message") or payload.get("error") or message
            except ValueError:
                pass
            raise StoreError(message or f"HTTP {r.status_code}")
        if not r.content:
            return None
        return r.json()

    def build_params(self, query: TableQuery) -> List[Tuple[str, str]]:
        """Translate a TableQuery into PostgREST query-string pairs."""
        params = [("select", "*")]
        if query.search:
            pattern = _pgrst_value(f"*{query.search.term}*")
            params.append((
                "or",
                "(" + ",".join(f"{c}.ilike.{pattern}" for c in query.search.columns) + ")",
            ))
        for cond in query.conditions:
            params.append((cond.column, f"{cond.op}.{cond.value}"))
        # Ranked ordering cannot be expressed server-side; sorted after fetch instead
        if query.orders and not any(o.rank for o in query.orders):
            parts = []
            for o in query.orders:
                part = f"{o.column}.{'asc' if o.ascending else 'desc'}"
                if o.nulls_last:
                    part += ".nullslast"
                parts.append(part)
            params.append(("order", ",".join(parts)))
        return params

    def select(self, table: str, query: TableQuery) -> List[Dict[str, Any]]:
        rows = self._request("GET", table, params=self.build_params(query)) or []
        if any(o.rank for o in query.orders):
            rows = sort_rows(rows, query.orders)
        return rows

    def select_one(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = self._request("GET", table, params=[("select", "*"), ("id", f"eq.{row_id}"), ("limit", "1")])
        return rows[0] if rows else None

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(values)
        if self.user_id and "user_id" not in body:
            body["user_id"] = self.user_id
        rows = self._request("POST", table, params=[("select", "*")], body=body)
        if not rows:
            raise StoreError(f"insert into {table} returned no row")
        return rows[0]

    def update(self, table: str, row_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._request("PATCH", table, params=[("id", f"eq.{row_id}"), ("select", "*")], body=values)
        return rows[0] if rows else None

    def delete(self, table: str, row_id: str) -> None:
        self._request("DELETE", table, params=[("id", f"eq.{row_id}")])
