"""profile_etl.store

Backing-store handles for identities, profiles and the legacy employee table.

Every merge/resolve function takes a store explicitly; nothing imports a
global connection.  Two implementations share the ProfileStore protocol:

  PostgresStore   psycopg connection, raw SQL, COALESCE upserts.
                  transaction() maps to conn.transaction(), which becomes a
                  SAVEPOINT when nested.
  InMemoryStore   dict tables for tests and ``--db-dsn memory://`` runs.
                  transaction() snapshots state and restores it on error.

Table layout (see migrations/0002_profile_tables.sql):
  users                    identity (id, email, full_name)
  user_roles               role assignment per identity
  profiles                 canonical profile, id = users.id
  employee                 legacy flat row, profile_id = profiles.id
  employee_family_members  child rows mirrored from profiles.family_details
  employee_academic_info   child rows mirrored from profiles.education
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from profile_etl.models import EMPLOYEE_COLUMNS, JSON_COLUMNS, PROFILE_COLUMNS
from profile_etl.shared import PersistenceError

log = logging.getLogger(__name__)

FAMILY_MEMBER_COLUMNS = ("member_type", "member_name", "contact", "relation", "occupation", "age")
ACADEMIC_COLUMNS = ("qualification", "institution_name", "passout_year", "grade_percentage")


def _check_columns(columns, allowed: tuple[str, ...], table: str) -> None:
    unknown = set(columns) - set(allowed)
    if unknown:
        raise ValueError(f"unknown {table} columns: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ProfileStore(Protocol):
    """Persistence operations the resolver, merge executor and service need."""

    supports_concurrency: bool

    def transaction(self) -> Any: ...

    # identities
    def find_identity_by_email(self, email: str) -> str | None: ...
    def get_identity(self, identity_id: str) -> dict[str, Any] | None: ...
    def insert_identity(self, email: str, full_name: str) -> str: ...
    def update_identity_name(self, identity_id: str, full_name: str) -> None: ...
    def assign_role(self, identity_id: str, role: str) -> None: ...
    def get_role(self, identity_id: str) -> str | None: ...

    # profiles / legacy
    def get_profile(self, identity_id: str) -> dict[str, Any] | None: ...
    def upsert_profile(self, identity_id: str, values: dict[str, Any]) -> dict[str, Any]: ...
    def get_employee(self, identity_id: str) -> dict[str, Any] | None: ...
    def sync_employee(self, identity_id: str, values: dict[str, Any]) -> int: ...
    def replace_employee(self, identity_id: str, row: dict[str, Any]) -> None: ...
    def replace_family_members(self, identity_id: str, members: list[dict[str, Any]]) -> int: ...
    def replace_academic_info(self, identity_id: str, entries: list[dict[str, Any]]) -> int: ...

    # deletes, each returning the affected row count
    def delete_employee(self, identity_id: str) -> int: ...
    def delete_profile(self, identity_id: str) -> int: ...
    def delete_role_assignment(self, identity_id: str) -> int: ...
    def delete_identity(self, identity_id: str) -> int: ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_PROFILE_INSERT_COLS = ", ".join(("id",) + PROFILE_COLUMNS + ("updated_at",))
_PROFILE_PLACEHOLDERS = ", ".join(["%s::uuid"] + ["%s"] * len(PROFILE_COLUMNS) + ["now()"])
_PROFILE_COALESCE = ",\n          ".join(
    f"{c} = COALESCE(EXCLUDED.{c}, profiles.{c})" for c in PROFILE_COLUMNS
)

UPSERT_PROFILE_SQL = f"""
        INSERT INTO profiles ({_PROFILE_INSERT_COLS})
        VALUES ({_PROFILE_PLACEHOLDERS})
        ON CONFLICT (id) DO UPDATE SET
          {_PROFILE_COALESCE},
          updated_at = now()
        RETURNING *
        """


@contextmanager
def _persisting(table: str, operation: str) -> Iterator[None]:
    """Translate driver errors into PersistenceError, logging full context."""
    try:
        yield
    except psycopg.Error as exc:
        log.error(
            "Store %s on %s failed: %s: %s",
            operation, table, type(exc).__name__, exc,
        )
        raise PersistenceError(table, operation) from exc


def _as_row(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: (str(v) if isinstance(v, uuid.UUID) else v) for k, v in row.items()}


class PostgresStore:
    """ProfileStore backed by a psycopg connection.

    Open the connection with autocommit=True so each transaction() block is
    one committed unit; nested blocks become savepoints.
    """

    supports_concurrency = False

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.conn.transaction():
            yield

    def _fetchone(self, sql: str, params: tuple) -> dict[str, Any] | None:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return _as_row(cur.fetchone())

    def _rowcount(self, sql: str, params: tuple) -> int:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    # -- identities ---------------------------------------------------------

    def find_identity_by_email(self, email: str) -> str | None:
        with _persisting("users", "select"):
            row = self._fetchone(
                "SELECT id FROM users WHERE email = %s ORDER BY created_at ASC, id ASC LIMIT 1",
                (email,),
            )
        return row["id"] if row else None

    def get_identity(self, identity_id: str) -> dict[str, Any] | None:
        with _persisting("users", "select"):
            return self._fetchone(
                "SELECT id, email, full_name, created_at, updated_at FROM users WHERE id = %s::uuid",
                (identity_id,),
            )

    def insert_identity(self, email: str, full_name: str) -> str:
        with _persisting("users", "insert"):
            row = self._fetchone(
                """
                INSERT INTO users (id, email, full_name, created_at, updated_at)
                VALUES (gen_random_uuid(), %s, %s, now(), now())
                RETURNING id
                """,
                (email, full_name),
            )
        return row["id"]

    def update_identity_name(self, identity_id: str, full_name: str) -> None:
        with _persisting("users", "update"):
            self.conn.execute(
                "UPDATE users SET full_name = %s, updated_at = now() WHERE id = %s::uuid",
                (full_name, identity_id),
            )

    def assign_role(self, identity_id: str, role: str) -> None:
        with _persisting("user_roles", "insert"):
            self.conn.execute(
                """
                INSERT INTO user_roles (user_id, role)
                VALUES (%s::uuid, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (identity_id, role),
            )

    def get_role(self, identity_id: str) -> str | None:
        with _persisting("user_roles", "select"):
            row = self._fetchone(
                "SELECT role FROM user_roles WHERE user_id = %s::uuid", (identity_id,)
            )
        return row["role"] if row else None

    # -- profiles -----------------------------------------------------------

    def get_profile(self, identity_id: str) -> dict[str, Any] | None:
        with _persisting("profiles", "select"):
            return self._fetchone(
                "SELECT * FROM profiles WHERE id = %s::uuid", (identity_id,)
            )

    def upsert_profile(self, identity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(values, PROFILE_COLUMNS, "profiles")
        params: list[Any] = [identity_id]
        for column in PROFILE_COLUMNS:
            value = values.get(column)
            if value is not None and column in JSON_COLUMNS:
                value = Jsonb(value)
            params.append(value)
        with _persisting("profiles", "upsert"):
            return self._fetchone(UPSERT_PROFILE_SQL, tuple(params))

    # -- legacy employee ----------------------------------------------------

    def get_employee(self, identity_id: str) -> dict[str, Any] | None:
        with _persisting("employee", "select"):
            return self._fetchone(
                "SELECT * FROM employee WHERE profile_id = %s::uuid ORDER BY id DESC LIMIT 1",
                (identity_id,),
            )

    def sync_employee(self, identity_id: str, values: dict[str, Any]) -> int:
        _check_columns(values, EMPLOYEE_COLUMNS, "employee")
        if not values:
            return 0
        columns = list(values)
        assignments = ", ".join(f"{c} = COALESCE(%s, {c})" for c in columns)
        with _persisting("employee", "sync"):
            return self._rowcount(
                f"UPDATE employee SET {assignments}, updated_at = now() "
                "WHERE profile_id = %s::uuid",
                tuple(values[c] for c in columns) + (identity_id,),
            )

    def replace_employee(self, identity_id: str, row: dict[str, Any]) -> None:
        _check_columns(row, EMPLOYEE_COLUMNS, "employee")
        columns = list(row)
        placeholders = ", ".join(["%s::uuid"] + ["%s"] * len(columns))
        with _persisting("employee", "replace"):
            self.conn.execute(
                "DELETE FROM employee WHERE profile_id = %s::uuid", (identity_id,)
            )
            self.conn.execute(
                f"INSERT INTO employee (profile_id, {', '.join(columns)}) "
                f"VALUES ({placeholders})",
                (identity_id,) + tuple(row[c] for c in columns),
            )

    def replace_family_members(self, identity_id: str, members: list[dict[str, Any]]) -> int:
        with _persisting("employee_family_members", "replace"):
            self.conn.execute(
                "DELETE FROM employee_family_members WHERE profile_id = %s::uuid",
                (identity_id,),
            )
            for member in members:
                self.conn.execute(
                    """
                    INSERT INTO employee_family_members
                      (profile_id, member_type, member_name, contact, relation, occupation, age)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s, %s)
                    """,
                    (identity_id,) + tuple(member.get(c) for c in FAMILY_MEMBER_COLUMNS),
                )
        return len(members)

    def replace_academic_info(self, identity_id: str, entries: list[dict[str, Any]]) -> int:
        with _persisting("employee_academic_info", "replace"):
            self.conn.execute(
                "DELETE FROM employee_academic_info WHERE profile_id = %s::uuid",
                (identity_id,),
            )
            for entry in entries:
                self.conn.execute(
                    """
                    INSERT INTO employee_academic_info
                      (profile_id, qualification, institution_name, passout_year, grade_percentage)
                    VALUES (%s::uuid, %s, %s, %s, %s)
                    """,
                    (identity_id,) + tuple(entry.get(c) for c in ACADEMIC_COLUMNS),
                )
        return len(entries)

    # -- deletes ------------------------------------------------------------

    def delete_employee(self, identity_id: str) -> int:
        with _persisting("employee", "delete"):
            return self._rowcount(
                "DELETE FROM employee WHERE profile_id = %s::uuid", (identity_id,)
            )

    def delete_profile(self, identity_id: str) -> int:
        with _persisting("profiles", "delete"):
            return self._rowcount("DELETE FROM profiles WHERE id = %s::uuid", (identity_id,))

    def delete_role_assignment(self, identity_id: str) -> int:
        with _persisting("user_roles", "delete"):
            return self._rowcount(
                "DELETE FROM user_roles WHERE user_id = %s::uuid", (identity_id,)
            )

    def delete_identity(self, identity_id: str) -> int:
        with _persisting("users", "delete"):
            return self._rowcount("DELETE FROM users WHERE id = %s::uuid", (identity_id,))


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """ProfileStore over plain dicts.

    A single reentrant lock serializes transactions across threads; each
    transaction() level snapshots the tables and restores them if the block
    raises, giving the same all-or-nothing behaviour as a savepoint.
    """

    supports_concurrency = True

    _TABLES = ("users", "user_roles", "profiles", "employee", "family_members", "academic_info")

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.user_roles: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.employee: dict[str, dict[str, Any]] = {}
        self.family_members: dict[str, list[dict[str, Any]]] = {}
        self.academic_info: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = {t: copy.deepcopy(getattr(self, t)) for t in self._TABLES}
            try:
                yield
            except BaseException:
                for table, data in snapshot.items():
                    setattr(self, table, data)
                raise

    # -- identities ---------------------------------------------------------

    def find_identity_by_email(self, email: str) -> str | None:
        with self._lock:
            for identity_id, user in self.users.items():
                if user["email"] == email:
                    return identity_id
        return None

    def get_identity(self, identity_id: str) -> dict[str, Any] | None:
        with self._lock:
            user = self.users.get(identity_id)
            return dict(user) if user else None

    def insert_identity(self, email: str, full_name: str) -> str:
        identity_id = str(uuid.uuid4())
        now = _now()
        with self._lock:
            self.users[identity_id] = {
                "id": identity_id, "email": email, "full_name": full_name,
                "created_at": now, "updated_at": now,
            }
        return identity_id

    def update_identity_name(self, identity_id: str, full_name: str) -> None:
        with self._lock:
            user = self.users.get(identity_id)
            if user is not None:
                user["full_name"] = full_name
                user["updated_at"] = _now()

    def assign_role(self, identity_id: str, role: str) -> None:
        with self._lock:
            self.user_roles.setdefault(identity_id, {"user_id": identity_id, "role": role})

    def get_role(self, identity_id: str) -> str | None:
        with self._lock:
            row = self.user_roles.get(identity_id)
            return row["role"] if row else None

    # -- profiles -----------------------------------------------------------

    def get_profile(self, identity_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.profiles.get(identity_id)
            return copy.deepcopy(row) if row else None

    def upsert_profile(self, identity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        _check_columns(values, PROFILE_COLUMNS, "profiles")
        now = _now()
        with self._lock:
            row = self.profiles.get(identity_id)
            if row is None:
                if identity_id not in self.users:
                    raise PersistenceError("profiles", "upsert")
                row = {"id": identity_id, **{c: None for c in PROFILE_COLUMNS}}
                row["created_at"] = now
                self.profiles[identity_id] = row
            for column, value in values.items():
                if value is not None:
                    row[column] = copy.deepcopy(value)
            row["updated_at"] = now
            return copy.deepcopy(row)

    # -- legacy employee ----------------------------------------------------

    def get_employee(self, identity_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.employee.get(identity_id)
            return dict(row) if row else None

    def sync_employee(self, identity_id: str, values: dict[str, Any]) -> int:
        _check_columns(values, EMPLOYEE_COLUMNS, "employee")
        with self._lock:
            row = self.employee.get(identity_id)
            if row is None or not values:
                return 0
            for column, value in values.items():
                if value is not None:
                    row[column] = value
            row["updated_at"] = _now()
            return 1

    def replace_employee(self, identity_id: str, row: dict[str, Any]) -> None:
        _check_columns(row, EMPLOYEE_COLUMNS, "employee")
        with self._lock:
            if identity_id not in self.profiles:
                raise PersistenceError("employee", "replace")
            now = _now()
            self.employee[identity_id] = {
                "profile_id": identity_id,
                **{c: None for c in EMPLOYEE_COLUMNS},
                **row,
                "created_at": now,
                "updated_at": now,
            }

    def replace_family_members(self, identity_id: str, members: list[dict[str, Any]]) -> int:
        with self._lock:
            self.family_members[identity_id] = [
                {c: m.get(c) for c in FAMILY_MEMBER_COLUMNS} for m in members
            ]
        return len(members)

    def replace_academic_info(self, identity_id: str, entries: list[dict[str, Any]]) -> int:
        with self._lock:
            self.academic_info[identity_id] = [
                {c: e.get(c) for c in ACADEMIC_COLUMNS} for e in entries
            ]
        return len(entries)

    # -- deletes ------------------------------------------------------------

    def delete_employee(self, identity_id: str) -> int:
        with self._lock:
            return 1 if self.employee.pop(identity_id, None) is not None else 0

    def delete_profile(self, identity_id: str) -> int:
        with self._lock:
            if identity_id in self.employee:
                raise PersistenceError("profiles", "delete")
            self.family_members.pop(identity_id, None)
            self.academic_info.pop(identity_id, None)
            return 1 if self.profiles.pop(identity_id, None) is not None else 0

    def delete_role_assignment(self, identity_id: str) -> int:
        with self._lock:
            return 1 if self.user_roles.pop(identity_id, None) is not None else 0

    def delete_identity(self, identity_id: str) -> int:
        with self._lock:
            if identity_id in self.profiles or identity_id in self.user_roles:
                raise PersistenceError("users", "delete")
            return 1 if self.users.pop(identity_id, None) is not None else 0
