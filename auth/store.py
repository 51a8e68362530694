"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_principal
is the mapper. Service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  swap_refresh_token() and consume_token_version() are each a single
  conditional UPDATE. The WHERE clause carries the expected current value,
  so two concurrent callers presenting the same stale value cannot both win:
  the second one matches zero rows.

Failures:
  IntegrityError propagates unchanged (the service turns a duplicate email
  into Conflict). Every other SQLAlchemyError is logged and re-raised as
  StoreUnavailable so no driver detail reaches a response body.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreUnavailable
from auth.models import Principal, Provider, Role

logger = logging.getLogger("accountd.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("password_hash", Text),  # NULL for social-only and not-yet-accepted invites
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("provider", String(20), nullable=False, server_default=Provider.manual.value),
    Column("provider_subject", Text),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("blocked", Boolean, nullable=False, server_default="0"),
    Column("refresh_token_hash", String(64)),  # HMAC-SHA256 hex of the current refresh token
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# Columns callers may change through update_user(). Anything else (id,
# created_at, the refresh hash, the token version) has a dedicated method.
_MUTABLE_FIELDS = {
    "name",
    "password_hash",
    "role",
    "provider",
    "provider_subject",
    "email_verified",
    "active",
    "blocked",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _db_values(fields: dict) -> dict:
    values = dict(fields)
    for key in ("role", "provider"):
        if key in values and values[key] is not None:
            values[key] = values[key].value if hasattr(values[key], "value") else str(values[key])
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal records.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(Principal(email="alice@x.com", password_hash=...))
        principal = store.get_by_email("alice@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator:
        """Yield a connection; translate driver failures into StoreUnavailable."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("User store failure: %s", exc)
            raise StoreUnavailable() from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def count_users(self) -> int:
        with self._connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def get_by_id(self, user_id: int) -> Principal | None:
        """Look up a principal by primary key. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_email(self, email: str) -> Principal | None:
        """Look up a principal by email (case-insensitive). Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_principal(row) if row is not None else None

    def count_active_admins(self) -> int:
        """Return the number of active, unblocked admins (last-admin guard [M4])."""
        with self._connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(
                    (_users.c.role == Role.ADMIN.value) & (_users.c.active.is_(True)) & (_users.c.blocked.is_(False))
                )
            ).scalar()
        return result or 0

    def list_users(self) -> list[Principal]:
        """Return all principals ordered by id."""
        with self._connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_principal(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=_normalize_email(principal.email),
                    name=principal.name,
                    password_hash=principal.password_hash,
                    role=Role(principal.role).value,
                    provider=Provider(principal.provider).value,
                    provider_subject=principal.provider_subject,
                    email_verified=principal.email_verified,
                    active=principal.active,
                    blocked=principal.blocked,
                    token_version=principal.token_version,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing principal.

        Accepted fields: see _MUTABLE_FIELDS. Unknown keys raise ValueError.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return self.get_by_id(user_id) is not None
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **_db_values(fields))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a principal. Returns True if deleted, False if not found."""
        with self._connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Conditional updates
    # ------------------------------------------------------------------

    def set_refresh_token(self, user_id: int, token_hash: str | None) -> bool:
        """Unconditionally store (or clear with None) the refresh-token hash."""
        with self._connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(refresh_token_hash=token_hash)
            )
            conn.commit()
        return result.rowcount > 0

    def swap_refresh_token(self, user_id: int, expected_hash: str, new_hash: str) -> bool:
        """Replace the refresh-token hash only if it still equals expected_hash.

        Returns False when the stored hash differs (already rotated, cleared by
        logout, or user deleted).
        """
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.refresh_token_hash == expected_hash))
                .values(refresh_token_hash=new_hash)
            )
            conn.commit()
        return result.rowcount > 0

    def consume_token_version(self, user_id: int, expected_version: int, **fields) -> bool:
        """Bump token_version (and apply fields) only if it still equals expected_version.

        Used for purpose-token consumption and password changes. Returns False
        if another request consumed the version first.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.token_version == expected_version))
                .values(
                    token_version=_users.c.token_version + 1,
                    updated_at=_now_iso(),
                    **_db_values(fields),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name or "",
        password_hash=row.password_hash,
        role=Role(row.role),
        provider=Provider(row.provider),
        provider_subject=row.provider_subject,
        email_verified=bool(row.email_verified),
        active=bool(row.active),
        blocked=bool(row.blocked),
        refresh_token_hash=row.refresh_token_hash,
        token_version=row.token_version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
