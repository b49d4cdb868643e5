"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository for
users, password history, refresh tokens and the audit log; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored by HMAC hash only (UNIQUE index). The raw value
  never reaches this module.

Atomicity:
  rotate_refresh_token() and replace_backup_codes() are compare-and-set
  writes: the UPDATE carries the expected current state in its WHERE clause
  and the caller learns from rowcount whether it won. On SQLite the write
  transaction is opened with BEGIN IMMEDIATE so a concurrent writer waits on
  the busy handler instead of failing on a stale WAL snapshot.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (always with microseconds) so
  lexicographic comparison in SQL equals chronological comparison.

DB path: taskflow_auth.db at the project root unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import AuthAuditLog, AuthEventType, GeoLocation, RefreshToken, User

logger = logging.getLogger("taskflow.store")

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
    Column("hashed_password", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", String(64)),  # base32, present from setup start
    Column("mfa_setup_completed", Integer, nullable=False, server_default="0"),
    Column("mfa_backup_codes", Text),  # JSON array of bcrypt hashes
    Column("last_password_change", String(32)),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_end_time", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_password_history_user", "user_id"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by_token_id", Integer),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Index("ix_refresh_tokens_user", "user_id"),
    Index("ix_refresh_tokens_expires", "expires_at"),
)

_audit_logs = Table(
    "auth_audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(40), nullable=False),
    Column("success", Integer, nullable=False),
    Column("user_id", Integer),
    Column("email", String(255)),
    Column("failure_reason", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("event_metadata", Text),  # JSON object
    Column("location", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_user_created", "user_id", "created_at"),
    Index("ix_audit_email_event_created", "email", "event_type", "created_at"),
    Index("ix_audit_ip_created", "ip_address", "created_at"),
)

# Columns an update_user() caller may touch. Anything else is a bug.
_USER_FIELDS: set = {
    "email",
    "name",
    "hashed_password",
    "is_active",
    "mfa_enabled",
    "mfa_secret",
    "mfa_setup_completed",
    "mfa_backup_codes",
    "last_password_change",
    "failed_login_attempts",
    "lockout_end_time",
    "last_login",
}
_BOOL_FIELDS = {"is_active", "mfa_enabled", "mfa_setup_completed"}
_TIME_FIELDS = {"last_password_change", "lockout_end_time", "last_login"}

_AUDIT_DISTINCT_FIELDS = {"email": _audit_logs.c.email, "ip_address": _audit_logs.c.ip_address}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def to_iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO 8601. Naive datetimes are treated as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, PasswordHistory, RefreshToken and AuthAuditLog.

    Usage:
        store = CredentialStore(settings.database_url)         # SQLite by default
        store = CredentialStore("postgresql://user:pw@host/db")
        uid = store.create_user(User(email="a@x.com", hashed_password=...))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        self._is_sqlite = db_url.startswith("sqlite")
        if self._is_sqlite:
            # FastAPI runs sync handlers in a thread pool; the same pooled
            # connection may be used from several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self._is_sqlite:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def _begin_write(self, conn: Connection) -> None:
        """Take the database write lock up front for compare-and-set sequences."""
        if self._is_sqlite:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    def ping(self) -> bool:
        """Cheap liveness probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(func.count()).select_from(_users)).scalar()
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a registration conflict.
        """
        created = user.created_at or _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_secret=user.mfa_secret,
                    mfa_setup_completed=1 if user.mfa_setup_completed else 0,
                    mfa_backup_codes=json.dumps(user.mfa_backup_codes),
                    last_password_change=to_iso(user.last_password_change),
                    created_at=to_iso(created),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Exact match on the normalized (lowercased) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable auth fields on a user.

        Booleans, datetimes and the backup code list are converted to their
        storage form here. Unknown field names raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values: dict = {}
        for key, value in fields.items():
            if key in _BOOL_FIELDS:
                value = 1 if value else 0
            elif key in _TIME_FIELDS:
                value = to_iso(value)
            elif key == "mfa_backup_codes":
                value = json.dumps(list(value or []))
            values[key] = value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def replace_backup_codes(self, user_id: int, expected: list[str], new: list[str]) -> bool:
        """Swap the stored backup code hashes only if they still equal `expected`.

        This is how a backup code is consumed exactly once: two concurrent
        verifications of the same code both read the same list, but only the
        first UPDATE matches the WHERE clause.
        """
        with self.engine.connect() as conn:
            self._begin_write(conn)
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.mfa_backup_codes == json.dumps(list(expected))))
                .values(mfa_backup_codes=json.dumps(list(new)))
            )
            conn.commit()
        return result.rowcount > 0

    def increment_failed_attempts(self, user_id: int) -> int:
        """Atomically bump the failed MFA attempt counter and return the new value."""
        with self.engine.connect() as conn:
            self._begin_write(conn)
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            count = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar()
            conn.commit()
        return count or 0

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def add_password_history(self, user_id: int, password_hash: str, created_at: datetime | None = None) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _password_history.insert().values(
                    user_id=user_id,
                    password_hash=password_hash,
                    created_at=to_iso(created_at or _utcnow()),
                )
            )
            conn.commit()

    def get_password_history(self, user_id: int, limit: int) -> list[str]:
        """Return the newest `limit` password hashes for a user, newest first."""
        if limit <= 0:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_password_history.c.password_hash)
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.created_at.desc(), _password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [r.password_hash for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            token_id = self._insert_refresh_token(conn, token)
            conn.commit()
        return token_id

    def _insert_refresh_token(self, conn: Connection, token: RefreshToken) -> int:
        result = conn.execute(
            _refresh_tokens.insert().values(
                user_id=token.user_id,
                token_hash=token.token_hash,
                created_at=to_iso(token.created_at or _utcnow()),
                expires_at=to_iso(token.expires_at),
                ip_address=token.ip_address,
                user_agent=token.user_agent,
            )
        )
        return result.inserted_primary_key[0]

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """O(1) lookup via the UNIQUE index on token_hash."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_refresh_token(self, token_id: int) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, token_id: int, successor: RefreshToken, now: datetime) -> int | None:
        """Atomically retire `token_id` in favor of `successor`.

        One write transaction: insert the successor, then mark the current
        link rotated -- guarded by "still active". If another caller rotated
        or revoked the token first, the guarded UPDATE matches nothing, the
        whole transaction (successor included) is rolled back and None is
        returned. Otherwise the successor's ID is returned.
        """
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            self._begin_write(conn)
            successor_id = self._insert_refresh_token(conn, successor)
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == token_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > now_iso)
                )
                .values(revoked_at=now_iso, replaced_by_token_id=successor_id)
            )
            if result.rowcount == 0:
                conn.rollback()
                logger.debug("Rotation of refresh token %s lost: no longer active", token_id)
                return None
            conn.commit()
        return successor_id

    def revoke_refresh_token(self, token_id: int, now: datetime) -> bool:
        """Set revoked_at if not already set. Returns True only on the first revoke."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_user_tokens(self, user_id: int, now: datetime) -> int:
        """Revoke every not-yet-revoked token for a user -- one indexed UPDATE, no chain walk."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(now))
            )
            conn.commit()
        logger.info("Revoked %d refresh tokens for user %s", result.rowcount, user_id)
        return result.rowcount

    def list_active_tokens(self, user_id: int, now: datetime) -> list[RefreshToken]:
        """Return non-revoked, non-expired tokens for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > to_iso(now))
                )
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def delete_tokens_expired_before(self, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < to_iso(cutoff)))
            conn.commit()
        logger.info("Deleted %d expired refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def insert_audit_log(self, entry: AuthAuditLog) -> int:
        location = None
        if entry.location is not None:
            location = json.dumps({k: v for k, v in vars(entry.location).items() if v is not None})
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    event_type=entry.event_type.value,
                    success=1 if entry.success else 0,
                    user_id=entry.user_id,
                    email=entry.email,
                    failure_reason=entry.failure_reason,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    event_metadata=json.dumps(entry.metadata or {}, default=str),
                    location=location,
                    created_at=to_iso(entry.created_at or _utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_logs(
        self,
        *,
        user_id: int | None = None,
        email: str | None = None,
        ip_address: str | None = None,
        event_types: list[AuthEventType] | None = None,
        success: bool | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuthAuditLog]:
        """Filtered audit query, newest first. Every filter is optional and ANDed."""
        query = _audit_logs.select().where(
            *_audit_filters(
                user_id=user_id,
                email=email,
                ip_address=ip_address,
                event_types=event_types,
                success=success,
                since=since,
            )
        )
        query = query.order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_log(r) for r in rows]

    def distinct_audit_values(
        self,
        field: str,
        *,
        user_id: int | None = None,
        ip_address: str | None = None,
        event_types: list[AuthEventType] | None = None,
        success: bool | None = None,
        since: datetime | None = None,
    ) -> set[str]:
        """Distinct non-null values of `field` ("email" or "ip_address") under the filters."""
        column = _AUDIT_DISTINCT_FIELDS.get(field)
        if column is None:
            raise ValueError(f"Unsupported distinct field: {field!r}")
        query = (
            select(column)
            .distinct()
            .where(
                column.is_not(None),
                *_audit_filters(
                    user_id=user_id,
                    ip_address=ip_address,
                    event_types=event_types,
                    success=success,
                    since=since,
                ),
            )
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return {r[0] for r in rows}

    def delete_audit_logs_before(self, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.created_at < to_iso(cutoff)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _audit_filters(
    *,
    user_id: int | None = None,
    email: str | None = None,
    ip_address: str | None = None,
    event_types: list[AuthEventType] | None = None,
    success: bool | None = None,
    since: datetime | None = None,
) -> list:
    clauses = []
    if user_id is not None:
        clauses.append(_audit_logs.c.user_id == user_id)
    if email is not None:
        clauses.append(_audit_logs.c.email == email)
    if ip_address is not None:
        clauses.append(_audit_logs.c.ip_address == ip_address)
    if event_types:
        clauses.append(_audit_logs.c.event_type.in_([e.value for e in event_types]))
    if success is not None:
        clauses.append(_audit_logs.c.success == (1 if success else 0))
    if since is not None:
        clauses.append(_audit_logs.c.created_at >= to_iso(since))
    return clauses


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    codes: list[str] = json.loads(row.mfa_backup_codes) if row.mfa_backup_codes else []
    return User(
        id=row.id,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        mfa_setup_completed=bool(row.mfa_setup_completed),
        mfa_backup_codes=codes,
        last_password_change=from_iso(row.last_password_change),
        failed_login_attempts=row.failed_login_attempts or 0,
        lockout_end_time=from_iso(row.lockout_end_time),
        created_at=from_iso(row.created_at),
        last_login=from_iso(row.last_login),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        revoked_at=from_iso(row.revoked_at),
        replaced_by_token_id=row.replaced_by_token_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_audit_log(row) -> AuthAuditLog:
    location = GeoLocation(**json.loads(row.location)) if row.location else None
    return AuthAuditLog(
        id=row.id,
        event_type=AuthEventType(row.event_type),
        success=bool(row.success),
        user_id=row.user_id,
        email=row.email,
        failure_reason=row.failure_reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        metadata=json.loads(row.event_metadata) if row.event_metadata else {},
        location=location,
        created_at=from_iso(row.created_at),
    )
