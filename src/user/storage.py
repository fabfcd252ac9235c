"""Relational storage shared with the LeMedia web application.

This module provides:
- Dual-backend storage (Postgres for production, SQLite for development/tests)
- Account linking: one-time link codes and chat identity -> account bindings
- Last-known request status per (chat identity, request) for delta notifications
- Watch alerts (one-shot "tell me when it's available" subscriptions)
- Read-only queries for the admin digest (pending requests, job failures)
- A non-blocking, cluster-wide advisory lock for scheduled passes

The web application owns ``app_user``, ``media_request`` and ``job_history``.
On Postgres the bot only creates its own tables; the SQLite backend creates a
minimal copy of the external tables so the bot can run stand-alone.

Usage:
    async with get_storage() as storage:
        linked = await storage.get_linked_user(telegram_id)

    async with get_storage() as storage, storage.advisory_lock(450001) as acquired:
        if acquired:
            ...
"""

import secrets
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Ambiguous characters (0/O, 1/I) are excluded so codes can be typed by hand
LINK_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LINK_CODE_LENGTH = 8
DEFAULT_LINK_CODE_TTL_MINUTES = 10

# Request statuses the scheduler reports on
NOTIFIABLE_STATUSES = ("downloading", "available", "failed")

# SQLite lock rows older than this belong to a crashed holder
SQLITE_LOCK_STALE_SECONDS = 600

ADMIN_GROUP = "administrators"
LEGACY_ADMIN_GROUPS = {
    "admin": ADMIN_GROUP,
    "admins": ADMIN_GROUP,
    "administrator": ADMIN_GROUP,
    "owner": ADMIN_GROUP,
}


# =============================================================================
# Exceptions
# =============================================================================


class LinkCodeError(Exception):
    """Base exception for link code redemption."""

    pass


class LinkCodeNotFoundError(LinkCodeError):
    """Raised when a link code does not exist or was already used."""

    pass


class LinkCodeExpiredError(LinkCodeError):
    """Raised when a link code is past its expiry."""

    pass


# =============================================================================
# Data Models
# =============================================================================


class LinkedAccount(BaseModel):
    """Binding between a Telegram identity and a LeMedia account."""

    telegram_id: str
    user_id: int
    api_token_encrypted: str
    linked_at: datetime | None = None


class LinkToken(BaseModel):
    """One-time code issued by /link."""

    code: str
    telegram_id: str
    telegram_username: str | None = None
    expires_at: datetime
    created_at: datetime


class RequestStatusRow(BaseModel):
    """Current status of a request owned by a linked user."""

    telegram_id: str
    request_id: str
    title: str
    request_type: str  # "movie" or "episode"
    tmdb_id: int | None = None
    status: str
    status_reason: str | None = None


class RequestStatusState(BaseModel):
    """Last status the scheduler observed for a (telegram_id, request_id) pair."""

    telegram_id: str
    request_id: str
    last_status: str
    last_reason: str | None = None
    updated_at: datetime


class WatchAlert(BaseModel):
    """One-shot availability alert."""

    id: int
    telegram_id: str
    user_id: int
    media_type: str  # "movie" or "tv"
    tmdb_id: int
    title: str
    active: bool = True
    created_at: datetime
    notified_at: datetime | None = None


class LinkedAdmin(BaseModel):
    """Linked account whose LeMedia user is an administrator."""

    user_id: int
    username: str
    telegram_id: str
    api_token_encrypted: str


class JobFailureSummary(BaseModel):
    """Failure count of one (job, error) group from job history."""

    job_name: str
    message: str
    count: int


# =============================================================================
# Helpers
# =============================================================================


def generate_link_code() -> str:
    """Generate a grouped, human-typable code such as ``K7QM-3XPA``."""
    code = "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(LINK_CODE_LENGTH))
    return f"{code[:4]}-{code[4:]}"


def normalize_link_code(code: str) -> str:
    """Normalize user-typed codes (case, surrounding spaces)."""
    return code.strip().upper()


def parse_groups(raw: str | None) -> list[str]:
    """Split the web app's group string and map legacy admin names."""
    if not raw:
        return []
    normalized = raw.replace(";", ",")
    groups = [g.strip().lower() for g in normalized.split(",") if g.strip()]
    return [LEGACY_ADMIN_GROUPS.get(g, g) for g in groups]


def is_admin_groups(raw: str | None) -> bool:
    """Check whether a group string grants administrator privileges."""
    return ADMIN_GROUP in parse_groups(raw)


def _to_datetime(value: Any) -> datetime | None:
    """Convert stored timestamps (ISO text or datetime) to aware datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# =============================================================================
# Abstract Storage Interface
# =============================================================================


class BaseStorage(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        pass

    async def __aenter__(self) -> "BaseStorage":
        """Open database connection and apply migrations."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object | None,
    ) -> None:
        """Close database connection."""
        await self.close()

    # -------------------------------------------------------------------------
    # Account linking
    # -------------------------------------------------------------------------

    @abstractmethod
    async def issue_link_code(
        self,
        telegram_id: str,
        telegram_username: str | None = None,
        ttl_minutes: int = DEFAULT_LINK_CODE_TTL_MINUTES,
    ) -> str:
        """Replace any token of this identity with a fresh code and return it."""
        pass

    @abstractmethod
    async def get_link_token(self, code: str) -> LinkToken | None:
        """Get a link token by code."""
        pass

    @abstractmethod
    async def redeem_link_code(
        self,
        code: str,
        user_id: int,
        api_token_encrypted: str,
        now: datetime | None = None,
    ) -> LinkedAccount:
        """Consume a link code and bind its identity to a LeMedia account.

        Raises:
            LinkCodeNotFoundError: Unknown or already consumed code
            LinkCodeExpiredError: Code is past its expiry
        """
        pass

    @abstractmethod
    async def get_linked_user(self, telegram_id: str) -> LinkedAccount | None:
        """Get the account linked to a Telegram identity."""
        pass

    @abstractmethod
    async def unlink(self, telegram_id: str) -> bool:
        """Remove the link of a Telegram identity. Returns True if one existed."""
        pass

    @abstractmethod
    async def is_user_admin(self, user_id: int) -> bool:
        """Check whether a LeMedia user is an administrator."""
        pass

    @abstractmethod
    async def list_linked_admins(self) -> list[LinkedAdmin]:
        """List linked accounts of administrators."""
        pass

    # -------------------------------------------------------------------------
    # Request status tracking
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_linked_request_statuses(self) -> list[RequestStatusRow]:
        """List requests of linked users currently in a notifiable status."""
        pass

    @abstractmethod
    async def get_request_status_state(
        self, telegram_id: str, request_id: str
    ) -> RequestStatusState | None:
        """Get the last observed state of a request for a Telegram identity."""
        pass

    @abstractmethod
    async def upsert_request_status_state(
        self,
        telegram_id: str,
        request_id: str,
        last_status: str,
        last_reason: str | None = None,
    ) -> None:
        """Record the observed state of a request."""
        pass

    # -------------------------------------------------------------------------
    # Watch alerts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def upsert_watch_alert(
        self,
        telegram_id: str,
        user_id: int,
        media_type: str,
        tmdb_id: int,
        title: str,
    ) -> tuple[WatchAlert, bool]:
        """Arm an alert, reactivating an existing one for the same title.

        Returns:
            Tuple of (WatchAlert, created) where created is False when a row for
            (telegram_id, media_type, tmdb_id) already existed
        """
        pass

    @abstractmethod
    async def list_active_watch_alerts(self, telegram_id: str) -> list[WatchAlert]:
        """List active alerts of a Telegram identity."""
        pass

    @abstractmethod
    async def disable_all_watch_alerts(self, telegram_id: str) -> int:
        """Deactivate every active alert of an identity. Returns the count."""
        pass

    @abstractmethod
    async def disable_watch_alert_by_id(self, telegram_id: str, alert_id: int) -> bool:
        """Deactivate one active alert owned by an identity."""
        pass

    @abstractmethod
    async def list_triggered_watch_alerts(self) -> list[WatchAlert]:
        """List active alerts whose title is now available for the alert owner."""
        pass

    @abstractmethod
    async def complete_watch_alert(self, alert_id: int) -> None:
        """Deactivate a fired alert and stamp notified_at."""
        pass

    # -------------------------------------------------------------------------
    # Digest queries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def count_pending_requests(self) -> int:
        """Count requests awaiting approval."""
        pass

    @abstractmethod
    async def get_top_job_failures(
        self, hours: int = 24, limit: int = 5
    ) -> list[JobFailureSummary]:
        """Group recent job failures by (job, error), most frequent first."""
        pass

    # -------------------------------------------------------------------------
    # Advisory lock
    # -------------------------------------------------------------------------

    @abstractmethod
    async def try_advisory_lock(self, lock_id: int) -> bool:
        """Try to take a cluster-wide lock without waiting."""
        pass

    @abstractmethod
    async def advisory_unlock(self, lock_id: int) -> None:
        """Release a lock taken by try_advisory_lock."""
        pass

    @asynccontextmanager
    async def advisory_lock(self, lock_id: int) -> AsyncIterator[bool]:
        """Hold a cluster-wide lock for the duration of the block.

        Yields False (without waiting) when another holder has it. The lock is
        released on exit, also when the block raises.
        """
        acquired = await self.try_advisory_lock(lock_id)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.advisory_unlock(lock_id)
                except Exception as e:
                    logger.warning("advisory_unlock_failed", lock_id=lock_id, error=str(e))


# =============================================================================
# SQLite Implementation
# =============================================================================


class SQLiteStorage(BaseStorage):
    """SQLite-based storage for development and tests."""

    def __init__(self, db_path: str | Path):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._db: Any = None
        self._lock_holder = uuid.uuid4().hex

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        import aiosqlite

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._apply_migrations()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> Any:
        """Get active database connection."""
        if self._db is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._db

    async def _apply_migrations(self) -> None:
        """Apply database migrations."""
        migrations = [
            # Migration 1: Tables owned by the web app (stand-alone copy)
            """
            CREATE TABLE IF NOT EXISTS app_user (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                groups TEXT DEFAULT ''
            );
            CREATE TABLE IF NOT EXISTS media_request (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                request_type TEXT NOT NULL,
                tmdb_id INTEGER,
                status TEXT NOT NULL,
                status_reason TEXT,
                requested_by INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_media_request_status ON media_request(status);
            CREATE TABLE IF NOT EXISTS job_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_name TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                started_at TEXT NOT NULL
            );
            """,
            # Migration 2: Account linking
            """
            CREATE TABLE IF NOT EXISTS telegram_link_tokens (
                code TEXT PRIMARY KEY,
                telegram_id TEXT NOT NULL,
                telegram_username TEXT,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_link_tokens_telegram_id
                ON telegram_link_tokens(telegram_id);
            CREATE TABLE IF NOT EXISTS telegram_users (
                telegram_id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                api_token_encrypted TEXT NOT NULL,
                linked_at TEXT NOT NULL
            );
            """,
            # Migration 3: Request status state
            """
            CREATE TABLE IF NOT EXISTS telegram_request_status_state (
                telegram_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                last_status TEXT NOT NULL,
                last_reason TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (telegram_id, request_id)
            );
            """,
            # Migration 4: Watch alerts
            """
            CREATE TABLE IF NOT EXISTS telegram_watch_alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                media_type TEXT NOT NULL CHECK (media_type IN ('movie', 'tv')),
                tmdb_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                notified_at TEXT,
                UNIQUE (telegram_id, media_type, tmdb_id)
            );
            CREATE INDEX IF NOT EXISTS idx_watch_alerts_active
                ON telegram_watch_alerts(active);
            """,
            # Migration 5: Scheduler locks (advisory lock emulation)
            """
            CREATE TABLE IF NOT EXISTS bot_scheduler_locks (
                lock_id INTEGER PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at TEXT NOT NULL
            );
            """,
        ]

        await self.db.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        cursor = await self.db.execute("SELECT MAX(version) FROM _migrations")
        row = await cursor.fetchone()
        current_version = row[0] if row and row[0] else 0

        for i, sql in enumerate(migrations, 1):
            if i <= current_version:
                continue

            logger.info("applying_migration", version=i)
            await self.db.executescript(sql)
            await self.db.execute(
                "INSERT OR IGNORE INTO _migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (i, f"migration_{i}", datetime.now(UTC).isoformat()),
            )
            await self.db.commit()
            logger.info("migration_applied", version=i)

    # -------------------------------------------------------------------------
    # Account linking
    # -------------------------------------------------------------------------

    async def issue_link_code(
        self,
        telegram_id: str,
        telegram_username: str | None = None,
        ttl_minutes: int = DEFAULT_LINK_CODE_TTL_MINUTES,
    ) -> str:
        """Replace any token of this identity with a fresh code and return it."""
        now = datetime.now(UTC)
        code = generate_link_code()

        await self.db.execute(
            "DELETE FROM telegram_link_tokens WHERE telegram_id = ?",
            (telegram_id,),
        )
        await self.db.execute(
            """
            INSERT INTO telegram_link_tokens
                (code, telegram_id, telegram_username, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                code,
                telegram_id,
                telegram_username,
                (now + timedelta(minutes=ttl_minutes)).isoformat(),
                now.isoformat(),
            ),
        )
        await self.db.commit()

        logger.info("link_code_issued", telegram_id=telegram_id, ttl_minutes=ttl_minutes)
        return code

    async def get_link_token(self, code: str) -> LinkToken | None:
        """Get a link token by code."""
        cursor = await self.db.execute(
            "SELECT * FROM telegram_link_tokens WHERE code = ?",
            (normalize_link_code(code),),
        )
        row = await cursor.fetchone()
        return self._row_to_link_token(row) if row else None

    async def redeem_link_code(
        self,
        code: str,
        user_id: int,
        api_token_encrypted: str,
        now: datetime | None = None,
    ) -> LinkedAccount:
        """Consume a link code and bind its identity to a LeMedia account."""
        now = now or datetime.now(UTC)
        token = await self.get_link_token(code)
        if token is None:
            raise LinkCodeNotFoundError("Link code not found")

        # The code is single-use whether or not it is still valid
        await self.db.execute("DELETE FROM telegram_link_tokens WHERE code = ?", (token.code,))

        if token.expires_at <= now:
            await self.db.commit()
            raise LinkCodeExpiredError("Link code expired")

        await self.db.execute(
            """
            INSERT INTO telegram_users (telegram_id, user_id, api_token_encrypted, linked_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (telegram_id) DO UPDATE SET
                user_id = excluded.user_id,
                api_token_encrypted = excluded.api_token_encrypted,
                linked_at = excluded.linked_at
            """,
            (token.telegram_id, user_id, api_token_encrypted, now.isoformat()),
        )
        await self.db.commit()

        logger.info("link_code_redeemed", telegram_id=token.telegram_id, user_id=user_id)
        return LinkedAccount(
            telegram_id=token.telegram_id,
            user_id=user_id,
            api_token_encrypted=api_token_encrypted,
            linked_at=now,
        )

    async def get_linked_user(self, telegram_id: str) -> LinkedAccount | None:
        """Get the account linked to a Telegram identity."""
        cursor = await self.db.execute(
            "SELECT * FROM telegram_users WHERE telegram_id = ?",
            (telegram_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return LinkedAccount(
            telegram_id=row["telegram_id"],
            user_id=row["user_id"],
            api_token_encrypted=row["api_token_encrypted"],
            linked_at=_to_datetime(row["linked_at"]),
        )

    async def unlink(self, telegram_id: str) -> bool:
        """Remove the link of a Telegram identity."""
        cursor = await self.db.execute(
            "DELETE FROM telegram_users WHERE telegram_id = ?",
            (telegram_id,),
        )
        await self.db.commit()
        removed = bool(cursor.rowcount and cursor.rowcount > 0)
        if removed:
            logger.info("telegram_unlinked", telegram_id=telegram_id)
        return removed

    async def is_user_admin(self, user_id: int) -> bool:
        """Check whether a LeMedia user is an administrator."""
        cursor = await self.db.execute("SELECT groups FROM app_user WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if row is None:
            return False
        return is_admin_groups(row["groups"])

    async def list_linked_admins(self) -> list[LinkedAdmin]:
        """List linked accounts of administrators."""
        cursor = await self.db.execute(
            """
            SELECT tu.user_id, tu.telegram_id, tu.api_token_encrypted, u.username, u.groups
            FROM telegram_users tu
            JOIN app_user u ON u.id = tu.user_id
            ORDER BY tu.user_id
            """
        )
        rows = await cursor.fetchall()
        return [
            LinkedAdmin(
                user_id=row["user_id"],
                username=row["username"],
                telegram_id=row["telegram_id"],
                api_token_encrypted=row["api_token_encrypted"],
            )
            for row in rows
            if is_admin_groups(row["groups"])
        ]

    # -------------------------------------------------------------------------
    # Request status tracking
    # -------------------------------------------------------------------------

    async def list_linked_request_statuses(self) -> list[RequestStatusRow]:
        """List requests of linked users currently in a notifiable status."""
        placeholders = ", ".join("?" for _ in NOTIFIABLE_STATUSES)
        cursor = await self.db.execute(
            f"""
            SELECT tu.telegram_id, CAST(mr.id AS TEXT) AS request_id, mr.title,
                   mr.request_type, mr.tmdb_id, mr.status, mr.status_reason
            FROM telegram_users tu
            JOIN media_request mr ON mr.requested_by = tu.user_id
            WHERE mr.status IN ({placeholders})
            ORDER BY mr.id
            """,
            NOTIFIABLE_STATUSES,
        )
        rows = await cursor.fetchall()
        return [RequestStatusRow(**dict(row)) for row in rows]

    async def get_request_status_state(
        self, telegram_id: str, request_id: str
    ) -> RequestStatusState | None:
        """Get the last observed state of a request for a Telegram identity."""
        cursor = await self.db.execute(
            """
            SELECT * FROM telegram_request_status_state
            WHERE telegram_id = ? AND request_id = ?
            """,
            (telegram_id, request_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return RequestStatusState(
            telegram_id=row["telegram_id"],
            request_id=row["request_id"],
            last_status=row["last_status"],
            last_reason=row["last_reason"],
            updated_at=_to_datetime(row["updated_at"]),
        )

    async def upsert_request_status_state(
        self,
        telegram_id: str,
        request_id: str,
        last_status: str,
        last_reason: str | None = None,
    ) -> None:
        """Record the observed state of a request."""
        await self.db.execute(
            """
            INSERT INTO telegram_request_status_state
                (telegram_id, request_id, last_status, last_reason, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (telegram_id, request_id) DO UPDATE SET
                last_status = excluded.last_status,
                last_reason = excluded.last_reason,
                updated_at = excluded.updated_at
            """,
            (telegram_id, request_id, last_status, last_reason, datetime.now(UTC).isoformat()),
        )
        await self.db.commit()

    # -------------------------------------------------------------------------
    # Watch alerts
    # -------------------------------------------------------------------------

    async def upsert_watch_alert(
        self,
        telegram_id: str,
        user_id: int,
        media_type: str,
        tmdb_id: int,
        title: str,
    ) -> tuple[WatchAlert, bool]:
        """Arm an alert, reactivating an existing one for the same title."""
        cursor = await self.db.execute(
            """
            SELECT id FROM telegram_watch_alerts
            WHERE telegram_id = ? AND media_type = ? AND tmdb_id = ?
            """,
            (telegram_id, media_type, tmdb_id),
        )
        existing = await cursor.fetchone()

        await self.db.execute(
            """
            INSERT INTO telegram_watch_alerts
                (telegram_id, user_id, media_type, tmdb_id, title, active, created_at)
            VALUES (?, ?, ?, ?, ?, 1, ?)
            ON CONFLICT (telegram_id, media_type, tmdb_id) DO UPDATE SET
                user_id = excluded.user_id,
                title = excluded.title,
                active = 1,
                notified_at = NULL
            """,
            (telegram_id, user_id, media_type, tmdb_id, title, datetime.now(UTC).isoformat()),
        )
        await self.db.commit()

        cursor = await self.db.execute(
            """
            SELECT * FROM telegram_watch_alerts
            WHERE telegram_id = ? AND media_type = ? AND tmdb_id = ?
            """,
            (telegram_id, media_type, tmdb_id),
        )
        row = await cursor.fetchone()
        created = existing is None

        logger.info(
            "watch_alert_upserted",
            telegram_id=telegram_id,
            media_type=media_type,
            tmdb_id=tmdb_id,
            created=created,
        )
        return self._row_to_watch_alert(row), created

    async def list_active_watch_alerts(self, telegram_id: str) -> list[WatchAlert]:
        """List active alerts of a Telegram identity."""
        cursor = await self.db.execute(
            """
            SELECT * FROM telegram_watch_alerts
            WHERE telegram_id = ? AND active = 1
            ORDER BY created_at, id
            """,
            (telegram_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_watch_alert(row) for row in rows]

    async def disable_all_watch_alerts(self, telegram_id: str) -> int:
        """Deactivate every active alert of an identity."""
        cursor = await self.db.execute(
            "UPDATE telegram_watch_alerts SET active = 0 WHERE telegram_id = ? AND active = 1",
            (telegram_id,),
        )
        await self.db.commit()
        return cursor.rowcount or 0

    async def disable_watch_alert_by_id(self, telegram_id: str, alert_id: int) -> bool:
        """Deactivate one active alert owned by an identity."""
        cursor = await self.db.execute(
            """
            UPDATE telegram_watch_alerts SET active = 0
            WHERE id = ? AND telegram_id = ? AND active = 1
            """,
            (alert_id, telegram_id),
        )
        await self.db.commit()
        return bool(cursor.rowcount and cursor.rowcount > 0)

    async def list_triggered_watch_alerts(self) -> list[WatchAlert]:
        """List active alerts whose title is now available for the alert owner."""
        cursor = await self.db.execute(
            """
            SELECT wa.* FROM telegram_watch_alerts wa
            WHERE wa.active = 1
              AND EXISTS (
                SELECT 1 FROM media_request mr
                WHERE mr.requested_by = wa.user_id
                  AND mr.tmdb_id = wa.tmdb_id
                  AND mr.status = 'available'
                  AND (
                    (wa.media_type = 'movie' AND mr.request_type = 'movie')
                    OR (wa.media_type = 'tv' AND mr.request_type IN ('episode', 'tv'))
                  )
              )
            ORDER BY wa.id
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_watch_alert(row) for row in rows]

    async def complete_watch_alert(self, alert_id: int) -> None:
        """Deactivate a fired alert and stamp notified_at."""
        await self.db.execute(
            "UPDATE telegram_watch_alerts SET active = 0, notified_at = ? WHERE id = ?",
            (datetime.now(UTC).isoformat(), alert_id),
        )
        await self.db.commit()

    def _row_to_watch_alert(self, row: Any) -> WatchAlert:
        """Convert database row to WatchAlert model."""
        return WatchAlert(
            id=row["id"],
            telegram_id=row["telegram_id"],
            user_id=row["user_id"],
            media_type=row["media_type"],
            tmdb_id=row["tmdb_id"],
            title=row["title"],
            active=bool(row["active"]),
            created_at=_to_datetime(row["created_at"]),
            notified_at=_to_datetime(row["notified_at"]),
        )

    def _row_to_link_token(self, row: Any) -> LinkToken:
        """Convert database row to LinkToken model."""
        return LinkToken(
            code=row["code"],
            telegram_id=row["telegram_id"],
            telegram_username=row["telegram_username"],
            expires_at=_to_datetime(row["expires_at"]),
            created_at=_to_datetime(row["created_at"]),
        )

    # -------------------------------------------------------------------------
    # Digest queries
    # -------------------------------------------------------------------------

    async def count_pending_requests(self) -> int:
        """Count requests awaiting approval."""
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM media_request WHERE status = 'pending'"
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_top_job_failures(
        self, hours: int = 24, limit: int = 5
    ) -> list[JobFailureSummary]:
        """Group recent job failures by (job, error), most frequent first."""
        since = (datetime.now(UTC) - timedelta(hours=hours)).isoformat()
        cursor = await self.db.execute(
            """
            SELECT job_name, COALESCE(error, 'Unknown error') AS message, COUNT(*) AS count
            FROM job_history
            WHERE status = 'failure' AND started_at >= ?
            GROUP BY job_name, COALESCE(error, 'Unknown error')
            ORDER BY COUNT(*) DESC, job_name ASC
            LIMIT ?
            """,
            (since, limit),
        )
        rows = await cursor.fetchall()
        return [
            JobFailureSummary(job_name=row["job_name"], message=row["message"], count=row["count"])
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Advisory lock
    # -------------------------------------------------------------------------

    async def try_advisory_lock(self, lock_id: int) -> bool:
        """Try to take a lock row; rows of crashed holders are reclaimed."""
        now = datetime.now(UTC)
        stale_before = (now - timedelta(seconds=SQLITE_LOCK_STALE_SECONDS)).isoformat()

        await self.db.execute(
            "DELETE FROM bot_scheduler_locks WHERE lock_id = ? AND acquired_at < ?",
            (lock_id, stale_before),
        )
        cursor = await self.db.execute(
            """
            INSERT OR IGNORE INTO bot_scheduler_locks (lock_id, holder, acquired_at)
            VALUES (?, ?, ?)
            """,
            (lock_id, self._lock_holder, now.isoformat()),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def advisory_unlock(self, lock_id: int) -> None:
        """Release a lock row held by this storage instance."""
        await self.db.execute(
            "DELETE FROM bot_scheduler_locks WHERE lock_id = ? AND holder = ?",
            (lock_id, self._lock_holder),
        )
        await self.db.commit()


# =============================================================================
# PostgreSQL Implementation
# =============================================================================


class PostgresStorage(BaseStorage):
    """PostgreSQL-based storage with asyncpg, sharing the web app's database."""

    def __init__(self, database_url: str):
        """Initialize Postgres storage.

        Args:
            database_url: PostgreSQL connection URL
        """
        self._database_url = database_url
        self._pool: Any = None
        # Advisory locks are per-session: unlock must use the locking connection
        self._lock_connections: dict[int, Any] = {}

    async def connect(self) -> None:
        """Open database connection pool and initialize schema."""
        import asyncpg

        self._pool = await asyncpg.create_pool(self._database_url, min_size=1, max_size=10)

        await self._apply_migrations()

        logger.debug("postgres_connected")

    async def close(self) -> None:
        """Close database connection pool."""
        for lock_id in list(self._lock_connections):
            try:
                await self.advisory_unlock(lock_id)
            except Exception as e:
                logger.warning("advisory_unlock_on_close_failed", lock_id=lock_id, error=str(e))
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.debug("postgres_disconnected")

    @property
    def pool(self) -> Any:
        """Get active connection pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Use 'async with' or call connect()")
        return self._pool

    async def _apply_migrations(self) -> None:
        """Create the bot-owned tables if they do not exist yet."""
        migrations = [
            # Migration 1: Account linking
            """
            CREATE TABLE IF NOT EXISTS telegram_link_tokens (
                code TEXT PRIMARY KEY,
                telegram_id TEXT NOT NULL,
                telegram_username TEXT,
                expires_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            CREATE INDEX IF NOT EXISTS idx_link_tokens_telegram_id
                ON telegram_link_tokens(telegram_id);
            CREATE TABLE IF NOT EXISTS telegram_users (
                telegram_id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                api_token_encrypted TEXT NOT NULL,
                linked_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """,
            # Migration 2: Request status state
            """
            CREATE TABLE IF NOT EXISTS telegram_request_status_state (
                telegram_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                last_status TEXT NOT NULL,
                last_reason TEXT,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (telegram_id, request_id)
            );
            """,
            # Migration 3: Watch alerts
            """
            CREATE TABLE IF NOT EXISTS telegram_watch_alerts (
                id SERIAL PRIMARY KEY,
                telegram_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                media_type TEXT NOT NULL CHECK (media_type IN ('movie', 'tv')),
                tmdb_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                notified_at TIMESTAMPTZ,
                UNIQUE (telegram_id, media_type, tmdb_id)
            );
            CREATE INDEX IF NOT EXISTS idx_watch_alerts_active
                ON telegram_watch_alerts(active);
            """,
        ]

        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _bot_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            current_version = await conn.fetchval("SELECT MAX(version) FROM _bot_migrations") or 0

            for i, sql in enumerate(migrations, 1):
                if i <= current_version:
                    continue

                logger.info("applying_postgres_migration", version=i)
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO _bot_migrations (version, name) VALUES ($1, $2) "
                    "ON CONFLICT (version) DO NOTHING",
                    i,
                    f"migration_{i}",
                )
                logger.info("postgres_migration_applied", version=i)

    # -------------------------------------------------------------------------
    # Account linking
    # -------------------------------------------------------------------------

    async def issue_link_code(
        self,
        telegram_id: str,
        telegram_username: str | None = None,
        ttl_minutes: int = DEFAULT_LINK_CODE_TTL_MINUTES,
    ) -> str:
        """Replace any token of this identity with a fresh code and return it."""
        code = generate_link_code()
        expires_at = datetime.now(UTC) + timedelta(minutes=ttl_minutes)

        async with self.pool.acquire() as conn, conn.transaction():
            await conn.execute(
                "DELETE FROM telegram_link_tokens WHERE telegram_id = $1",
                telegram_id,
            )
            await conn.execute(
                """
                INSERT INTO telegram_link_tokens (code, telegram_id, telegram_username, expires_at)
                VALUES ($1, $2, $3, $4)
                """,
                code,
                telegram_id,
                telegram_username,
                expires_at,
            )

        logger.info("link_code_issued", telegram_id=telegram_id, ttl_minutes=ttl_minutes)
        return code

    async def get_link_token(self, code: str) -> LinkToken | None:
        """Get a link token by code."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM telegram_link_tokens WHERE code = $1",
                normalize_link_code(code),
            )
        if row is None:
            return None
        return LinkToken(
            code=row["code"],
            telegram_id=row["telegram_id"],
            telegram_username=row["telegram_username"],
            expires_at=_to_datetime(row["expires_at"]),
            created_at=_to_datetime(row["created_at"]),
        )

    async def redeem_link_code(
        self,
        code: str,
        user_id: int,
        api_token_encrypted: str,
        now: datetime | None = None,
    ) -> LinkedAccount:
        """Consume a link code and bind its identity to a LeMedia account."""
        now = now or datetime.now(UTC)

        async with self.pool.acquire() as conn, conn.transaction():
            # DELETE ... RETURNING makes redemption single-use under concurrency
            row = await conn.fetchrow(
                "DELETE FROM telegram_link_tokens WHERE code = $1 RETURNING *",
                normalize_link_code(code),
            )
            if row is None:
                raise LinkCodeNotFoundError("Link code not found")

            expired = _to_datetime(row["expires_at"]) <= now
            if not expired:
                await conn.execute(
                    """
                    INSERT INTO telegram_users (telegram_id, user_id, api_token_encrypted, linked_at)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (telegram_id) DO UPDATE SET
                        user_id = EXCLUDED.user_id,
                        api_token_encrypted = EXCLUDED.api_token_encrypted,
                        linked_at = EXCLUDED.linked_at
                    """,
                    row["telegram_id"],
                    user_id,
                    api_token_encrypted,
                    now,
                )

        if expired:
            raise LinkCodeExpiredError("Link code expired")

        logger.info("link_code_redeemed", telegram_id=row["telegram_id"], user_id=user_id)
        return LinkedAccount(
            telegram_id=row["telegram_id"],
            user_id=user_id,
            api_token_encrypted=api_token_encrypted,
            linked_at=now,
        )

    async def get_linked_user(self, telegram_id: str) -> LinkedAccount | None:
        """Get the account linked to a Telegram identity."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT telegram_id, user_id, api_token_encrypted, linked_at
                FROM telegram_users WHERE telegram_id = $1
                """,
                telegram_id,
            )
        if row is None:
            return None
        return LinkedAccount(
            telegram_id=row["telegram_id"],
            user_id=row["user_id"],
            api_token_encrypted=row["api_token_encrypted"],
            linked_at=_to_datetime(row["linked_at"]),
        )

    async def unlink(self, telegram_id: str) -> bool:
        """Remove the link of a Telegram identity."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM telegram_users WHERE telegram_id = $1",
                telegram_id,
            )
        removed = result == "DELETE 1"
        if removed:
            logger.info("telegram_unlinked", telegram_id=telegram_id)
        return removed

    async def is_user_admin(self, user_id: int) -> bool:
        """Check whether a LeMedia user is an administrator."""
        async with self.pool.acquire() as conn:
            groups = await conn.fetchval("SELECT groups FROM app_user WHERE id = $1", user_id)
        return is_admin_groups(groups)

    async def list_linked_admins(self) -> list[LinkedAdmin]:
        """List linked accounts of administrators."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT tu.user_id, tu.telegram_id, tu.api_token_encrypted, u.username, u.groups
                FROM telegram_users tu
                JOIN app_user u ON u.id = tu.user_id
                ORDER BY tu.user_id
                """
            )
        return [
            LinkedAdmin(
                user_id=row["user_id"],
                username=row["username"],
                telegram_id=row["telegram_id"],
                api_token_encrypted=row["api_token_encrypted"],
            )
            for row in rows
            if is_admin_groups(row["groups"])
        ]

    # -------------------------------------------------------------------------
    # Request status tracking
    # -------------------------------------------------------------------------

    async def list_linked_request_statuses(self) -> list[RequestStatusRow]:
        """List requests of linked users currently in a notifiable status."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT tu.telegram_id, mr.id::text AS request_id, mr.title,
                       mr.request_type, mr.tmdb_id, mr.status, mr.status_reason
                FROM telegram_users tu
                JOIN media_request mr ON mr.requested_by = tu.user_id
                WHERE mr.status = ANY($1::text[])
                ORDER BY mr.created_at
                """,
                list(NOTIFIABLE_STATUSES),
            )
        return [RequestStatusRow(**dict(row)) for row in rows]

    async def get_request_status_state(
        self, telegram_id: str, request_id: str
    ) -> RequestStatusState | None:
        """Get the last observed state of a request for a Telegram identity."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM telegram_request_status_state
                WHERE telegram_id = $1 AND request_id = $2
                """,
                telegram_id,
                request_id,
            )
        if row is None:
            return None
        return RequestStatusState(
            telegram_id=row["telegram_id"],
            request_id=row["request_id"],
            last_status=row["last_status"],
            last_reason=row["last_reason"],
            updated_at=_to_datetime(row["updated_at"]),
        )

    async def upsert_request_status_state(
        self,
        telegram_id: str,
        request_id: str,
        last_status: str,
        last_reason: str | None = None,
    ) -> None:
        """Record the observed state of a request."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO telegram_request_status_state
                    (telegram_id, request_id, last_status, last_reason, updated_at)
                VALUES ($1, $2, $3, $4, NOW())
                ON CONFLICT (telegram_id, request_id) DO UPDATE SET
                    last_status = EXCLUDED.last_status,
                    last_reason = EXCLUDED.last_reason,
                    updated_at = NOW()
                """,
                telegram_id,
                request_id,
                last_status,
                last_reason,
            )

    # -------------------------------------------------------------------------
    # Watch alerts
    # -------------------------------------------------------------------------

    async def upsert_watch_alert(
        self,
        telegram_id: str,
        user_id: int,
        media_type: str,
        tmdb_id: int,
        title: str,
    ) -> tuple[WatchAlert, bool]:
        """Arm an alert, reactivating an existing one for the same title."""
        async with self.pool.acquire() as conn:
            # xmax = 0 only for freshly inserted rows
            row = await conn.fetchrow(
                """
                INSERT INTO telegram_watch_alerts
                    (telegram_id, user_id, media_type, tmdb_id, title, active)
                VALUES ($1, $2, $3, $4, $5, TRUE)
                ON CONFLICT (telegram_id, media_type, tmdb_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    title = EXCLUDED.title,
                    active = TRUE,
                    notified_at = NULL
                RETURNING *, (xmax = 0) AS inserted
                """,
                telegram_id,
                user_id,
                media_type,
                tmdb_id,
                title,
            )

        created = bool(row["inserted"])
        logger.info(
            "watch_alert_upserted",
            telegram_id=telegram_id,
            media_type=media_type,
            tmdb_id=tmdb_id,
            created=created,
        )
        return self._row_to_watch_alert(row), created

    async def list_active_watch_alerts(self, telegram_id: str) -> list[WatchAlert]:
        """List active alerts of a Telegram identity."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM telegram_watch_alerts
                WHERE telegram_id = $1 AND active = TRUE
                ORDER BY created_at, id
                """,
                telegram_id,
            )
        return [self._row_to_watch_alert(row) for row in rows]

    async def disable_all_watch_alerts(self, telegram_id: str) -> int:
        """Deactivate every active alert of an identity."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE telegram_watch_alerts SET active = FALSE
                WHERE telegram_id = $1 AND active = TRUE
                """,
                telegram_id,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(result.split()[-1]) if result else 0

    async def disable_watch_alert_by_id(self, telegram_id: str, alert_id: int) -> bool:
        """Deactivate one active alert owned by an identity."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE telegram_watch_alerts SET active = FALSE
                WHERE id = $1 AND telegram_id = $2 AND active = TRUE
                """,
                alert_id,
                telegram_id,
            )
        return result == "UPDATE 1"

    async def list_triggered_watch_alerts(self) -> list[WatchAlert]:
        """List active alerts whose title is now available for the alert owner."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT wa.* FROM telegram_watch_alerts wa
                WHERE wa.active = TRUE
                  AND EXISTS (
                    SELECT 1 FROM media_request mr
                    WHERE mr.requested_by = wa.user_id
                      AND mr.tmdb_id = wa.tmdb_id
                      AND mr.status = 'available'
                      AND (
                        (wa.media_type = 'movie' AND mr.request_type = 'movie')
                        OR (wa.media_type = 'tv' AND mr.request_type IN ('episode', 'tv'))
                      )
                  )
                ORDER BY wa.id
                """
            )
        return [self._row_to_watch_alert(row) for row in rows]

    async def complete_watch_alert(self, alert_id: int) -> None:
        """Deactivate a fired alert and stamp notified_at."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE telegram_watch_alerts SET active = FALSE, notified_at = NOW() WHERE id = $1",
                alert_id,
            )

    def _row_to_watch_alert(self, row: Any) -> WatchAlert:
        """Convert database row to WatchAlert model."""
        return WatchAlert(
            id=row["id"],
            telegram_id=row["telegram_id"],
            user_id=row["user_id"],
            media_type=row["media_type"],
            tmdb_id=row["tmdb_id"],
            title=row["title"],
            active=row["active"],
            created_at=_to_datetime(row["created_at"]),
            notified_at=_to_datetime(row["notified_at"]),
        )

    # -------------------------------------------------------------------------
    # Digest queries
    # -------------------------------------------------------------------------

    async def count_pending_requests(self) -> int:
        """Count requests awaiting approval."""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*)::int FROM media_request WHERE status = 'pending'"
            )
        return int(count or 0)

    async def get_top_job_failures(
        self, hours: int = 24, limit: int = 5
    ) -> list[JobFailureSummary]:
        """Group recent job failures by (job, error), most frequent first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT job_name, COALESCE(error, 'Unknown error') AS message,
                       COUNT(*)::int AS count
                FROM job_history
                WHERE status = 'failure'
                  AND started_at >= NOW() - ($1::text || ' hours')::interval
                GROUP BY job_name, COALESCE(error, 'Unknown error')
                ORDER BY COUNT(*) DESC, job_name ASC
                LIMIT $2
                """,
                str(hours),
                limit,
            )
        return [
            JobFailureSummary(job_name=row["job_name"], message=row["message"], count=row["count"])
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Advisory lock
    # -------------------------------------------------------------------------

    async def try_advisory_lock(self, lock_id: int) -> bool:
        """Try pg_try_advisory_lock on a dedicated connection."""
        conn = await self.pool.acquire()
        try:
            locked = await conn.fetchval("SELECT pg_try_advisory_lock($1)", lock_id)
        except Exception:
            await self.pool.release(conn)
            raise

        if not locked:
            await self.pool.release(conn)
            return False

        self._lock_connections[lock_id] = conn
        return True

    async def advisory_unlock(self, lock_id: int) -> None:
        """Release the lock on the connection that took it."""
        conn = self._lock_connections.pop(lock_id, None)
        if conn is None:
            return
        try:
            await conn.execute("SELECT pg_advisory_unlock($1)", lock_id)
        finally:
            await self.pool.release(conn)


# =============================================================================
# Factory Functions
# =============================================================================


def get_storage_backend(
    database_url: str | None = None,
    db_path: str | Path = "data/bot.db",
) -> BaseStorage:
    """Get the appropriate storage backend.

    Args:
        database_url: PostgreSQL connection URL (if set, uses Postgres)
        db_path: Path to SQLite database (fallback if no database_url)

    Returns:
        Either PostgresStorage or SQLiteStorage instance
    """
    if database_url:
        logger.debug("using_postgres_storage")
        return PostgresStorage(database_url)
    logger.debug("using_sqlite_storage", db_path=str(db_path))
    return SQLiteStorage(db_path)


@asynccontextmanager
async def get_storage() -> AsyncIterator[BaseStorage]:
    """Get storage instance with auto-detection of backend.

    This is the recommended way to get storage - it automatically uses
    the DATABASE_URL environment variable if set.

    Yields:
        Storage instance
    """
    from src.config import settings

    database_url = None
    if settings.database_url:
        database_url = settings.database_url.get_secret_value()

    storage = get_storage_backend(database_url, settings.sqlite_path)
    async with storage:
        yield storage
