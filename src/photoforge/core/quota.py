"""Daily generation quota: the per-user, per-day ledger.

A quota row exists for each (user, calendar day) pair, keyed on the
server-local date.  Rows are created lazily on the first check of the day, so
day rollover needs no scheduled job: a lookup for a new date simply finds no
row and creates a fresh one with ``generations_used = 0``.

Concurrency
-----------
Usage is charged with a single conditional ``UPDATE``::

    UPDATE quotas
    SET generations_used = generations_used + 1
    WHERE user_id = ? AND day = ? AND generations_used < generations_limit

SQLite serialises writers, so two racing requests for the last remaining slot
cannot both match the ``WHERE`` clause.  ``rowcount == 0`` means the slot was
already taken and the increment is rejected with :class:`QuotaExceeded`.

Derived values (remaining, percentage, status) are plain functions over a
:class:`Quota` value rather than stored columns.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.database import Database
from photoforge.core.errors import QuotaExceeded
from photoforge.core.users import Tier, daily_limit_for

logger = logging.getLogger(__name__)


class QuotaStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class Quota:
    """Snapshot of one user's quota row for one day."""

    id: int
    user_id: str
    day: date
    generations_used: int
    generations_limit: int
    reset_at: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Quota:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            day=date.fromisoformat(row["day"]),
            generations_used=row["generations_used"],
            generations_limit=row["generations_limit"],
            reset_at=datetime.fromisoformat(row["reset_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


# ---------------------------------------------------------------------------
# Pure quota functions.
# ---------------------------------------------------------------------------


def next_reset(day: date) -> datetime:
    """Return local midnight at the start of the day after *day*."""
    return datetime.combine(day + timedelta(days=1), time.min)


def remaining(quota: Quota) -> int:
    return max(0, quota.generations_limit - quota.generations_used)


def usage_percentage(quota: Quota) -> int:
    """Return usage as a whole percentage, rounding halves up."""
    if quota.generations_limit <= 0:
        return 100
    return int(math.floor(quota.generations_used / quota.generations_limit * 100 + 0.5))


def quota_status(quota: Quota, warning_threshold: float = 0.8) -> QuotaStatus:
    """Classify a quota as normal, warning or exceeded.

    Args:
        quota: Quota snapshot
        warning_threshold: Fraction of the limit at which to warn

    Returns:
        ``EXCEEDED`` when used >= limit, ``WARNING`` when used >= threshold * limit,
        otherwise ``NORMAL``
    """
    if quota.generations_used >= quota.generations_limit:
        return QuotaStatus.EXCEEDED
    if quota.generations_used >= quota.generations_limit * warning_threshold:
        return QuotaStatus.WARNING
    return QuotaStatus.NORMAL


def quota_snapshot(quota: Quota, warning_threshold: float = 0.8) -> dict:
    """Public view of a quota used in API responses."""
    return {
        "used": quota.generations_used,
        "limit": quota.generations_limit,
        "remaining": remaining(quota),
        "usage_percentage": usage_percentage(quota),
        "status": quota_status(quota, warning_threshold).value,
        "date": quota.day.isoformat(),
        "reset_at": quota.reset_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Storage.
# ---------------------------------------------------------------------------


class QuotaStore:
    """Persistence for quota rows in the ``quotas`` table."""

    def __init__(self, database: Database):
        self.database = database

    def find_quota(self, user_id: str, day: date) -> Quota | None:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM quotas WHERE user_id = ? AND day = ?",
                (user_id, day.isoformat()),
            ).fetchone()
        return Quota.from_row(row) if row else None

    def create_quota(self, user_id: str, day: date, limit: int) -> Quota:
        """Create the row for (user_id, day), or return the one that already exists.

        ``INSERT OR IGNORE`` against the UNIQUE (user_id, day) constraint makes
        concurrent first-of-day lookups converge on a single row.
        """
        now = datetime.now().isoformat()
        with self.database.connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO quotas
                    (user_id, day, generations_used, generations_limit, reset_at,
                     created_at, updated_at)
                VALUES (?, ?, 0, ?, ?, ?, ?)
                """,
                (user_id, day.isoformat(), limit, next_reset(day).isoformat(), now, now),
            )
            if cursor.rowcount > 0:
                logger.debug(f"Created quota for {user_id} on {day} (limit {limit})")
            row = conn.execute(
                "SELECT * FROM quotas WHERE user_id = ? AND day = ?",
                (user_id, day.isoformat()),
            ).fetchone()
        return Quota.from_row(row)

    def update_limit(self, user_id: str, day: date, limit: int) -> Quota | None:
        """Replace the limit snapshot in place; usage is left untouched."""
        with self.database.connect() as conn:
            conn.execute(
                """
                UPDATE quotas SET generations_limit = ?, updated_at = ?
                WHERE user_id = ? AND day = ?
                """,
                (limit, datetime.now().isoformat(), user_id, day.isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM quotas WHERE user_id = ? AND day = ?",
                (user_id, day.isoformat()),
            ).fetchone()
        return Quota.from_row(row) if row else None

    def atomic_increment(self, user_id: str, day: date) -> Quota | None:
        """Charge one generation if, and only if, a slot remains.

        Returns:
            The updated quota, or ``None`` when the row is missing or full
        """
        with self.database.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE quotas
                SET generations_used = generations_used + 1, updated_at = ?
                WHERE user_id = ? AND day = ? AND generations_used < generations_limit
                """,
                (datetime.now().isoformat(), user_id, day.isoformat()),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM quotas WHERE user_id = ? AND day = ?",
                (user_id, day.isoformat()),
            ).fetchone()
        return Quota.from_row(row)

    def history(self, user_id: str, since: date) -> list[Quota]:
        with self.database.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quotas WHERE user_id = ? AND day >= ?
                ORDER BY day DESC
                """,
                (user_id, since.isoformat()),
            ).fetchall()
        return [Quota.from_row(row) for row in rows]

    def stats(self, day: date, user_id: str | None = None) -> dict:
        query = """
            SELECT COUNT(*) AS total_users,
                   COALESCE(SUM(generations_used), 0) AS total_generations_used,
                   COALESCE(SUM(generations_limit), 0) AS total_generations_limit,
                   COALESCE(AVG(generations_used), 0) AS avg_usage,
                   COALESCE(MAX(generations_used), 0) AS max_usage
            FROM quotas WHERE day = ?
        """
        params: tuple = (day.isoformat(),)
        if user_id is not None:
            query += " AND user_id = ?"
            params += (user_id,)
        with self.database.connect() as conn:
            row = conn.execute(query, params).fetchone()
        return dict(row)

    def purge_expired(self, before: datetime) -> int:
        """Delete rows whose reset time is earlier than *before*.

        Returns:
            Number of rows deleted
        """
        with self.database.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM quotas WHERE reset_at < ?",
                (before.isoformat(),),
            )
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} expired quota rows")
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Ledger.
# ---------------------------------------------------------------------------


class QuotaLedger:
    """Authoritative answer to "may this user generate now?".

    Attributes:
        store: Quota persistence
        config: Supplies the tier limits and warning threshold
        clock: Returns the current local time; injectable for tests
    """

    def __init__(
        self,
        store: QuotaStore,
        config: PhotoforgeConfig,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    def get_or_create_today_quota(self, user_id: str, tier: Tier | str) -> Quota:
        """Return today's quota, creating it or refreshing its limit as needed.

        If the user's tier changed since the row was created, the limit is
        updated in place without resetting usage.
        """
        day = self.today()
        limit = daily_limit_for(tier, self.config)

        quota = self.store.find_quota(user_id, day)
        if quota is None:
            return self.store.create_quota(user_id, day, limit)

        if quota.generations_limit != limit:
            logger.info(
                f"Quota limit for {user_id} changed {quota.generations_limit} -> {limit}"
            )
            updated = self.store.update_limit(user_id, day, limit)
            if updated is not None:
                return updated
        return quota

    def can_generate(self, user_id: str, tier: Tier | str) -> bool:
        quota = self.get_or_create_today_quota(user_id, tier)
        return quota.generations_used < quota.generations_limit

    def increment_usage(self, user_id: str, tier: Tier | str, day: date | None = None) -> Quota:
        """Charge one generation against a day's quota.

        Args:
            user_id: User to charge
            tier: User's tier, used when the row has to be created
            day: Day to charge, today when omitted.  Passing the day the
                request was authorized on keeps a request that straddles
                midnight on that day's row.

        Raises:
            QuotaExceeded: If no slot remains (including a lost race)
        """
        if day is None or day == self.today():
            quota = self.get_or_create_today_quota(user_id, tier)
        else:
            quota = self.store.find_quota(user_id, day) or self.store.create_quota(
                user_id, day, daily_limit_for(tier, self.config)
            )
        updated = self.store.atomic_increment(user_id, quota.day)
        if updated is None:
            latest = self.store.find_quota(user_id, quota.day) or quota
            logger.warning(
                f"Quota increment rejected for {user_id}: "
                f"{latest.generations_used}/{latest.generations_limit}"
            )
            raise QuotaExceeded(quota=latest)
        logger.debug(
            f"Quota for {user_id}: {updated.generations_used}/{updated.generations_limit}"
        )
        return updated

    def remaining(self, quota: Quota) -> int:
        return remaining(quota)

    def usage_percentage(self, quota: Quota) -> int:
        return usage_percentage(quota)

    def status(self, quota: Quota) -> QuotaStatus:
        return quota_status(quota, self.config.quota_warning_threshold)

    def snapshot(self, quota: Quota) -> dict:
        return quota_snapshot(quota, self.config.quota_warning_threshold)

    def history(self, user_id: str, days: int = 30) -> list[Quota]:
        """Return the user's quota rows for the last *days* days, newest first."""
        return self.store.history(user_id, self.today() - timedelta(days=days))

    def stats(self, user_id: str | None = None) -> dict:
        return self.store.stats(self.today(), user_id)

    def purge_expired(self) -> int:
        """Delete rows that reset more than ``quota_retention_days`` ago."""
        cutoff = self.clock() - timedelta(days=self.config.quota_retention_days)
        return self.store.purge_expired(cutoff)
