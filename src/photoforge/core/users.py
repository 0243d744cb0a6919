"""User directory: identity, account tier and the tier→limit mapping."""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.database import Database

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    FREE = "free"
    PAID = "paid"


def daily_limit_for(tier: Tier | str, config: PhotoforgeConfig) -> int:
    """Return the daily generation limit for an account tier.

    Unknown tiers get the free limit.
    """
    try:
        resolved = Tier(tier)
    except ValueError:
        resolved = Tier.FREE
    if resolved is Tier.PAID:
        return config.paid_tier_daily_limit
    return config.free_tier_daily_limit


@dataclass
class User:
    """A registered account as seen by the generation core."""

    id: str
    email: str
    tier: Tier = Tier.FREE
    display_name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            email=row["email"],
            tier=Tier(row["tier"]),
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "tier": self.tier.value,
            "is_active": self.is_active,
        }


class UserStore:
    """Persist users in the ``users`` table.

    Registration and authentication live outside this service; the store
    only needs enough to look a caller up and read or change their tier.
    """

    def __init__(self, database: Database):
        self.database = database

    def create_user(
        self,
        email: str,
        tier: Tier | str = Tier.FREE,
        display_name: str | None = None,
        user_id: str | None = None,
    ) -> User:
        """Register a new user.

        Args:
            email: Unique email address (stored lower-cased)
            tier: Initial account tier
            display_name: Optional human-readable name
            user_id: Explicit id, generated when omitted

        Returns:
            The created user
        """
        now = datetime.now().isoformat()
        user = User(
            id=user_id or uuid.uuid4().hex,
            email=email.strip().lower(),
            tier=Tier(tier),
            display_name=display_name,
        )
        with self.database.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, display_name, tier, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (user.id, user.email, user.display_name, user.tier.value, now, now),
            )
        user.created_at = datetime.fromisoformat(now)
        logger.info(f"Created user {user.id} ({user.tier.value})")
        return user

    def find_user(self, user_id: str) -> User | None:
        """Return the user, or ``None`` when missing or deactivated."""
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = ? AND is_active = 1",
                (user_id,),
            ).fetchone()
        return User.from_row(row) if row else None

    def set_tier(self, user_id: str, tier: Tier | str) -> bool:
        """Change a user's tier (upgrade or admin action).

        Returns:
            True if the user exists and was updated
        """
        with self.database.connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET tier = ?, updated_at = ? WHERE id = ?",
                (Tier(tier).value, datetime.now().isoformat(), user_id),
            )
        if cursor.rowcount:
            logger.info(f"User {user_id} moved to tier {Tier(tier).value}")
        return cursor.rowcount > 0

    def get_user(self, user_id: str) -> User | None:
        """Return the user whether or not the account is active (admin lookups)."""
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def set_active(self, user_id: str, is_active: bool) -> bool:
        """Activate or soft-deactivate a user; users are never deleted.

        Returns:
            True if the user exists and was updated
        """
        with self.database.connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), datetime.now().isoformat(), user_id),
            )
        if cursor.rowcount:
            logger.info(f"User {user_id} {'activated' if is_active else 'deactivated'}")
        return cursor.rowcount > 0
