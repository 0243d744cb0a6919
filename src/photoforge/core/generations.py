"""Generation records: the durable log of every generation attempt.

Status machine
--------------
::

    processing ──► completed   (terminal)
        │
        └───────► failed       (terminal) ──reset_for_retry──► processing

Both transitions out of ``processing`` are conditional updates
(``WHERE status = 'processing'``), so a record can never move from one
terminal state to another.  The only way out of ``failed`` is
:meth:`GenerationStore.reset_for_retry`, which is itself conditional on the
stored status being ``failed``.

``processing_end_time`` is written by the same statement that sets the
terminal status and cleared by the retry reset, so it is set exactly when the
status is terminal.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from photoforge.core.database import Database
from photoforge.core.errors import InvalidTransition, NotFound

logger = logging.getLogger(__name__)

CUSTOM_PRESET = "custom"


class GenerationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not GenerationStatus.PROCESSING


_STATUS_DISPLAY = {
    GenerationStatus.PROCESSING: "Processing...",
    GenerationStatus.COMPLETED: "Completed",
    GenerationStatus.FAILED: "Failed",
}

# Sort keys accepted by list_for_user, mapped to SQL ORDER BY clauses.
_SORT_ORDERS = {
    "newest": "created_at DESC",
    "oldest": "created_at ASC",
    "prompt": "prompt ASC",
}


@dataclass
class Generation:
    """One generation attempt and its lifecycle state."""

    id: str
    user_id: str
    prompt: str
    status: GenerationStatus = GenerationStatus.PROCESSING
    original_image_url: str | None = None
    original_image_path: str | None = None
    generated_image_url: str | None = None
    user_prompt: str | None = None
    preset_used: str = CUSTOM_PRESET
    parameters: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    error_code: str | None = None
    is_placeholder: bool = False
    ai_provider: str | None = None
    processing_start_time: datetime | None = None
    processing_end_time: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # False for in-memory stand-ins used when the store could not be written.
    persisted: bool = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Generation:
        end_time = row["processing_end_time"]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            status=GenerationStatus(row["status"]),
            original_image_url=row["original_image_url"],
            original_image_path=row["original_image_path"],
            generated_image_url=row["generated_image_url"],
            user_prompt=row["user_prompt"],
            preset_used=row["preset_used"],
            parameters=json.loads(row["parameters"] or "{}"),
            error_message=row["error_message"],
            error_code=row["error_code"],
            is_placeholder=bool(row["is_placeholder"]),
            ai_provider=row["ai_provider"],
            processing_start_time=datetime.fromisoformat(row["processing_start_time"]),
            processing_end_time=datetime.fromisoformat(end_time) if end_time else None,
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @property
    def processing_duration_ms(self) -> int | None:
        if self.processing_end_time and self.processing_start_time:
            delta = self.processing_end_time - self.processing_start_time
            return int(delta.total_seconds() * 1000)
        return None

    @property
    def image_urls(self) -> list[str]:
        return [self.generated_image_url] if self.generated_image_url else []

    @property
    def status_display(self) -> str:
        return _STATUS_DISPLAY[self.status]

    def to_public_dict(self) -> dict[str, Any]:
        """Fields exposed to the owning user over the API."""
        return {
            "id": self.id,
            "status": self.status.value,
            "status_display": self.status_display,
            "prompt": self.prompt,
            "preset": {"name": self.preset_used} if self.preset_used else None,
            "preset_used": self.preset_used,
            "original_image_url": self.original_image_url,
            "generated_image_url": self.generated_image_url,
            "image_url": self.generated_image_url,
            "image_urls": self.image_urls,
            "parameters": self.parameters,
            "is_placeholder": self.is_placeholder,
            "error": self.error_message,
            "error_code": self.error_code,
            "metadata": self.metadata,
            "processing_duration_ms": self.processing_duration_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": (
                self.processing_end_time.isoformat() if self.processing_end_time else None
            ),
        }


class GenerationStore:
    """Persistence for generation records in the ``generations`` table."""

    def __init__(self, database: Database, prompt_max_length: int = 2000):
        self.database = database
        self.prompt_max_length = prompt_max_length

    def create_generation(
        self,
        user_id: str,
        prompt: str,
        *,
        preset_used: str = CUSTOM_PRESET,
        original_image_url: str | None = None,
        original_image_path: str | None = None,
        user_prompt: str | None = None,
        parameters: dict[str, Any] | None = None,
        ai_provider: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Generation:
        """Insert a new attempt in the ``processing`` state.

        Raises:
            ValueError: If the prompt is empty or longer than the stored maximum
            PersistenceError: If the row cannot be written
        """
        if not prompt or not prompt.strip():
            raise ValueError("Generation prompt is required")
        if len(prompt) > self.prompt_max_length:
            raise ValueError(f"Generation prompt exceeds {self.prompt_max_length} characters")

        now = datetime.now()
        generation = Generation(
            id=uuid.uuid4().hex,
            user_id=user_id,
            prompt=prompt,
            preset_used=preset_used or CUSTOM_PRESET,
            original_image_url=original_image_url,
            original_image_path=original_image_path,
            user_prompt=user_prompt,
            parameters=dict(parameters or {}),
            ai_provider=ai_provider,
            processing_start_time=now,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        with self.database.connect() as conn:
            conn.execute(
                """
                INSERT INTO generations
                    (id, user_id, original_image_url, original_image_path, prompt,
                     user_prompt, preset_used, parameters, status, ai_provider,
                     processing_start_time, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'processing', ?, ?, ?, ?, ?)
                """,
                (
                    generation.id,
                    user_id,
                    original_image_url,
                    original_image_path,
                    prompt,
                    user_prompt,
                    generation.preset_used,
                    json.dumps(generation.parameters),
                    ai_provider,
                    now.isoformat(),
                    json.dumps(generation.metadata),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Created generation {generation.id} for user {user_id}")
        return generation

    def update_generation_terminal(
        self,
        generation_id: str,
        status: GenerationStatus | str,
        *,
        generated_image_url: str | None = None,
        error_message: str | None = None,
        error_code: str | None = None,
        is_placeholder: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Generation:
        """Move a ``processing`` record to ``completed`` or ``failed``.

        Metadata is merged into the stored bag and ``processing_time`` (ms) is
        filled in when not supplied.

        Raises:
            ValueError: If *status* is not terminal
            NotFound: If the record does not exist
            InvalidTransition: If the record is not ``processing``
        """
        status = GenerationStatus(status)
        if not status.is_terminal:
            raise ValueError("Terminal update requires 'completed' or 'failed'")

        end_time = datetime.now()
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM generations WHERE id = ?", (generation_id,)
            ).fetchone()
            if row is None:
                raise NotFound("Generation not found")
            current = Generation.from_row(row)

            merged = {**current.metadata, **(metadata or {})}
            if "processing_time" not in merged and current.processing_start_time:
                merged["processing_time"] = int(
                    (end_time - current.processing_start_time).total_seconds() * 1000
                )

            cursor = conn.execute(
                """
                UPDATE generations
                SET status = ?, generated_image_url = ?, error_message = ?, error_code = ?,
                    is_placeholder = ?, metadata = ?, processing_end_time = ?, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (
                    status.value,
                    generated_image_url if status is GenerationStatus.COMPLETED else None,
                    error_message if status is GenerationStatus.FAILED else None,
                    error_code if status is GenerationStatus.FAILED else None,
                    int(is_placeholder),
                    json.dumps(merged),
                    end_time.isoformat(),
                    end_time.isoformat(),
                    generation_id,
                ),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(
                    f"Generation is already {current.status.value}; cannot mark {status.value}"
                )
            row = conn.execute(
                "SELECT * FROM generations WHERE id = ?", (generation_id,)
            ).fetchone()

        logger.info(f"Generation {generation_id} -> {status.value}")
        return Generation.from_row(row)

    def reset_for_retry(self, generation_id: str, user_id: str) -> Generation | None:
        """Return a ``failed`` record to ``processing`` for another attempt.

        Returns:
            The reset record, or ``None`` if it was not in the ``failed`` state
        """
        now = datetime.now().isoformat()
        with self.database.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE generations
                SET status = 'processing', error_message = NULL, error_code = NULL,
                    generated_image_url = NULL, is_placeholder = 0,
                    processing_start_time = ?, processing_end_time = NULL, updated_at = ?
                WHERE id = ? AND user_id = ? AND status = 'failed'
                """,
                (now, now, generation_id, user_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM generations WHERE id = ?", (generation_id,)
            ).fetchone()
        logger.info(f"Generation {generation_id} reset for retry")
        return Generation.from_row(row)

    def find_generation(self, generation_id: str, user_id: str) -> Generation | None:
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM generations WHERE id = ? AND user_id = ?",
                (generation_id, user_id),
            ).fetchone()
        return Generation.from_row(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        per_page: int = 20,
        status: str | None = None,
        preset: str | None = None,
        search: str | None = None,
        sort: str = "newest",
    ) -> dict[str, Any]:
        """Paginated, filtered listing of a user's generations.

        The requested page is clamped to valid bounds so that deleting the
        last item on the final page still returns a usable page.

        Returns:
            Dictionary with ``total``, ``page``, ``per_page``, ``pages``,
            ``has_next``, ``has_prev`` and ``generations``
        """
        per_page = max(1, per_page)
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]

        if status and status != "all":
            clauses.append("status = ?")
            params.append(GenerationStatus(status).value)
        if preset:
            clauses.append("preset_used = ?")
            params.append(preset)
        if search and search.strip():
            clauses.append("(prompt LIKE ? OR preset_used LIKE ?)")
            pattern = f"%{search.strip()}%"
            params.extend([pattern, pattern])

        where = " AND ".join(clauses)
        order = _SORT_ORDERS.get(sort, _SORT_ORDERS["newest"])

        with self.database.connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM generations WHERE {where}", params
            ).fetchone()[0]
            pages = (total + per_page - 1) // per_page if total > 0 else 1
            resolved_page = min(max(page, 1), pages)
            rows = conn.execute(
                f"SELECT * FROM generations WHERE {where} ORDER BY {order} LIMIT ? OFFSET ?",
                [*params, per_page, (resolved_page - 1) * per_page],
            ).fetchall()

        return {
            "total": total,
            "page": resolved_page,
            "per_page": per_page,
            "pages": pages,
            "has_next": resolved_page < pages,
            "has_prev": resolved_page > 1,
            "generations": [Generation.from_row(row) for row in rows],
        }

    def delete_generation(self, generation_id: str, user_id: str) -> bool:
        """Delete a finished generation owned by *user_id*.

        Returns:
            False if the user has no such generation

        Raises:
            InvalidTransition: If the generation is still ``processing``
        """
        with self.database.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM generations WHERE id = ? AND user_id = ? AND status != 'processing'",
                (generation_id, user_id),
            )
            deleted = cursor.rowcount > 0
            in_flight = not deleted and conn.execute(
                "SELECT 1 FROM generations WHERE id = ? AND user_id = ?",
                (generation_id, user_id),
            ).fetchone() is not None
        if in_flight:
            raise InvalidTransition("Cannot delete a generation that is still processing")
        return deleted

    def stats(self, user_id: str | None = None) -> dict[str, Any]:
        """Count generations per status with average processing time."""
        query = """
            SELECT status, COUNT(*) AS count,
                   AVG(CAST(json_extract(metadata, '$.processing_time') AS REAL)) AS avg_time
            FROM generations
        """
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " GROUP BY status"

        with self.database.connect() as conn:
            rows = conn.execute(query, params).fetchall()

        by_status = {
            row["status"]: {"count": row["count"], "avg_processing_time": row["avg_time"]}
            for row in rows
        }
        return {
            "total": sum(entry["count"] for entry in by_status.values()),
            "by_status": by_status,
        }


def stand_in_generation(generation: Generation, **changes: Any) -> Generation:
    """Copy a generation as an unpersisted in-memory record."""
    return replace(generation, persisted=False, **changes)
