"""Append-only status history.

The pure helpers operate on lists of entry dicts
``{"status", "timestamp", ...context}``; ``StatusLedger`` persists the same
entries as rows that are only ever inserted. Current status is always the
last entry.
"""
import enum
import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Type

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from podclip.db.database import async_session_maker
from podclip.errors import InvalidStatusTransition
from podclip.models.clip import CLIP_STATUS_TRANSITIONS, Clip, ClipStatus
from podclip.models.status_entry import StatusEntry

logger = logging.getLogger(__name__)

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z$")

APPEND_ATTEMPTS = 3


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond // 1000:03d}Z"


def _status_value(status) -> str:
    return status.value if isinstance(status, enum.Enum) else str(status)


def create_status_entry(status, timestamp: Optional[str] = None, **context) -> dict:
    """Build a status history entry; ``None`` context values are dropped."""
    entry = {
        "status": _status_value(status),
        "timestamp": timestamp or format_timestamp(),
    }
    entry.update({k: v for k, v in context.items() if v is not None})
    return entry


def add_status_entry(history: Optional[List[dict]], status, timestamp: Optional[str] = None, **context) -> List[dict]:
    """Return a new history with an entry appended; the input is not modified."""
    updated = list(history) if isinstance(history, list) else []
    updated.append(create_status_entry(status, timestamp, **context))
    return updated


def get_current_status(history: Optional[List[dict]]) -> Optional[str]:
    if not history:
        return None
    return history[-1].get("status")


def validate_status_history(history) -> bool:
    """
    Validate the structure of a status history.

    Raises:
        ValueError: If the history is empty or an entry is malformed
    """
    if not isinstance(history, list):
        raise ValueError("statusHistory must be an array")
    if not history:
        raise ValueError("statusHistory cannot be empty")

    for i, entry in enumerate(history):
        if not isinstance(entry, dict):
            raise ValueError(f"statusHistory entry at index {i} must be an object")
        if not isinstance(entry.get("status"), str) or not entry["status"]:
            raise ValueError(f"statusHistory entry at index {i} must have a status string")
        timestamp = entry.get("timestamp")
        if not isinstance(timestamp, str) or not TIMESTAMP_RE.match(timestamp):
            raise ValueError(f"statusHistory entry at index {i} has invalid timestamp format: {timestamp}")

    return True


def validate_transition(
    current,
    new,
    transitions: Dict[enum.Enum, Set[enum.Enum]] = CLIP_STATUS_TRANSITIONS,
    status_enum: Type[enum.Enum] = ClipStatus,
) -> bool:
    """
    Check a status change against the state machine.

    Raises:
        InvalidStatusTransition: For unknown statuses or disallowed moves
    """
    try:
        new_status = status_enum(_status_value(new))
    except ValueError:
        raise InvalidStatusTransition(f"Invalid status: {new}")

    if current is None:
        return True

    current_status = status_enum(_status_value(current))
    if new_status not in transitions.get(current_status, set()):
        raise InvalidStatusTransition(
            f"Cannot transition from '{current_status.value}' to '{new_status.value}'"
        )
    return True


class StatusLedger:
    """Durable, append-only status history for one entity type."""

    def __init__(
        self,
        entity_type: str,
        session_maker=None,
        transitions: Dict[enum.Enum, Set[enum.Enum]] = CLIP_STATUS_TRANSITIONS,
        status_enum: Type[enum.Enum] = ClipStatus,
    ):
        self.entity_type = entity_type
        self.session_maker = session_maker or async_session_maker
        self.transitions = transitions
        self.status_enum = status_enum

    async def _on_append(self, session, entity_id: str, status: str, timestamp: datetime):
        """Hook run in the append transaction."""

    async def _last_entry(self, session, entity_id: str) -> Optional[StatusEntry]:
        result = await session.execute(
            select(StatusEntry)
            .where(
                StatusEntry.entity_type == self.entity_type,
                StatusEntry.entity_id == entity_id,
            )
            .order_by(StatusEntry.seq.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _insert(self, entity_id: str, status, context: dict, only_if_empty: bool) -> Optional[dict]:
        status_value = _status_value(status)
        for attempt in range(1, APPEND_ATTEMPTS + 1):
            async with self.session_maker() as session:
                last = await self._last_entry(session, entity_id)
                if only_if_empty and last is not None:
                    return None
                if not only_if_empty:
                    validate_transition(
                        last.status if last else None,
                        status_value,
                        self.transitions,
                        self.status_enum,
                    )

                now = datetime.now(timezone.utc)
                entry = create_status_entry(status_value, format_timestamp(now), **context)
                row = StatusEntry(
                    entity_type=self.entity_type,
                    entity_id=entity_id,
                    seq=(last.seq + 1) if last else 0,
                    status=status_value,
                    timestamp=now.replace(tzinfo=None),
                    context={k: v for k, v in entry.items() if k not in ("status", "timestamp")} or None,
                )
                session.add(row)
                try:
                    # Flush first so a seq collision surfaces here and not inside the hook
                    await session.flush()
                    await self._on_append(session, entity_id, status_value, now.replace(tzinfo=None))
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning(
                        f"Concurrent status append on {self.entity_type}:{entity_id} (attempt {attempt})"
                    )
                    continue
                return entry

        raise InvalidStatusTransition(
            f"Could not append '{status_value}' to {self.entity_type}:{entity_id} after {APPEND_ATTEMPTS} attempts"
        )

    async def initialize(self, entity_id: str, status, **context) -> bool:
        """Create the first entry if the entity has no history yet."""
        entry = await self._insert(entity_id, status, context, only_if_empty=True)
        return entry is not None

    async def append(self, entity_id: str, status, **context) -> dict:
        """Append a validated entry and return it."""
        entry = await self._insert(entity_id, status, context, only_if_empty=False)
        logger.info(f"{self.entity_type} {entity_id} -> {entry['status']}")
        return entry

    async def history(self, entity_id: str) -> List[dict]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(StatusEntry)
                .where(
                    StatusEntry.entity_type == self.entity_type,
                    StatusEntry.entity_id == entity_id,
                )
                .order_by(StatusEntry.seq)
            )
            return [
                create_status_entry(row.status, format_timestamp(row.timestamp), **(row.context or {}))
                for row in result.scalars()
            ]

    async def current_status(self, entity_id: str) -> Optional[str]:
        async with self.session_maker() as session:
            last = await self._last_entry(session, entity_id)
            return last.status if last else None

    async def count(self, entity_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                select(func.count(StatusEntry.id)).where(
                    StatusEntry.entity_type == self.entity_type,
                    StatusEntry.entity_id == entity_id,
                )
            )
            return result.scalar_one()


class ClipStatusLedger(StatusLedger):
    """Clip status history; keeps the clip row's ``status`` column in step."""

    def __init__(self, session_maker=None):
        super().__init__("clip", session_maker=session_maker)

    async def _on_append(self, session, entity_id: str, status: str, timestamp: datetime):
        await session.execute(
            update(Clip)
            .where(Clip.entity_id == entity_id)
            .values(status=ClipStatus(status), updated_at=timestamp)
        )
