"""Live cursor, viewport and selection state of users on design boards."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from flask import Flask, current_app
from sqlalchemy.exc import IntegrityError

from opshub.errors import ValidationError
from opshub.extensions import db
from opshub.models import BoardPresence, DesignBoard
from opshub.services.realtime import board_channel_name, get_hub
from opshub.utils.debounce import Debouncer, app_bound

logger = logging.getLogger(__name__)

PRESENCE_COLORS: tuple[str, ...] = (
    "#88c0c0",
    "#db7f38",
    "#16a34a",
    "#dc2626",
    "#7c3aed",
    "#ea580c",
    "#0ea5e9",
    "#ca8a04",
)

PRESENCE_FIELDS = ("cursor_position", "viewport", "selected_objects")


def string_hash(value: str) -> int:
    """32-bit ``h * 31 + code`` string hash, as browsers compute it."""

    result = 0
    for char in value:
        result = ((result << 5) - result + ord(char)) & 0xFFFFFFFF
    if result >= 0x80000000:
        result -= 0x100000000
    return result


def presence_color(user_id: int | str) -> str:
    return PRESENCE_COLORS[abs(string_hash(str(user_id))) % len(PRESENCE_COLORS)]


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(errors={path: "Must be a number"})
    return value


def normalize_presence_update(data: Mapping[str, Any]) -> dict[str, Any]:
    """Validate the presence fields present in ``data``."""

    fields: dict[str, Any] = {}

    if "cursor_position" in data:
        cursor = data["cursor_position"]
        if cursor is not None:
            if not isinstance(cursor, Mapping):
                raise ValidationError(errors={"cursor_position": "Expected {x, y}"})
            cursor = {
                "x": _number(cursor.get("x"), "cursor_position.x"),
                "y": _number(cursor.get("y"), "cursor_position.y"),
            }
        fields["cursor_position"] = cursor

    if "viewport" in data:
        viewport = data["viewport"]
        if viewport is not None:
            if not isinstance(viewport, Mapping):
                raise ValidationError(errors={"viewport": "Expected {x, y, z}"})
            viewport = {
                axis: _number(viewport.get(axis), f"viewport.{axis}") for axis in ("x", "y", "z")
            }
        fields["viewport"] = viewport

    if "selected_objects" in data:
        selected = data["selected_objects"]
        if selected is None:
            selected = []
        if not isinstance(selected, list):
            raise ValidationError(errors={"selected_objects": "Expected a list of object ids"})
        fields["selected_objects"] = [str(object_id) for object_id in selected]

    return fields


def _tracked_meta(row: BoardPresence) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "color": row.color,
        "cursor_position": row.cursor_position,
        "viewport": row.viewport,
        "selected_objects": list(row.selected_objects or []),
        "online_at": row.last_seen.isoformat() if row.last_seen else None,
    }


def upsert_presence(board_id: int, user_id: int, fields: Mapping[str, Any]) -> BoardPresence:
    """Write one presence row keyed on ``(board_id, user_id)``.

    Fields absent from ``fields`` keep their stored values.
    """

    for attempt in range(2):
        row = BoardPresence.query.filter_by(board_id=board_id, user_id=user_id).first()
        created = row is None
        if created:
            row = BoardPresence(board_id=board_id, user_id=user_id, selected_objects=[])
            db.session.add(row)

        for name in PRESENCE_FIELDS:
            if name in fields:
                setattr(row, name, fields[name])
        row.color = presence_color(user_id)
        row.is_active = True
        row.last_seen = datetime.utcnow()

        try:
            db.session.commit()
            break
        except IntegrityError:
            # Another writer inserted the row first; retry as an update.
            db.session.rollback()
            if attempt == 1:
                raise

    channel = get_hub().channel(board_channel_name(board_id))
    channel.notify_change("board_presence", "INSERT" if created else "UPDATE", row.to_dict())
    channel.track(str(user_id), _tracked_meta(row))
    return row


class PresenceWriter:
    """Debounce presence writes per ``(board_id, user_id)``."""

    def __init__(self, app: Flask, delay_ms: int | None = None):
        self.app = app
        if delay_ms is None:
            delay_ms = int(app.config.get("PRESENCE_UPDATE_DELAY_MS", 100))
        self._debouncer = Debouncer(delay_ms / 1000.0, app_bound(app, self._write))

    @property
    def delay_seconds(self) -> float:
        return self._debouncer.delay_seconds

    def _write(self, key: tuple[int, int], fields: dict[str, Any]) -> None:
        board_id, user_id = key
        if db.session.get(DesignBoard, board_id) is None:
            logger.info("Dropping presence update for deleted design board %s", board_id)
            return
        upsert_presence(board_id, user_id, fields)

    def update(self, board_id: int, user_id: int, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Queue ``fields`` and return the merged pending update."""

        return self._debouncer.call((board_id, user_id), dict(fields))

    def pending(self, board_id: int, user_id: int) -> dict[str, Any] | None:
        return self._debouncer.pending((board_id, user_id))

    def flush(self, board_id: int | None = None, user_id: int | None = None) -> int:
        if board_id is not None and user_id is not None:
            return self._debouncer.flush((board_id, user_id))
        return self._debouncer.flush()

    def cancel(self, board_id: int, user_id: int) -> bool:
        return self._debouncer.cancel((board_id, user_id))

    def cancel_board(self, board_id: int) -> int:
        return self._debouncer.cancel_matching(lambda key: key[0] == board_id)


def get_presence_writer(app: Flask | None = None) -> PresenceWriter:
    app = app or current_app._get_current_object()
    writer = app.extensions.get("opshub_presence_writer")
    if writer is None:
        writer = PresenceWriter(app)
        app.extensions["opshub_presence_writer"] = writer
    return writer


def list_active_presence(
    board_id: int,
    *,
    exclude_user_id: int | None = None,
    stale_seconds: int | None = None,
    now: datetime | None = None,
) -> list[BoardPresence]:
    if stale_seconds is None:
        stale_seconds = int(current_app.config.get("PRESENCE_STALE_SECONDS", 300))
    cutoff = (now or datetime.utcnow()) - timedelta(seconds=stale_seconds)

    query = BoardPresence.query.filter(
        BoardPresence.board_id == board_id,
        BoardPresence.is_active.is_(True),
        BoardPresence.last_seen >= cutoff,
    )
    if exclude_user_id is not None:
        query = query.filter(BoardPresence.user_id != exclude_user_id)
    return query.order_by(BoardPresence.last_seen.desc()).all()


def _announce_inactive(row: BoardPresence) -> None:
    channel = get_hub().get(board_channel_name(row.board_id))
    if channel is None:
        return
    channel.notify_change("board_presence", "UPDATE", row.to_dict())
    channel.untrack(str(row.user_id))


def deactivate_presence(board_id: int, user_id: int) -> bool:
    """Drop pending writes and mark the user's presence inactive."""

    get_presence_writer().cancel(board_id, user_id)
    row = BoardPresence.query.filter_by(board_id=board_id, user_id=user_id).first()
    if row is None:
        channel = get_hub().get(board_channel_name(board_id))
        if channel is not None:
            channel.untrack(str(user_id))
        return False

    row.is_active = False
    db.session.commit()
    _announce_inactive(row)
    return True


def prune_stale_presence(max_age_seconds: int | None = None, *, now: datetime | None = None) -> int:
    """Deactivate presence rows that have not been seen recently."""

    if max_age_seconds is None:
        max_age_seconds = int(current_app.config.get("PRESENCE_STALE_SECONDS", 300))
    cutoff = (now or datetime.utcnow()) - timedelta(seconds=max_age_seconds)

    rows = BoardPresence.query.filter(
        BoardPresence.is_active.is_(True),
        BoardPresence.last_seen < cutoff,
    ).all()
    for row in rows:
        row.is_active = False
    db.session.commit()

    for row in rows:
        _announce_inactive(row)
    if rows:
        logger.info("Deactivated %d stale presence rows", len(rows))
    return len(rows)
