"""Collaborative design boards: metadata, sharing and snapshot saves."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from flask import Flask, current_app
from sqlalchemy import func, or_

from opshub.errors import AuthorizationError, NotFoundError, ValidationError
from opshub.extensions import db
from opshub.models import BoardPermission, DesignBoard, User
from opshub.permissions import UserContext
from opshub.services.presence import get_presence_writer
from opshub.services.realtime import board_channel_name, get_hub
from opshub.utils.debounce import Debouncer, app_bound

logger = logging.getLogger(__name__)

DEFAULT_BOARD_NAME = "Untitled Board"
BOARD_DEFAULT_SETTINGS: dict[str, Any] = {
    "gridSize": 20,
    "backgroundColor": "#f7f7f7",
    "gridVisible": True,
    "snapToGrid": True,
}
EDITABLE_FIELDS = ("name", "description", "status", "project_id", "thumbnail", "is_template", "is_public")
EDIT_ROLES = frozenset({"admin", "editor"})


@dataclass(frozen=True)
class BoardAccess:
    role: str | None
    can_edit: bool
    can_view: bool

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "canEdit": self.can_edit, "canView": self.can_view}


NO_ACCESS = BoardAccess(None, False, False)


def _board_role(board: DesignBoard, user: UserContext) -> str | None:
    if board.created_by == user.id:
        return "admin"

    email = (user.email or "").lower()
    for permission in board.participants:
        if permission.user_id == user.id:
            return permission.role
        if email and (permission.user_email or "").lower() == email:
            return permission.role

    if user.is_admin:
        return "admin"
    if board.is_public:
        return "viewer"
    return None


def check_board_permissions(board: DesignBoard, user: UserContext | None) -> BoardAccess:
    """Resolve what ``user`` may do on ``board``."""

    if user is None:
        return BoardAccess(None, False, bool(board.is_public))
    role = _board_role(board, user)
    if role is None:
        return NO_ACCESS
    return BoardAccess(role, role in EDIT_ROLES, True)


def get_board_for(board_id: int, user: UserContext, need: str = "view") -> tuple[DesignBoard, BoardAccess]:
    """Load a board and ensure ``user`` holds the ``need`` level on it.

    ``need`` is ``view``, ``edit`` or ``admin``.
    """

    board = db.session.get(DesignBoard, board_id)
    if board is None:
        raise NotFoundError("Design board not found")

    access = check_board_permissions(board, user)
    if need == "admin":
        allowed = access.role == "admin"
    elif need == "edit":
        allowed = access.can_edit
    else:
        allowed = access.can_view
    if not allowed:
        raise AuthorizationError("You do not have access to this design board")
    return board, access


def _participant_counts(board_ids: list[int]) -> dict[int, int]:
    if not board_ids:
        return {}
    rows = (
        db.session.query(BoardPermission.board_id, func.count(BoardPermission.id))
        .filter(BoardPermission.board_id.in_(board_ids))
        .group_by(BoardPermission.board_id)
        .all()
    )
    return {board_id: count for board_id, count in rows}


def list_boards(user: UserContext) -> list[dict[str, Any]]:
    query = DesignBoard.query
    if not user.is_admin:
        shared = db.session.query(BoardPermission.board_id).filter(
            or_(
                BoardPermission.user_id == user.id,
                func.lower(BoardPermission.user_email) == (user.email or "").lower(),
            )
        )
        query = query.filter(
            or_(
                DesignBoard.created_by == user.id,
                DesignBoard.is_public.is_(True),
                DesignBoard.id.in_(shared),
            )
        )

    boards = query.order_by(DesignBoard.updated_at.desc(), DesignBoard.id.desc()).all()
    counts = _participant_counts([board.id for board in boards])

    results = []
    for board in boards:
        payload = board.to_dict()
        payload["participant_count"] = counts.get(board.id, 0)
        payload["access"] = check_board_permissions(board, user).to_dict()
        results.append(payload)
    return results


def _validated_settings(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(errors={"settings": "Expected an object"})
    return dict(value)


def create_board(user: UserContext, data: Mapping[str, Any]) -> DesignBoard:
    name = (data.get("name") or "").strip() or DEFAULT_BOARD_NAME
    settings = copy.deepcopy(BOARD_DEFAULT_SETTINGS)
    settings.update(_validated_settings(data.get("settings")))

    now = datetime.utcnow()
    board = DesignBoard(
        name=name,
        description=data.get("description") or "",
        project_id=data.get("project_id"),
        thumbnail=data.get("thumbnail"),
        is_template=bool(data.get("is_template", False)),
        is_public=bool(data.get("is_public", False)),
        settings=settings,
        snapshot=data.get("snapshot"),
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    db.session.add(board)
    db.session.commit()
    logger.info("Design board %s created by user %s", board.id, user.id)
    return board


def _notify_board_change(board: DesignBoard, event_type: str) -> None:
    channel = get_hub().get(board_channel_name(board.id))
    if channel is not None:
        channel.notify_change("design_boards", event_type, board.to_dict())


def update_board_metadata(board: DesignBoard, data: Mapping[str, Any]) -> DesignBoard:
    """Apply editable fields from ``data``; unknown fields are ignored."""

    for name in EDITABLE_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if name == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationError(errors={"name": "Board name cannot be blank"})
        elif name in ("is_template", "is_public"):
            value = bool(value)
        setattr(board, name, value)

    if "settings" in data:
        settings = dict(board.settings or {})
        settings.update(_validated_settings(data["settings"]))
        board.settings = settings

    board.updated_at = datetime.utcnow()
    db.session.commit()
    _notify_board_change(board, "UPDATE")
    return board


def delete_board(board: DesignBoard) -> None:
    board_id = board.id
    get_board_saver().cancel(board_id)
    dropped = get_presence_writer().cancel_board(board_id)
    record = board.to_dict()
    db.session.delete(board)
    db.session.commit()

    channel = get_hub().get(board_channel_name(board_id))
    if channel is not None:
        channel.notify_change("design_boards", "DELETE", record)
        for key in channel.presence_state():
            channel.untrack(key)
    if dropped:
        logger.info("Dropped %d pending presence writes for board %s", dropped, board_id)
    logger.info("Design board %s deleted", board_id)


def save_snapshot(board_id: int, snapshot: Any) -> DesignBoard | None:
    """Persist a board snapshot; the most recent save wins."""

    board = db.session.get(DesignBoard, board_id)
    if board is None:
        logger.warning("Dropping snapshot for missing design board %s", board_id)
        return None
    board.snapshot = snapshot
    board.updated_at = datetime.utcnow()
    db.session.commit()
    _notify_board_change(board, "UPDATE")
    return board


class BoardSaver:
    """Debounce snapshot saves per board."""

    def __init__(self, app: Flask, delay_ms: int | None = None):
        if delay_ms is None:
            delay_ms = int(app.config.get("BOARD_SAVE_DELAY_MS", 2000))
        self._debouncer = Debouncer(delay_ms / 1000.0, app_bound(app, self._write))

    @property
    def delay_seconds(self) -> float:
        return self._debouncer.delay_seconds

    def _write(self, board_id: int, fields: dict[str, Any]) -> None:
        save_snapshot(board_id, fields["snapshot"])

    def schedule(self, board_id: int, snapshot: Any) -> None:
        self._debouncer.call(board_id, {"snapshot": snapshot})

    def pending(self, board_id: int) -> bool:
        return self._debouncer.pending(board_id) is not None

    def flush(self, board_id: int | None = None) -> int:
        return self._debouncer.flush(board_id)

    def cancel(self, board_id: int) -> bool:
        return self._debouncer.cancel(board_id)


def get_board_saver(app: Flask | None = None) -> BoardSaver:
    app = app or current_app._get_current_object()
    saver = app.extensions.get("opshub_board_saver")
    if saver is None:
        saver = BoardSaver(app)
        app.extensions["opshub_board_saver"] = saver
    return saver


def list_participants(board: DesignBoard) -> list[dict[str, Any]]:
    rows = sorted(board.participants, key=lambda permission: (permission.created_at, permission.id))
    return [permission.to_dict() for permission in rows]


def invite_participant(board: DesignBoard, data: Mapping[str, Any]) -> BoardPermission:
    """Grant a user (by id or email) a role on ``board``.

    An existing grant for the same user is updated in place.
    """

    role = data.get("role") or "viewer"
    if role not in BoardPermission.ROLES:
        raise ValidationError(errors={"role": f"Must be one of {', '.join(BoardPermission.ROLES)}"})

    user_id = data.get("user_id")
    email = (data.get("user_email") or data.get("email") or "").strip().lower() or None
    if user_id is None and email is None:
        raise ValidationError(errors={"user_email": "Provide a user id or an email address"})
    if user_id is not None and (isinstance(user_id, bool) or not isinstance(user_id, int)):
        raise ValidationError(errors={"user_id": "Must be an integer"})
    if user_id is not None and db.session.get(User, user_id) is None:
        raise NotFoundError("User not found")

    permission = None
    for existing in board.participants:
        if user_id is not None and existing.user_id == user_id:
            permission = existing
            break
        if email is not None and (existing.user_email or "").lower() == email:
            permission = existing
            break

    if permission is None:
        permission = BoardPermission(board=board, user_id=user_id, user_email=email)
        db.session.add(permission)
    permission.role = role
    if email is not None:
        permission.user_email = email
    if user_id is not None:
        permission.user_id = user_id

    db.session.commit()
    return permission
