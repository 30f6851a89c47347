from __future__ import annotations

from datetime import datetime

from flask import Blueprint, Response, current_app, stream_with_context

from opshub.api import get_json_payload, success_response
from opshub.errors import ValidationError
from opshub.permissions import current_user_context, require_permissions
from opshub.services.boards import (
    create_board,
    delete_board,
    get_board_for,
    get_board_saver,
    invite_participant,
    list_boards,
    list_participants,
    update_board_metadata,
)
from opshub.services.presence import (
    deactivate_presence,
    get_presence_writer,
    list_active_presence,
    normalize_presence_update,
    presence_color,
)
from opshub.services.realtime import (
    QueueListener,
    board_channel_name,
    format_sse,
    get_hub,
    reconcile_presence,
)

bp = Blueprint("design_boards", __name__, url_prefix="/api/design-boards")


@bp.get("")
@require_permissions()
def boards_index():
    boards = list_boards(current_user_context())
    return success_response(boards, total=len(boards))


@bp.post("")
@require_permissions()
def boards_create():
    board = create_board(current_user_context(), get_json_payload())
    return success_response(board.to_dict(include_snapshot=True), status=201)


@bp.get("/<int:board_id>")
@require_permissions()
def boards_show(board_id: int):
    board, access = get_board_for(board_id, current_user_context())
    return success_response(board.to_dict(include_snapshot=True), access=access.to_dict())


@bp.patch("/<int:board_id>")
@require_permissions()
def boards_update(board_id: int):
    board, _ = get_board_for(board_id, current_user_context(), need="edit")
    board = update_board_metadata(board, get_json_payload())
    return success_response(board.to_dict())


@bp.delete("/<int:board_id>")
@require_permissions()
def boards_delete(board_id: int):
    board, _ = get_board_for(board_id, current_user_context(), need="admin")
    delete_board(board)
    return success_response({"id": board_id})


@bp.put("/<int:board_id>/snapshot")
@require_permissions()
def boards_save_snapshot(board_id: int):
    get_board_for(board_id, current_user_context(), need="edit")
    data = get_json_payload()
    if "snapshot" not in data:
        raise ValidationError(errors={"snapshot": "This field is required"})

    saver = get_board_saver()
    saver.schedule(board_id, data["snapshot"])
    return success_response(
        {
            "boardId": board_id,
            "pending": saver.pending(board_id),
            "delayMs": int(saver.delay_seconds * 1000),
        },
        status=202,
    )


@bp.get("/<int:board_id>/permissions")
@require_permissions()
def boards_permissions(board_id: int):
    _, access = get_board_for(board_id, current_user_context())
    return success_response(access.to_dict())


@bp.get("/<int:board_id>/participants")
@require_permissions()
def participants_index(board_id: int):
    board, _ = get_board_for(board_id, current_user_context())
    return success_response(list_participants(board))


@bp.post("/<int:board_id>/participants")
@require_permissions()
def participants_invite(board_id: int):
    board, _ = get_board_for(board_id, current_user_context(), need="admin")
    permission = invite_participant(board, get_json_payload())
    return success_response(permission.to_dict(), status=201)


@bp.get("/<int:board_id>/presence")
@require_permissions()
def presence_index(board_id: int):
    user = current_user_context()
    get_board_for(board_id, user)
    rows = list_active_presence(board_id, exclude_user_id=user.id)
    return success_response([row.to_dict() for row in rows], total=len(rows))


@bp.put("/<int:board_id>/presence")
@require_permissions()
def presence_update(board_id: int):
    user = current_user_context()
    get_board_for(board_id, user)
    fields = normalize_presence_update(get_json_payload())

    writer = get_presence_writer()
    merged = writer.update(board_id, user.id, fields)
    return success_response(
        {
            "boardId": board_id,
            "userId": user.id,
            "color": presence_color(user.id),
            "pending": merged,
            "delayMs": int(writer.delay_seconds * 1000),
        },
        status=202,
    )


@bp.delete("/<int:board_id>/presence")
@require_permissions()
def presence_leave(board_id: int):
    user = current_user_context()
    get_board_for(board_id, user)
    return success_response({"deactivated": deactivate_presence(board_id, user.id)})


@bp.get("/<int:board_id>/events")
@require_permissions()
def board_events(board_id: int):
    """Stream board channel events as Server-Sent Events."""

    user = current_user_context()
    get_board_for(board_id, user)

    key = str(user.id)
    channel = get_hub().channel(board_channel_name(board_id))

    def presence_sync() -> dict:
        known = {str(row.user_id): [row.to_dict()] for row in list_active_presence(board_id)}
        known.update(channel.presence_state())
        return {
            "type": "presence",
            "event": "sync",
            "payload": {
                "state": channel.presence_state(),
                "presences": reconcile_presence(known, key),
            },
        }

    listener = QueueListener(resync=presence_sync)
    subscription = channel.subscribe(listener, key=key)
    channel.track(
        key,
        {
            "user_id": user.id,
            "color": presence_color(user.id),
            "online_at": datetime.utcnow().isoformat(),
        },
    )

    initial = presence_sync()
    heartbeat = float(current_app.config.get("EVENT_STREAM_HEARTBEAT_SECONDS", 15))

    def generate():
        try:
            yield format_sse(initial)
            while True:
                event = listener.get(timeout=heartbeat)
                if event is None:
                    yield ": ping\n\n"
                    continue
                yield format_sse(event)
        finally:
            subscription.unsubscribe()
            if not channel.has_subscriber(key):
                channel.untrack(key)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
