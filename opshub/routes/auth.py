from flask import Blueprint
from flask_login import current_user, login_user, logout_user

from opshub.api import get_json_payload, require_fields, success_response
from opshub.audit import record_login_event
from opshub.errors import AuthenticationError, AuthorizationError
from opshub.models import AccessLog, User
from opshub.permissions import build_user_context, current_user_context, require_permissions
from opshub.services.rate_limit import rate_limited

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@bp.post("/login")
@rate_limited("auth")
def login():
    data = get_json_payload()
    require_fields(data, "username", "password")

    username = str(data["username"]).strip()
    password = str(data["password"])
    user = User.query.filter_by(username=username).first()

    if user is None or not user.password_hash or not user.check_password(password):
        record_login_event(
            event_type=AccessLog.EVENT_LOGIN_FAILURE,
            user_id=user.id if user else None,
            username=username,
            status_code=401,
        )
        raise AuthenticationError("Invalid credentials")

    if not user.is_active:
        record_login_event(
            event_type=AccessLog.EVENT_LOGIN_FAILURE,
            user_id=user.id,
            username=user.username,
            status_code=403,
        )
        raise AuthorizationError("Account is disabled")

    login_user(user)
    record_login_event(
        event_type=AccessLog.EVENT_LOGIN_SUCCESS,
        user_id=user.id,
        username=user.username,
        status_code=200,
    )
    return success_response(build_user_context(user).to_dict())


@bp.post("/logout")
def logout():
    if current_user.is_authenticated:
        record_login_event(
            event_type=AccessLog.EVENT_LOGOUT,
            user_id=current_user.id,
            username=current_user.username,
            status_code=200,
        )
    logout_user()
    return success_response(None)


@bp.get("/me")
@require_permissions(enforce_active=False)
def me():
    return success_response(current_user_context().to_dict())
