import copy
import datetime
from functools import wraps

import jwt
from flask import Blueprint, current_app, jsonify, request
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import AuthError, ForbiddenError, ValidationError
from .helpers import get_store, json_body
from .models import ROLES, new_user, public_user, require_fields, text_value
from .storage import utcnow_iso

bp = Blueprint("auth", __name__, url_prefix="/api/auth")

DEFAULT_SETTINGS = {
    "notifications": {
        "verificationResult": True,
        "batchCompletion": True,
        "systemMaintenance": False,
        "smsNotification": True,
    },
    "api": {
        "rateLimit": "500",
        "whitelistIPs": "",
    },
    "preferences": {
        "language": "zh-CN",
        "timezone": "Asia/Shanghai",
        "dateFormat": "YYYY-MM-DD",
        "theme": "light",
    },
}


# Auth utils
def make_token(payload):
    payload = payload.copy()
    hours = current_app.config["JWT_EXPIRES_HOURS"]
    payload["exp"] = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=hours)
    return jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm="HS256")


def verify_token(token):
    try:
        return jwt.decode(token, current_app.config["JWT_SECRET"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def token_for(user):
    return make_token({"id": user["id"], "role": user["role"]})


def _request_token():
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth.split(" ", 1)[1].strip()
    return request.cookies.get("token")


def auth_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            token = _request_token()
            if not token or token == "none":
                raise AuthError("Missing token")
            data = verify_token(token)
            user = get_store().find_one("users", {"id": data.get("id")})
            if not user:
                current_app.logger.warning("Token for unknown user %s", data.get("id"))
                raise AuthError("User not found")
            if not user.get("isActive", True):
                raise ForbiddenError("Account disabled")
            if roles and user.get("role") not in roles:
                current_app.logger.warning("User %s (%s) denied access to %s", user["id"], user.get("role"), request.path)
                raise ForbiddenError("Forbidden")
            request.user = user
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def _require_password_strings(body, fields):
    for field in fields:
        if not isinstance(body[field], str):
            raise ValidationError(f"{field} must be a string")


def _token_response(payload, token, status=200):
    response = jsonify(payload)
    response.status_code = status
    response.set_cookie(
        "token",
        token,
        max_age=current_app.config["JWT_EXPIRES_HOURS"] * 3600,
        httponly=True,
        secure=current_app.config.get("ENVIRONMENT") == "production",
    )
    return response


@bp.route("/register", methods=["POST"])
def register():
    body = json_body()
    require_fields(body, ("username", "email", "password", "role"))
    _require_password_strings(body, ("password",))
    username = text_value(body["username"], "username")
    email = text_value(body["email"], "email").lower()
    role = body["role"]
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    if "@" not in email:
        raise ValidationError("Invalid email")

    store = get_store()
    if store.find_one("users", {"username": username}) or store.find_one("users", {"email": email}):
        raise ValidationError("User exists")

    user = new_user(
        username,
        email,
        generate_password_hash(body["password"]),
        role,
        fullName=body.get("fullName"),
        mobile=body.get("mobile"),
        organization=body.get("organization"),
        title=body.get("title"),
    )
    store.insert("users", user)
    current_app.logger.info("Registered %s user %s", role, username)
    token = token_for(user)
    return _token_response({"success": True, "token": token, "user": public_user(user)}, token, 201)


@bp.route("/login", methods=["POST"])
def login():
    body = json_body()
    username = text_value(body.get("username") or body.get("email") or "", "username")
    password = body.get("password")
    if not username or not password or not isinstance(password, str):
        raise ValidationError("Username and password required")

    store = get_store()
    user = store.find_one("users", {"username": username}) or store.find_one("users", {"email": username.lower()})
    if not user or not check_password_hash(user["password"], password):
        raise AuthError("Invalid credentials")
    if not user.get("isActive", True):
        raise ForbiddenError("Account disabled")

    store.update("users", {"id": user["id"]}, {"lastLogin": utcnow_iso()})
    token = token_for(user)
    return _token_response({"success": True, "token": token, "user": public_user(user)}, token)


@bp.route("/me", methods=["GET"])
@auth_required()
def me():
    return jsonify({"success": True, "data": public_user(request.user)})


@bp.route("/logout", methods=["GET"])
def logout():
    response = jsonify({"success": True, "message": "Logged out"})
    response.set_cookie("token", "none", max_age=10, httponly=True)
    return response


@bp.route("/updatepassword", methods=["PUT"])
@auth_required()
def update_password():
    body = json_body()
    require_fields(body, ("currentPassword", "newPassword"))
    _require_password_strings(body, ("currentPassword", "newPassword"))
    user = request.user
    if not check_password_hash(user["password"], body["currentPassword"]):
        raise AuthError("Current password is incorrect")

    get_store().update("users", {"id": user["id"]}, {"password": generate_password_hash(body["newPassword"])})
    token = token_for(user)
    return _token_response({"success": True, "message": "Password updated", "token": token}, token)


# Settings
def merged_settings(user):
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    for section, values in (user.get("settings") or {}).items():
        settings.setdefault(section, {}).update(values)
    return settings


def apply_settings_update(user, changes):
    """Merge a partial update into the user's stored overrides."""
    if not isinstance(changes, dict):
        raise ValidationError("Settings must be an object")
    overrides = copy.deepcopy(user.get("settings") or {})
    for section, values in changes.items():
        if section not in DEFAULT_SETTINGS:
            raise ValidationError(f"Unknown settings section: {section}")
        if not isinstance(values, dict):
            raise ValidationError(f"Settings section {section} must be an object")
        unknown = set(values) - set(DEFAULT_SETTINGS[section])
        if unknown:
            raise ValidationError(f"Unknown {section} settings: {', '.join(sorted(unknown))}")
        overrides.setdefault(section, {}).update(values)
    return overrides


@bp.route("/settings", methods=["GET"])
@auth_required()
def get_settings():
    return jsonify({"success": True, "data": merged_settings(request.user)})


@bp.route("/settings", methods=["PUT"])
@auth_required()
def update_settings():
    user = request.user
    overrides = apply_settings_update(user, json_body())
    get_store().update("users", {"id": user["id"]}, {"settings": overrides})
    user["settings"] = overrides
    return jsonify({"success": True, "data": merged_settings(user)})
