from flask import current_app, jsonify, request
from flask_login import current_user

from extensions import login_manager, music_store
from permissions import role_required
from storage.base import ConstraintError
from utils import json_payload, read_string

from . import bp


def _session_token():
    return request.cookies.get(current_app.config["AUTH_COOKIE_NAME"])


@login_manager.request_loader
def load_user_from_cookie(req):
    token = req.cookies.get(current_app.config["AUTH_COOKIE_NAME"])
    if not token:
        return None
    return music_store.library.resolve_session(token)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(error="Unauthorized"), 401


def _set_auth_cookie(response, token, max_age):
    response.set_cookie(
        current_app.config["AUTH_COOKIE_NAME"],
        token,
        max_age=max_age,
        httponly=True,
        samesite="Lax",
        secure=bool(current_app.config.get("AUTH_COOKIE_SECURE")),
        path="/",
    )


def _read_account(data):
    account = read_string(data.get("account"), 320) or read_string(data.get("email"), 320)
    return account.lower() if account else None


@bp.route("/auth/login", methods=["POST"])
def login():
    data = json_payload()
    account = _read_account(data)
    password = read_string(data.get("password"), 200)
    if not account or not password:
        return jsonify(error="Account and password are required"), 400

    library = music_store.library
    user = library.authenticate(account, password)
    if user is None:
        current_app.logger.info("Failed login for %s", account)
        return jsonify(error="Invalid account or password"), 401

    token, max_age = library.create_session(user.id)
    response = jsonify(user=user.to_dict())
    _set_auth_cookie(response, token, max_age)
    return response


@bp.route("/auth/logout", methods=["POST"])
def logout():
    music_store.library.delete_session(_session_token())
    response = jsonify(ok=True)
    response.delete_cookie(current_app.config["AUTH_COOKIE_NAME"], path="/")
    return response


@bp.route("/auth/me", methods=["GET"])
def me():
    if not current_user.is_authenticated:
        return jsonify(user=None)
    return jsonify(user=current_user.to_dict())


@bp.route("/admin/users", methods=["POST"])
@role_required(["admin"])
def create_user():
    data = json_payload()
    account = _read_account(data)
    password = read_string(data.get("password"), 200)
    role = "admin" if read_string(data.get("role"), 20) == "admin" else "user"

    if not account or not password:
        return jsonify(error="Account and password are required"), 400
    if len(password) < 4:
        return jsonify(error="Password must be at least 4 characters"), 400

    try:
        user = music_store.library.create_user(account, password, role)
    except ConstraintError:
        return jsonify(error="User already exists"), 409
    current_app.logger.info("Admin %s created user %s", current_user.account, user.account)
    return jsonify(user=user.to_dict())
