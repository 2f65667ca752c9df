"""Favorites and playlist module package."""

from flask import Blueprint

bp = Blueprint("library", __name__, url_prefix="/api")

from . import routes  # noqa: E402  pylint: disable=wrong-import-position

__all__ = ["bp", "routes"]
