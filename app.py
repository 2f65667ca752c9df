import json
import logging

from flask import Flask, jsonify
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

load_dotenv()

from config import Config  # noqa: E402  (load_dotenv needs to run first)
from extensions import login_manager, music_store  # noqa: E402  (load_dotenv needs to run first)
from storage.base import StorageError  # noqa: E402


def create_app(overrides=None) -> Flask:
    """Application factory for the music player API."""

    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # init extensions
    login_manager.init_app(app)
    login_manager.session_protection = None  # auth state lives in our own cookie
    music_store.init_app(app)

    # blueprints
    from modules.auth import bp as auth_bp
    from modules.library import bp as library_bp
    from modules.playback import bp as playback_bp
    from modules.media import bp as media_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(library_bp)
    app.register_blueprint(playback_bp)
    app.register_blueprint(media_bp)

    # --- JSON errors ---
    @app.errorhandler(HTTPException)
    def http_error(exc):
        # keep headers such as Content-Range on 416
        response = exc.get_response()
        response.data = json.dumps({"error": exc.description or exc.name})
        response.content_type = "application/json"
        return response

    @app.errorhandler(StorageError)
    def storage_error(exc):
        app.logger.exception("Storage backend failure: %s", exc)
        return jsonify(error="Storage backend unavailable"), 500

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
