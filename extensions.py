from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager

# Extensions are created unbound and attached in create_app()

# Table declarations (db.Model); engines are owned by storage.embedded
db = SQLAlchemy()

# Cookie-token authentication for the JSON API
login_manager = LoginManager()


class StorageExtension:
    """Builds storage.stores.Stores from app.config and keeps it on the app."""

    def init_app(self, app):
        from storage.stores import Stores  # storage imports db from this module

        app.extensions["stores"] = Stores.from_config(app.config)

    @property
    def stores(self):
        return current_app.extensions["stores"]

    @property
    def library(self):
        return self.stores.library

    @property
    def telemetry(self):
        return self.stores.telemetry


music_store = StorageExtension()
