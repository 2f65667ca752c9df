import os


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev_secret_key')

    # Embedded store: explicit file wins, then a directory, then ./data
    LIBRARY_DB_PATH = os.getenv('LIBRARY_DB_PATH') or None
    LIBRARY_DB_DIR = os.getenv('LIBRARY_DB_DIR') or None
    LIBRARY_DB_APP_DIR = os.getenv('LIBRARY_DB_APP_DIR', '.music-player')

    # Remote REST store
    REMOTE_STORE_URL = os.getenv('SUPABASE_URL', '')
    REMOTE_STORE_KEY = os.getenv('SUPABASE_SERVICE_ROLE_KEY', '')
    REMOTE_STORE_SCHEMA = os.getenv('SUPABASE_SCHEMA', 'public')
    REMOTE_SYNC_DISABLED = os.getenv('SUPABASE_SYNC_DISABLED')
    REMOTE_PRIMARY = os.getenv('SUPABASE_PRIMARY')
    REMOTE_TIMEOUT_SECONDS = os.getenv('SUPABASE_TIMEOUT_SECONDS', '10')
    MIRROR_QUEUE_SIZE = int(os.getenv('MIRROR_QUEUE_SIZE', '1000'))

    # Auth cookie
    AUTH_COOKIE_NAME = 'player_auth_session'
    AUTH_SESSION_DAYS = os.getenv('AUTH_SESSION_DAYS', '14')
    AUTH_COOKIE_SECURE = (os.getenv('APP_ENV') or os.getenv('FLASK_ENV') or '').lower() == 'production'

    QUALIFIED_PLAY_SECONDS = float(os.getenv('QUALIFIED_PLAY_SECONDS', '30'))

    # Media
    ALBUMS_DIR = os.getenv('ALBUMS_DIR', os.path.join(os.getcwd(), 'albums'))
    ASSET_SOURCE = os.getenv('ASSET_SOURCE', 'local')
    ASSET_BASE_URL = os.getenv('ASSET_BASE_URL') or None
    ASSET_PREFIX = os.getenv('ASSET_PREFIX', 'albums')
    ALBUM_INDEX_PATH = os.getenv('ALBUM_INDEX_PATH') or None
    ASSET_FETCH_TIMEOUT_SECONDS = float(os.getenv('ASSET_FETCH_TIMEOUT_SECONDS', '10'))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


def load_config(overrides=None):
    """Config as a mapping, for CLI tools that work without an app."""
    from flask import Config as FlaskConfig

    config = FlaskConfig(os.getcwd())
    config.from_object(Config)
    config.update(overrides or {})
    return config
