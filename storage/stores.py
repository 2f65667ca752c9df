"""Builds the store graph once per process (or per test) from a config mapping."""

import logging
from typing import Optional

from storage.backend import SyncConfig
from storage.base import ConfigurationError
from storage.embedded import EmbeddedStore
from storage.library import LibraryStore
from storage.mirror import MirrorQueue, Replicator
from storage.remote import RemoteStoreClient
from storage.rest_backend import RestBackend
from storage.telemetry import QUALIFIED_PLAY_SECONDS, TelemetryStore

logger = logging.getLogger(__name__)


class Stores:
    """
    Holds the embedded store, the optional remote backend, the mirror queue
    and the two domain stores wired to whichever backend is primary.
    """

    def __init__(self, sync_config: SyncConfig, embedded: EmbeddedStore,
                 remote: Optional[RestBackend] = None, mirror_queue_size: int = 1000,
                 session_days=14, threshold_seconds=QUALIFIED_PLAY_SECONDS):
        self.sync_config = sync_config
        self.embedded = embedded
        self.remote = remote if sync_config.enabled else None
        self.mirror: Optional[MirrorQueue] = None

        if self.remote is not None and sync_config.primary:
            primary, secondary = self.remote, self.embedded
        else:
            primary, secondary = self.embedded, self.remote

        if secondary is not None:
            self.mirror = MirrorQueue(maxsize=mirror_queue_size)
        self.primary = primary
        self.secondary = secondary
        self.replicator = Replicator(primary, secondary, self.mirror)
        self.library = LibraryStore(primary, self.replicator, session_days)
        self.telemetry = TelemetryStore(primary, self.replicator, threshold_seconds)
        logger.info("Library storage mode: %s (embedded db: %s)", sync_config.mode, embedded.path)

    @classmethod
    def from_config(cls, config, http_session=None) -> "Stores":
        sync_config = SyncConfig.from_config(config)
        embedded = EmbeddedStore.from_config(config)
        remote = None
        if sync_config.enabled:
            remote = RestBackend(RemoteStoreClient.from_sync_config(sync_config, session=http_session))
        return cls(
            sync_config,
            embedded,
            remote,
            mirror_queue_size=int(config.get("MIRROR_QUEUE_SIZE") or 1000),
            session_days=config.get("AUTH_SESSION_DAYS"),
            threshold_seconds=config.get("QUALIFIED_PLAY_SECONDS") or QUALIFIED_PLAY_SECONDS,
        )

    def require_remote(self) -> RestBackend:
        if self.remote is None:
            raise ConfigurationError("Remote store is not configured or sync is disabled")
        return self.remote

    def flush(self) -> None:
        if self.mirror is not None:
            self.mirror.flush()

    def close(self) -> None:
        if self.mirror is not None:
            self.mirror.stop()
        self.embedded.close()
