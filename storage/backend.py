"""Which store is authoritative, resolved once from configuration."""

from dataclasses import dataclass

from storage.base import ConfigurationError

TRUTHY = {"1", "true", "yes", "on"}
FALSEY = {"0", "false", "no", "off"}


def is_truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY


def is_falsey(value) -> bool:
    if isinstance(value, bool):
        return not value
    if value is None:
        return False
    return str(value).strip().lower() in FALSEY


@dataclass(frozen=True)
class SyncConfig:
    """
    enabled=False          -> remote never contacted, embedded store only.
    enabled, primary=False -> embedded authoritative, remote mirrored.
    enabled, primary=True  -> remote authoritative, embedded mirrored as backup.
    """

    base_url: str = ""
    service_key: str = ""
    schema: str = "public"
    enabled: bool = False
    primary: bool = False
    timeout: float = 10.0

    @classmethod
    def from_config(cls, config) -> "SyncConfig":
        base_url = str(config.get("REMOTE_STORE_URL") or "").strip().rstrip("/")
        service_key = str(config.get("REMOTE_STORE_KEY") or "").strip()
        schema = str(config.get("REMOTE_STORE_SCHEMA") or "public").strip() or "public"
        enabled = bool(base_url and service_key) and not is_truthy(config.get("REMOTE_SYNC_DISABLED"))
        primary_raw = config.get("REMOTE_PRIMARY")
        primary = enabled and not is_falsey("true" if primary_raw is None else primary_raw)
        try:
            timeout = float(config.get("REMOTE_TIMEOUT_SECONDS") or 10)
        except (TypeError, ValueError):
            timeout = 10.0
        return cls(base_url=base_url, service_key=service_key, schema=schema,
                   enabled=enabled, primary=primary, timeout=timeout)

    @property
    def has_credentials(self) -> bool:
        return bool(self.base_url and self.service_key)

    def require_credentials(self) -> "SyncConfig":
        if not self.has_credentials:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        return self

    @property
    def mode(self) -> str:
        if not self.enabled:
            return "local-only"
        return "remote-primary" if self.primary else "local-primary"
