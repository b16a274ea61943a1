import os
import socket


class Settings:
    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except Exception:
            return default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_path = os.getenv("POS_DB_PATH", "pos.sqlite")
        # Remote source of truth (PostgREST-style API). Empty means "always offline".
        self.api_base_url = (os.getenv("POS_API_BASE_URL") or "").strip().rstrip("/")
        self.api_key = (os.getenv("POS_API_KEY") or "").strip()
        self.device_id = (os.getenv("POS_DEVICE_ID") or "").strip() or socket.gethostname()
        self.tenant_id = (os.getenv("POS_TENANT_ID") or "").strip()
        # Hard timeout on every outbound remote call; the core itself has none.
        self.remote_timeout = self._env_float("POS_REMOTE_TIMEOUT", 10.0)
        self.sync_interval = self._env_float("POS_SYNC_INTERVAL", 15.0)
        self.default_tax_rate = self._env_float("POS_DEFAULT_TAX_RATE", 5.0)
        self.default_tax_mode = (os.getenv("POS_DEFAULT_TAX_MODE") or "inclusive").strip().lower() or "inclusive"
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
