"""Agent configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from ``GEOBEACON_*`` environment variables (or .env file)."""

    # --- App ---
    app_name: str = "geobeacon"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | production

    # --- Local state ---
    state_dir: Path = Path.home() / ".geobeacon"
    credential_path: Path | None = None  # defaults to <state_dir>/credential.json
    agent_config_path: Path | None = None  # defaults to bundled agent_config.yaml

    # --- Firebase ---
    firebase_api_key: str = ""
    firebase_project_id: str = ""
    http_timeout_seconds: float = 30.0

    # --- Backends ---
    location_source: str = "termux"  # termux | fixed
    telemetry_sink: str = "firestore"  # firestore | memory
    job_backend: str = "termux"  # termux | crontab
    permission_backend: str = "termux"  # termux | static
    notification_backend: str = "termux"  # termux | log

    # --- Location ---
    termux_location_provider: str = "gps"  # gps | network | passive
    termux_location_request: str = "once"  # once | last | updates
    location_timeout_seconds: float | None = None  # None = wait for the OS
    fixed_latitude: float = 0.0
    fixed_longitude: float = 0.0

    # --- Foreground service ---
    stop_grace_seconds: float = 5.0

    model_config = {"env_prefix": "GEOBEACON_", "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_credential_path(self) -> Path:
        return self.credential_path or self.state_dir / "credential.json"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "service.pid"

    @property
    def socket_path(self) -> Path:
        return self.state_dir / "service.sock"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "geobeacon.log"


@lru_cache
def get_settings() -> Settings:
    return Settings()
