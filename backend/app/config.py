"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from ``AUTOMATE_*`` environment variables."""

    APP_NAME: str = "automate"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Storage
    DATA_DIR: str = "~/.automate"
    DATABASE_URL: str = ""  # empty -> sqlite file under DATA_DIR
    SQLALCHEMY_ECHO: bool = False
    PRESETS_DIR: str = ""
    CREDENTIALS_FILE: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text
    LOG_FILE: str = ""

    # Daemon
    DAEMON_POLL_INTERVAL: float = 30.0
    DAEMON_SHUTDOWN_GRACE: float = 30.0
    DAEMON_LOCK_FILE: str = ""

    # Step defaults
    SHELL_TIMEOUT: float = 300.0
    WHILE_MAX_ITERATIONS: int = 100
    HTTP_TIMEOUT: float = 30.0
    OUTPUT_MAX_CHARS: int = 65536

    @property
    def data_path(self) -> Path:
        return Path(self.DATA_DIR).expanduser()

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL, defaulting to ``<DATA_DIR>/automate.db``."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite+aiosqlite:///{self.data_path / 'automate.db'}"

    @property
    def presets_path(self) -> Path:
        if self.PRESETS_DIR:
            return Path(self.PRESETS_DIR).expanduser()
        return self.data_path / "presets"

    @property
    def credentials_path(self) -> Path:
        if self.CREDENTIALS_FILE:
            return Path(self.CREDENTIALS_FILE).expanduser()
        return self.data_path / "credentials.json"

    @property
    def log_path(self) -> Path:
        if self.LOG_FILE:
            return Path(self.LOG_FILE).expanduser()
        return self.data_path / "logs" / "daemon.log"

    @property
    def lock_path(self) -> Path:
        if self.DAEMON_LOCK_FILE:
            return Path(self.DAEMON_LOCK_FILE).expanduser()
        return self.data_path / "daemon.pid"

    def ensure_dirs(self) -> None:
        """Create the data, presets and log directories if missing."""
        self.data_path.mkdir(parents=True, exist_ok=True)
        self.presets_path.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    class Config:
        """Pydantic config."""

        env_prefix = "AUTOMATE_"
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
