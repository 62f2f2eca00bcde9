"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent


@dataclass(frozen=True)
class Settings:
    """Service configuration (immutable)."""
    data_dir: Path = PROJECT_ROOT / "data"
    database_url: Optional[str] = None
    build_timeout_s: float = 60.0
    hook_timeout_s: float = 5.0
    max_step_output: int = 1_000_000
    worker_start_method: Literal["spawn", "fork", "forkserver"] = "spawn"
    api_key: Optional[str] = None  # Never logged
    log_level: str = "INFO"

    @property
    def effective_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file inside data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'ci.db'}"

    @property
    def auth_enabled(self) -> bool:
        """API key auth is only enforced when a key is configured."""
        return bool(self.api_key)


def get_settings() -> Settings:
    """Load service configuration from environment."""
    start_method = os.getenv("CI_WORKER_START_METHOD", "spawn").lower()
    if start_method not in ("spawn", "fork", "forkserver"):
        start_method = "spawn"

    return Settings(
        data_dir=Path(os.getenv("CI_DATA_DIR", str(PROJECT_ROOT / "data"))),
        database_url=os.getenv("CI_DATABASE_URL") or None,
        build_timeout_s=float(os.getenv("CI_BUILD_TIMEOUT_S", "60")),
        hook_timeout_s=float(os.getenv("CI_HOOK_TIMEOUT_S", "5")),
        max_step_output=int(os.getenv("CI_MAX_STEP_OUTPUT", "1000000")),
        worker_start_method=start_method,  # type: ignore
        api_key=os.getenv("CI_API_KEY") or None,
        log_level=os.getenv("CI_LOG_LEVEL", "INFO"),
    )
