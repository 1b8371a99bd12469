"""Environment-based configuration for the change governor process.

Per-merchant policy (AutomationSettings) lives in the policy store and is
never read from the environment.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

from change_governor.actions.retry import RetryConfig


class GovernorSettings(BaseSettings):
    """Process configuration.

    All settings can be overridden via environment variables with the
    GOVERNOR_ prefix. For example:
        GOVERNOR_DB_PATH=/var/lib/governor/governor.db
        GOVERNOR_PLATFORM_BASE_URL=https://platform.internal
    """

    # Persistence
    db_path: Path = Path.home() / ".change-governor" / "governor.db"

    # External calls
    execution_timeout_seconds: float = 30.0
    bulk_concurrency: int = 5

    # Evaluation loop
    evaluation_interval_seconds: float = 300.0

    # Commerce platform client
    platform_base_url: str = "http://localhost:8080"
    platform_api_token: str | None = None

    # Transient error retries
    retry_max_attempts: int = 3
    retry_min_wait_seconds: float = 0.5
    retry_max_wait_seconds: float = 8.0

    model_config = {"env_prefix": "GOVERNOR_"}

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            min_wait_seconds=self.retry_min_wait_seconds,
            max_wait_seconds=self.retry_max_wait_seconds,
        )

    def ensure_db_dir(self) -> Path:
        """Create the database directory if needed and return the db path."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return self.db_path
