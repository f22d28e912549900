"""Engine configuration loaded from environment variables.

Settings for retry/backoff, sync behaviour, offline replay and the SQL
document store. Uses pydantic-settings for validation and .env file support.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
_INSECURE_DEFAULT_PASSWORD = "cvsession_dev_password"  # nosec B105

_VALID_STRATEGIES = frozenset({"local_wins", "remote_wins", "merge", "user_choice"})


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    environment: str = "development"

    # Session schema
    session_schema_version: str = "1.0.0"

    # Processing queue
    job_max_retries: int = 3
    job_retry_base_delay_ms: int = 1000
    job_retry_max_delay_ms: int = 30_000
    job_default_timeout_ms: int | None = None
    worker_poll_interval_seconds: float = 1.0

    # Offline replay
    offline_max_retries: int = 3
    offline_retry_base_delay_ms: int = 1000
    offline_retry_max_delay_ms: int = 30_000
    offline_failure_history: int = 100

    # Sync
    # One of: local_wins, remote_wins, merge, user_choice
    sync_conflict_strategy: str = "merge"
    sync_max_push_attempts: int = 3
    auto_sync: bool = True

    # Database (SQL document store adapter)
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "cvsession"
    database_user: str = "cvsession_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_engine_limits(self) -> "Settings":
        """Validate retry, backoff and sync settings.

        Checks:
        - Retry budgets are non-negative
        - Backoff delays are positive and base <= cap
        - Conflict strategy is a known strategy
        - Push attempts is at least 1
        - Database password is not the default in production
        """
        if self.job_max_retries < 0 or self.offline_max_retries < 0:
            msg = (
                "JOB_MAX_RETRIES and OFFLINE_MAX_RETRIES cannot be negative. "
                f"Got: {self.job_max_retries}, {self.offline_max_retries}"
            )
            raise ValueError(msg)

        if self.job_retry_base_delay_ms <= 0 or self.job_retry_max_delay_ms <= 0:
            msg = "Retry delays must be positive."
            raise ValueError(msg)
        if self.job_retry_base_delay_ms > self.job_retry_max_delay_ms:
            msg = (
                "JOB_RETRY_BASE_DELAY_MS must not exceed JOB_RETRY_MAX_DELAY_MS. "
                f"Got: {self.job_retry_base_delay_ms} > {self.job_retry_max_delay_ms}"
            )
            raise ValueError(msg)
        if self.offline_retry_base_delay_ms <= 0 or self.offline_retry_max_delay_ms <= 0:
            msg = "Retry delays must be positive."
            raise ValueError(msg)
        if self.offline_retry_base_delay_ms > self.offline_retry_max_delay_ms:
            msg = (
                "OFFLINE_RETRY_BASE_DELAY_MS must not exceed "
                "OFFLINE_RETRY_MAX_DELAY_MS. Got: "
                f"{self.offline_retry_base_delay_ms} > {self.offline_retry_max_delay_ms}"
            )
            raise ValueError(msg)
        if self.offline_failure_history < 1:
            msg = "OFFLINE_FAILURE_HISTORY must be at least 1."
            raise ValueError(msg)

        if self.sync_conflict_strategy not in _VALID_STRATEGIES:
            msg = (
                f"SYNC_CONFLICT_STRATEGY must be one of {sorted(_VALID_STRATEGIES)}. "
                f"Got: {self.sync_conflict_strategy!r}"
            )
            raise ValueError(msg)

        if self.sync_max_push_attempts < 1:
            msg = "SYNC_MAX_PUSH_ATTEMPTS must be at least 1."
            raise ValueError(msg)

        if (
            self.environment == "production"
            and self.database_password == _INSECURE_DEFAULT_PASSWORD
        ):
            msg = (
                "Cannot use default database password in production. "
                "Set DATABASE_PASSWORD environment variable to a secure value."
            )
            raise ValueError(msg)

        return self


settings = Settings()
