"""Configuration settings for the Cream billing service.

Wraps environment variables and provides defaults.
"""

from typing import Optional

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class.

    Attributes:
    ----------
        PROJECT_NAME (str): The name of the project.
        LOCAL_DEVELOPMENT (bool): Whether the application is running locally.
        ENVIRONMENT (str): The deployment environment (local, dev, test, prod).
        LOG_LEVEL (str): The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        STRIPE_SECRET_KEY (str): The Stripe secret API key.
        STRIPE_API_VERSION (Optional[str]): Pinned Stripe API version.
        BIG_POPPA_HOST (str): Base URL of the big-poppa organization registry.
        BIG_POPPA_TIMEOUT (float): Request timeout for big-poppa calls, in seconds.
        REDIS_HOST (str): The Redis server hostname.
        REDIS_PORT (int): The Redis server port.
        REDIS_PASSWORD (Optional[str]): The Redis password (if authentication is enabled).
        REDIS_DB (int): The Redis database number.
        EVENT_CHANNEL_PREFIX (str): Namespace for published domain events.
        TASK_QUEUE_PREFIX (str): Namespace for enqueued tasks.
        TRIAL_ENDING_LOOKAHEAD_HOURS (int): How far ahead a trial counts as "ending".
        RECONCILIATION_LOOKBACK_HOURS (int): Overlapping look-back for trial checks.
        PAYMENT_FAILURE_LOOKBACK_HOURS (int): How recently an org must have entered
            its grace period to be considered by the payment failure check.
        RECONCILIATION_MAX_CONCURRENCY (int): Max concurrent remote calls per stage.
        TRIAL_ENDING_CHECK_CRON (str): Cron schedule for the trial ending check.
        TRIAL_ENDED_CHECK_CRON (str): Cron schedule for the trial ended check.
        PAYMENT_FAILED_CHECK_CRON (str): Cron schedule for the payment failure check.
        CHECK_TIMEOUT_SECONDS (float): Wall-clock limit for a single check run.
        SCHEDULER_CHECK_INTERVAL (float): Seconds between scheduler loop iterations.
        WORKER_POLL_TIMEOUT (int): Seconds a worker blocks waiting for a task.
    """

    PROJECT_NAME: str = "Cream"
    LOCAL_DEVELOPMENT: bool = False
    ENVIRONMENT: str = "local"

    # Logging configuration
    LOG_LEVEL: str = "INFO"

    # Stripe configuration
    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_VERSION: Optional[str] = None

    # Organization registry
    BIG_POPPA_HOST: str = "http://localhost:7788"
    BIG_POPPA_TIMEOUT: float = 20.0

    # Redis configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0
    EVENT_CHANNEL_PREFIX: str = "events"
    TASK_QUEUE_PREFIX: str = "tasks"

    # Reconciliation windows
    TRIAL_ENDING_LOOKAHEAD_HOURS: int = 72
    RECONCILIATION_LOOKBACK_HOURS: int = 24
    PAYMENT_FAILURE_LOOKBACK_HOURS: int = 24
    RECONCILIATION_MAX_CONCURRENCY: int = 10

    # Scheduling
    TRIAL_ENDING_CHECK_CRON: str = "0 * * * *"
    TRIAL_ENDED_CHECK_CRON: str = "15 * * * *"
    PAYMENT_FAILED_CHECK_CRON: str = "30 * * * *"
    CHECK_TIMEOUT_SECONDS: float = 600.0
    SCHEDULER_CHECK_INTERVAL: float = 30.0
    WORKER_POLL_TIMEOUT: int = 5

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("BIG_POPPA_HOST", mode="before")
    def strip_trailing_slash(cls, v: str, info: ValidationInfo) -> str:
        """Normalize the big-poppa host so paths can be appended safely.

        Args:
            v: The configured host.
            info: Validation context containing all field values.
        """
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @field_validator(
        "RECONCILIATION_MAX_CONCURRENCY",
        "TRIAL_ENDING_LOOKAHEAD_HOURS",
        "RECONCILIATION_LOOKBACK_HOURS",
        "PAYMENT_FAILURE_LOOKBACK_HOURS",
    )
    def validate_positive(cls, v: int, info: ValidationInfo) -> int:
        """Reject zero or negative window and concurrency settings.

        Raises:
        ------
            ValueError: If the value is not strictly positive.
        """
        if v <= 0:
            raise ValueError(f"{info.field_name} must be greater than zero")
        return v

    @property
    def big_poppa_url(self) -> str:
        """The organization registry base URL.

        Returns:
            str: The big-poppa URL.
        """
        return self.BIG_POPPA_HOST

    @property
    def redis_url(self) -> str:
        """The Redis connection URL.

        Returns:
            str: The Redis URL, including the password when one is set.
        """
        if self.REDIS_PASSWORD:
            return (
                f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:"
                f"{self.REDIS_PORT}/{self.REDIS_DB}"
            )
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
