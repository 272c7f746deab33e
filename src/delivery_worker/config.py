from pydantic_settings import BaseSettings, SettingsConfigDict

from delivery_shared.enums import Channel

from delivery_worker.resilience import CircuitBreakerConfig, RetryConfig


class CeleryConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CELERY_")

    broker_url: str = "redis://localhost:6379/0"
    # Must exceed the longest global retry timeout, or Redis redelivers
    # a job that is still being worked on.
    visibility_timeout_seconds: int = 3600


class DeliveryConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DELIVERY_")

    log_level: str = "INFO"
    worker_concurrency: int = 4
    reminder_sweep_limit: int = 100
    reminder_sweep_interval_seconds: int = 60
    reminder_expiration_hours: int = 24
    reminder_retry_backoff_seconds: list[int] = [300, 900, 3600]
    stale_sending_minutes: int = 30


class ResilienceConfig(BaseSettings):
    """Breaker and retry tuning for one protected resource."""

    failure_threshold: int = 5
    timeout_seconds: float = 10.0
    reset_timeout_seconds: float = 60.0

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    global_timeout_seconds: float | None = 300.0

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            timeout_seconds=self.timeout_seconds,
            reset_timeout_seconds=self.reset_timeout_seconds,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay_seconds=self.initial_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
            jitter_enabled=self.jitter_enabled,
            global_timeout_seconds=self.global_timeout_seconds,
        )


class EmailResilienceConfig(ResilienceConfig):
    model_config = SettingsConfigDict(env_prefix="EMAIL_")

    failure_threshold: int = 3
    timeout_seconds: float = 30.0
    reset_timeout_seconds: float = 300.0
    max_retries: int = 3
    initial_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    global_timeout_seconds: float | None = 300.0


class SmsResilienceConfig(ResilienceConfig):
    model_config = SettingsConfigDict(env_prefix="SMS_")

    failure_threshold: int = 3
    timeout_seconds: float = 15.0
    reset_timeout_seconds: float = 180.0
    max_retries: int = 2
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 3.0
    global_timeout_seconds: float | None = 60.0


class ChatResilienceConfig(ResilienceConfig):
    model_config = SettingsConfigDict(env_prefix="CHAT_")

    failure_threshold: int = 4
    timeout_seconds: float = 25.0
    reset_timeout_seconds: float = 240.0
    max_retries: int = 3
    initial_delay_seconds: float = 1.5
    max_delay_seconds: float = 20.0
    backoff_multiplier: float = 2.5
    global_timeout_seconds: float | None = 120.0


class StoreResilienceConfig(BaseSettings):
    """Store writes are guarded by a breaker only; the worker never retries them."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    failure_threshold: int = 3
    timeout_seconds: float = 5.0
    reset_timeout_seconds: float = 60.0

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            timeout_seconds=self.timeout_seconds,
            reset_timeout_seconds=self.reset_timeout_seconds,
        )


_CHANNEL_CONFIGS: dict[str, type[ResilienceConfig]] = {
    Channel.EMAIL: EmailResilienceConfig,
    Channel.SMS: SmsResilienceConfig,
    Channel.CHAT: ChatResilienceConfig,
}


def resilience_config_for(channel: str) -> ResilienceConfig:
    """Load the resilience settings for *channel* from the environment."""
    config_cls = _CHANNEL_CONFIGS.get(channel)
    if config_cls is None:
        raise ValueError(f"Unknown channel: {channel!r}")
    return config_cls()
