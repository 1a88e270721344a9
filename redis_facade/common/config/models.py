from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class RedisConfig(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    pool_size: Optional[int] = None
    tls: bool = False

    @property
    def url(self) -> str:
        scheme = "rediss" if self.tls else "redis"
        auth = ""
        if self.password:
            auth = f"{self.username or ''}:{self.password}@"
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"

    model_config = SettingsConfigDict(env_prefix="REDIS_")

class LoggingConfig(BaseSettings):
    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="LOG_")

class LockConfig(BaseSettings):
    # seconds; 0 means the lock never expires on its own
    default_ttl: int = 0

    model_config = SettingsConfigDict(env_prefix="LOCK_")

class QueueConfig(BaseSettings):
    default_ttl: int = 30

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

class ThrottleConfig(BaseSettings):
    default_ttl: int = 1
    # extra seconds cached results outlive the window, covers clock skew
    cache_grace: int = 5

    model_config = SettingsConfigDict(env_prefix="THROTTLE_")

class MessageQueueConfig(BaseSettings):
    poll_timeout: float = 1.0
    retry_delay: float = 1.0

    model_config = SettingsConfigDict(env_prefix="MESSAGE_QUEUE_")

class ThrottleQueueConfig(BaseSettings):
    interval: float = 1.0
    concurrency: int = 1
    lock_ttl: int = 5
    lookback: int = 604800

    model_config = SettingsConfigDict(env_prefix="THROTTLE_QUEUE_")

class FacadeConfig(BaseSettings):
    name: str = "redis-facade"
    node_id: str = "node-1"

    redis: RedisConfig = RedisConfig()
    logging: LoggingConfig = LoggingConfig()
    lock: LockConfig = LockConfig()
    queue: QueueConfig = QueueConfig()
    throttle: ThrottleConfig = ThrottleConfig()
    message_queue: MessageQueueConfig = MessageQueueConfig()
    throttle_queue: ThrottleQueueConfig = ThrottleQueueConfig()

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__")
