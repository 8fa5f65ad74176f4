from typing import Optional
from urllib.parse import quote
from pydantic import Field
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
        if self.username or self.password:
            auth = quote(self.username or "", safe="")
            if self.password:
                auth += f":{quote(self.password, safe='')}"
            auth += "@"
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"

    model_config = SettingsConfigDict(env_prefix="REDIS_")

class LoggingConfig(BaseSettings):
    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="LOG_")

class LockConfig(BaseSettings):
    default_lease_ms: int = 30000
    min_lease_ms: int = 1000
    max_lease_ms: int = 300000
    max_retry_attempts: int = 10
    max_retry_delay_ms: int = 5000
    # fraction of the lease after which auto-extension fires
    extend_threshold: float = 0.8

    model_config = SettingsConfigDict(env_prefix="LOCK_")

class PresenceConfig(BaseSettings):
    ttl_secs: int = 60
    heartbeat_secs: int = 30

    model_config = SettingsConfigDict(env_prefix="PRESENCE_")

class PubSubConfig(BaseSettings):
    max_events: int = 100
    max_chat_messages: int = 200
    history_ttl_secs: int = 3600
    max_events_per_poll: int = 50

    model_config = SettingsConfigDict(env_prefix="PUBSUB_")

class QueueConfig(BaseSettings):
    default_priority: int = 0
    default_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 300000
    processing_timeout_ms: int = 300000
    completed_ttl_secs: int = 3600
    failed_ttl_secs: int = 86400
    poll_interval: float = 1.0

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

class ApiConfig(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8080
    prefix: str = "/api/coordination"

    model_config = SettingsConfigDict(env_prefix="API_")

class AppConfig(BaseSettings):
    name: str = "arcadia"
    node_id: str = "node-1"
    # "redis" or "memory"
    store_backend: str = "redis"

    redis: RedisConfig = Field(default_factory=RedisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = SettingsConfigDict(env_prefix="ARCADIA_")
