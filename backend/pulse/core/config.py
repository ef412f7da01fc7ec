import os
from typing import List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Pulse"
    VERSION: str = "1.0.0"
    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "exprsn-pulse")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # ==========================================
    # 服务监听 / TLS 配置
    # ==========================================
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3012"))
    TLS_ENABLED: bool = os.getenv("TLS_ENABLED", "false").lower() == "true"
    TLS_CERT_PATH: Optional[str] = os.getenv("TLS_CERT_PATH")
    TLS_KEY_PATH: Optional[str] = os.getenv("TLS_KEY_PATH")

    # CORS settings
    CORS_ORIGIN: Union[str, List[str]] = os.getenv("CORS_ORIGIN", "*")

    @field_validator("CORS_ORIGIN", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str):
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return v
        raise ValueError(v)

    # ==========================================
    # 认证配置
    # ==========================================
    # SECRET_KEY 同时用于会话签名和 JWT
    SECRET_KEY: str = os.getenv("SECRET_KEY", "development_secret_key")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
    SERVICE_TOKEN_EXPIRE_SECONDS: int = int(os.getenv("SERVICE_TOKEN_EXPIRE_SECONDS", "300"))
    AUTH_REQUIRED: bool = os.getenv("AUTH_REQUIRED", "true").lower() == "true"

    # Database settings
    # DATABASE_URL 优先，未配置时使用 MySQL 连接参数拼接
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
    MYSQL_SERVER: str = os.getenv("MYSQL_SERVER", "localhost")
    MYSQL_USER: str = os.getenv("MYSQL_USER", "root")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "pulse")
    MYSQL_PORT: str = os.getenv("MYSQL_PORT", "3306")

    # ==========================================
    # Redis 缓存 / 发布订阅配置
    # ==========================================
    REDIS_ENABLED: bool = os.getenv("REDIS_ENABLED", "false").lower() == "true"
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REALTIME_CHANNEL: str = os.getenv("REALTIME_CHANNEL", "pulse:realtime")
    CACHE_MAX_ENTRIES: int = int(os.getenv("CACHE_MAX_ENTRIES", "1000"))

    # 各类缓存 TTL (秒)
    CACHE_TTL_DASHBOARD: int = int(os.getenv("CACHE_TTL_DASHBOARD", "300"))
    CACHE_TTL_VISUALIZATION: int = int(os.getenv("CACHE_TTL_VISUALIZATION", "600"))
    CACHE_TTL_QUERY: int = int(os.getenv("CACHE_TTL_QUERY", "180"))
    CACHE_TTL_DATASET: int = int(os.getenv("CACHE_TTL_DATASET", "600"))
    CACHE_TTL_REPORT: int = int(os.getenv("CACHE_TTL_REPORT", "300"))

    # 数据保留天数
    RETENTION_RAW_EVENTS_DAYS: int = int(os.getenv("RETENTION_RAW_EVENTS_DAYS", "90"))
    RETENTION_AGGREGATES_DAYS: int = int(os.getenv("RETENTION_AGGREGATES_DAYS", "365"))

    # ==========================================
    # 外部调用超时配置 (秒)
    # ==========================================
    SQL_QUERY_TIMEOUT: float = float(os.getenv("SQL_QUERY_TIMEOUT", "30"))
    REST_REQUEST_TIMEOUT: float = float(os.getenv("REST_REQUEST_TIMEOUT", "30"))
    SOURCE_PROBE_TIMEOUT: float = float(os.getenv("SOURCE_PROBE_TIMEOUT", "5"))
    SERVICE_HEARTBEAT_TIMEOUT: float = float(os.getenv("SERVICE_HEARTBEAT_TIMEOUT", "3"))
    WEBHOOK_TIMEOUT: float = float(os.getenv("WEBHOOK_TIMEOUT", "10"))

    # ==========================================
    # 实时推送 / 仪表盘渲染配置
    # ==========================================
    REALTIME_DEFAULT_REFRESH_SECONDS: int = int(os.getenv("REALTIME_DEFAULT_REFRESH_SECONDS", "30"))
    REALTIME_SEND_QUEUE_SIZE: int = int(os.getenv("REALTIME_SEND_QUEUE_SIZE", "16"))
    DASHBOARD_RENDER_CONCURRENCY: int = int(os.getenv("DASHBOARD_RENDER_CONCURRENCY", "5"))
    DATASET_CLEANUP_INTERVAL: int = int(os.getenv("DATASET_CLEANUP_INTERVAL", "3600"))

    # ==========================================
    # 定时任务配置
    # ==========================================
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    SCHEDULER_INIT_RETRY_SECONDS: int = int(os.getenv("SCHEDULER_INIT_RETRY_SECONDS", "30"))

    # SMTP 邮件投递配置
    SMTP_HOST: str = os.getenv("SMTP_HOST", "localhost")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM: str = os.getenv("SMTP_FROM", "pulse@localhost")
    SMTP_USE_TLS: bool = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # 报表对象存储目录
    OBJECT_STORE_DIR: str = os.getenv("OBJECT_STORE_DIR", "./storage/reports")

    # ==========================================
    # 服务注册中心配置 (可选，不可用时不影响启动)
    # ==========================================
    SERVICE_REGISTRY_URL: Optional[str] = os.getenv("SERVICE_REGISTRY_URL")
    SERVICE_HEARTBEAT_INTERVAL: int = int(os.getenv("SERVICE_HEARTBEAT_INTERVAL", "30"))
    SERVICE_PUBLIC_URL: Optional[str] = os.getenv("SERVICE_PUBLIC_URL")

    @property
    def SQLALCHEMY_DATABASE_URL(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+pymysql://{self.MYSQL_USER}:{self.MYSQL_PASSWORD}@"
            f"{self.MYSQL_SERVER}:{self.MYSQL_PORT}/{self.MYSQL_DB}"
        )

    class Config:
        case_sensitive = True
        env_file = ".env"
        extra = "ignore"


settings = Settings()
