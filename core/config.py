"""
应用配置（pydantic-settings v2）

支付提供方的配置在 core/settings.py（PAYMENT__ 前缀）。
"""
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    # Celery broker / result backend
    url: Optional[str] = None


class Settings(BaseSettings):
    PROJECT_NAME: str = Field(default="Checkout Payments")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")

    redis: RedisSettings = Field(default_factory=RedisSettings)

    CORS_ORIGINS: list[str] = Field(default=["http://localhost:3000", "http://localhost:8000"])

    # 请求体日志（卡号等字段始终脱敏）
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = Field(default=True)
    LOG_REQUEST_BODY_MAX_BYTES: int = Field(default=2048)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, v):
        """支持逗号分隔的字符串"""
        if isinstance(v, str) and not v.strip().startswith("["):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


settings = Settings()
