"""应用配置与环境变量加载逻辑。"""

import json
from functools import lru_cache
from typing import Iterable, List, Optional

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """集中式配置定义，便于后续依赖注入与测试覆盖。"""

    app_name: str = Field(default="Meeting Entitlements API", alias="APP_NAME")
    app_description: str = Field(
        default="Subscription and trial entitlement resolution for meeting recording",
        alias="APP_DESCRIPTION",
    )
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"], alias="CORS_ALLOW_ORIGINS")
    log_to_file: bool = Field(default=False, alias="LOG_TO_FILE")
    log_file_path: str = Field(default="logs/app.log", alias="LOG_FILE_PATH")

    supabase_url: Optional[AnyHttpUrl] = Field(default=None, alias="SUPABASE_URL")
    supabase_project_id: Optional[str] = Field(default=None, alias="SUPABASE_PROJECT_ID")
    supabase_service_role_key: Optional[str] = Field(default=None, alias="SUPABASE_SERVICE_ROLE_KEY")
    supabase_jwt_secret: Optional[str] = Field(default=None, alias="SUPABASE_JWT_SECRET")
    supabase_audience: Optional[str] = Field(default="authenticated", alias="SUPABASE_AUDIENCE")
    subscriptions_table: str = Field(default="subscriptions", alias="SUBSCRIPTIONS_TABLE")
    profiles_table: str = Field(default="profiles", alias="PROFILES_TABLE")

    jwt_allowed_algorithms: List[str] = Field(default=["HS256"], alias="JWT_ALLOWED_ALGORITHMS")
    token_leeway_seconds: int = Field(default=30, alias="JWT_LEEWAY_SECONDS")

    # 订阅/试用策略
    free_trial_days: int = Field(default=7, alias="FREE_TRIAL_DAYS")
    freshness_threshold_seconds: int = Field(default=300, alias="ENTITLEMENT_FRESHNESS_SECONDS")
    server_verification_cache_seconds: int = Field(default=300, alias="SERVER_VERIFICATION_CACHE_SECONDS")

    # Polar（支付服务商）
    polar_api_base_url: AnyHttpUrl = Field(default="https://api.polar.sh", alias="POLAR_API_BASE_URL")
    polar_access_token: Optional[str] = Field(default=None, alias="POLAR_ACCESS_TOKEN")
    polar_webhook_secret: Optional[str] = Field(default=None, alias="POLAR_WEBHOOK_SECRET")
    webhook_tolerance_seconds: int = Field(default=300, alias="WEBHOOK_TOLERANCE_SECONDS")

    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    verify_timeout_seconds: float = Field(default=10.0, alias="VERIFY_TIMEOUT_SECONDS")
    background_verify_timeout_seconds: float = Field(default=5.0, alias="BACKGROUND_VERIFY_TIMEOUT_SECONDS")
    event_stream_heartbeat_seconds: float = Field(default=15.0, alias="SSE_HEARTBEAT_SECONDS")

    # 客户端（变更通道重连 + 服务地址）
    entitlement_api_base_url: str = Field(default="http://localhost:8000", alias="ENTITLEMENT_API_BASE_URL")
    channel_reconnect_initial_seconds: float = Field(default=1.0, alias="CHANNEL_RECONNECT_INITIAL_SECONDS")
    channel_reconnect_max_seconds: float = Field(default=30.0, alias="CHANNEL_RECONNECT_MAX_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        enable_decoding=False,
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> List[str]:
        """支持逗号分隔的字符串或直接传入列表。"""
        if value is None:
            return ["*"]
        if isinstance(value, str):
            text = value.strip()
            # 兼容 JSON 数组写法：["*"]
            if text.startswith("["):
                try:
                    data = json.loads(text)
                    if isinstance(data, list):
                        items = [str(item).strip() for item in data if str(item).strip()]
                        return items or ["*"]
                except json.JSONDecodeError:
                    pass
            items = [item.strip() for item in text.split(",") if item.strip()]
            return items or ["*"]
        if isinstance(value, Iterable):
            return [str(item).strip() for item in value if str(item).strip()]
        return ["*"]

    @field_validator("jwt_allowed_algorithms", mode="before")
    @classmethod
    def _split_algorithms(cls, value: object) -> List[str]:
        """支持逗号分隔或列表形式配置允许的 JWT 算法。"""
        if value in (None, "", []):
            return ["HS256"]
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, Iterable):
            return [str(item).strip() for item in value if str(item).strip()]
        return ["HS256"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """使用 LRU 缓存避免 BaseSettings 反复解析。"""

    return Settings()
