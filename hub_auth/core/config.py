from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "hub-auth"
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8081"

    DATABASE_URL: str = "sqlite+pysqlite:///./hub_auth.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    HUB_APP_ID: str = "HUB"
    HUB_ALLOWED_APP_IDS: str = ""  # comma separated; empty allows any well-formed id
    HUB_BRAND_NAME: str = "NahlHub"

    # Shared with the hub backend; signs stored digests and backend payloads.
    OTP_HMAC_SECRET: str = ""
    OTP_LENGTH: int = 4
    OTP_TTL_SECONDS: int = 600
    OTP_MAX_ATTEMPTS: int = 5
    OTP_COOLDOWN_SECONDS: int = 30
    OTP_RECORD_GRACE_SECONDS: int = 300
    OTP_STORE_BACKEND: str = "memory"  # memory | redis | database
    OTP_RATE_LIMIT_WINDOW_SECONDS: int = 300
    OTP_ISSUE_RATE_LIMIT: int = 8
    OTP_VERIFY_RATE_LIMIT: int = 20
    OTP_MESSAGE_TEMPLATE: str = "رمز الدخول: {code}\n{brand}"

    PHONE_COUNTRY_CODE: str = "966"
    PHONE_NATIONAL_LENGTH: int = 9
    PHONE_MOBILE_PREFIX: str = "5"

    WHATSAPP_PROVIDER: str = "dummy"  # dummy | greenapi
    GREENAPI_API_BASE: str = "https://api.green-api.com"
    GREENAPI_INSTANCE_ID: str = ""
    GREENAPI_TOKEN: str = ""
    WHATSAPP_TIMEOUT_SECONDS: float = 15.0

    HUB_BACKEND_URL: str = ""
    HUB_BACKEND_TIMEOUT_SECONDS: float = 15.0

    HUB_JWT_SECRET: str = "change_me_hub"
    HUB_JWT_TTL_DAYS: int = 7
    HUB_COOKIE_NAME: str = "hub_session"
    HUB_COOKIE_SECURE: bool = False

    INTERNAL_SERVICE_TOKEN: str = "change_me_internal_service_token"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def allowed_app_ids(self) -> set[str]:
        return {a.strip() for a in self.HUB_ALLOWED_APP_IDS.split(",") if a.strip()}

settings = Settings()
