from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "job-board-auth"

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    REDIS_URL: str = ""
    INTERNAL_SERVICE_TOKEN: str = "change_me_internal_service_token"

    EMAIL_PROVIDER: str = "resend"  # resend | dummy
    RESEND_API_KEY: str = ""
    RESEND_API_URL: str = "https://api.resend.com"
    EMAIL_FROM: str = ""

    OTP_TTL_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 3
    OTP_SWEEP_INTERVAL_SECONDS: float = 60.0
    OTP_PROBE_TIMEOUT_SECONDS: float = 8.0
    OTP_SEND_TIMEOUT_SECONDS: float = 30.0
    OTP_SEND_TIMEOUT_PRODUCTION_SECONDS: float = 12.0
    OTP_SEND_MAX_ATTEMPTS: int = 3
    OTP_SEND_RETRY_DELAY_SECONDS: float = 2.0
    OTP_DEV_MODE: bool = False

    OTP_RATE_LIMIT_WINDOW_SECONDS: int = 300
    OTP_SEND_RATE_LIMIT: int = 5
    OTP_VERIFY_RATE_LIMIT: int = 20

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return str(self.APP_ENV or "").strip().lower() == "production"

    @property
    def otp_send_timeout_seconds(self) -> float:
        if self.is_production:
            return float(self.OTP_SEND_TIMEOUT_PRODUCTION_SECONDS)
        return float(self.OTP_SEND_TIMEOUT_SECONDS)

settings = Settings()
