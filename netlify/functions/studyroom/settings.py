"""
Function settings (Pydantic Settings).
"""
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env at the repository root
_env_path = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=_env_path, env_prefix="STUDYROOM_", extra="ignore")

    # Apps Script web-app URL backing the reservation/attendance sheets
    script_url: str = ""
    admin_password: str = "admin"
    checkin_password: str = "checkin"
    refresh_seconds: float = 30.0
    timezone: str = "Asia/Seoul"
    http_timeout: float = 20.0
    grace_minutes: int = 30
    attendance_location: str = "자기주도학습실"

    @field_validator("script_url", "admin_password", "checkin_password", mode="after")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return (v or "").strip()


settings = Settings()
