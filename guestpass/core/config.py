from datetime import time
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), case_sensitive=False)

    APP_NAME: str = "Guestpass Backend"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    DATABASE_URL: str = "sqlite:///./guestpass.db"

    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 14

    # Check-in credentials are signed with their own key so staff session
    # secrets can rotate without invalidating printed QR codes.
    CREDENTIAL_SECRET_KEY: str = "change-me-credentials"
    CREDENTIAL_TTL_MINUTES: int = 30
    CREDENTIAL_URI_SCHEME: str = "guestpass"

    BUILDING_TIMEZONE: str = "America/Los_Angeles"
    BUILDING_LOCATION: str = "Main Lobby"
    # HH:MM building-local time after which entries are refused. Empty disables the cutoff.
    NIGHTLY_CUTOFF: str = "23:59"
    VISIT_MAX_HOURS: int = 24

    TERMS_VERSION: str = "1.0"
    AGREEMENT_VERSION: str = "1.0"
    ACCEPTANCE_VALID_DAYS: int = 365

    GUEST_MONTHLY_LIMIT_DEFAULT: int = 3
    HOST_CONCURRENT_LIMIT_DEFAULT: int = 3
    ADMISSION_DECISION_TIMEOUT_SECONDS: float = 5.0

    OVERRIDE_PASSWORD: str = ""
    # Supervised kiosk terminals may override capacity without a staff login.
    KIOSK_DEGRADED_MODE: bool = False
    KIOSK_OPERATOR_ID: str = "kiosk-degraded-mode"

    CORS_ORIGINS: str = (
        "http://localhost:5173,"
        "http://127.0.0.1:5173"
    )
    CORS_ALLOW_ORIGIN_REGEX: str = (
        r"^https?://("
        r"localhost|127\\.0\\.0\\.1|"
        r"192\\.168\\.\\d{1,3}\\.\\d{1,3}|"
        r"10\\.\\d{1,3}\\.\\d{1,3}\\.\\d{1,3}"
        r")(\\:\\d+)?$"
    )

    SOCKET_PATH: str = "/socket.io"
    DASHBOARD_NAMESPACE: str = "/realtime/dashboard"

    @field_validator("NIGHTLY_CUTOFF")
    @classmethod
    def validate_nightly_cutoff(cls, value: str) -> str:
        value = value.strip()
        if not value:
            return value
        hours, _, minutes = value.partition(":")
        try:
            time(int(hours), int(minutes or 0))
        except ValueError as exc:
            raise ValueError(f"NIGHTLY_CUTOFF must be HH:MM in building-local time, got {value!r}") from exc
        return value

    @property
    def cors_origins(self) -> List[str]:
        origins: list[str] = []
        for raw in self.CORS_ORIGINS.split(","):
            value = raw.strip()
            if not value:
                continue
            parsed = urlparse(value)
            if parsed.scheme and parsed.netloc:
                value = f"{parsed.scheme}://{parsed.netloc}"
            origins.append(value.rstrip("/"))
        return origins


@lru_cache
def get_settings() -> Settings:
    return Settings()
