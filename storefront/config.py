# storefront/config.py
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    pool_min: int = 1
    pool_max: int = 10
    app_env: str = "production"
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: list = field(default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"])

    @property
    def debug(self) -> bool:
        return self.app_env == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            pool_min=int(os.getenv("APP_POOL_MIN", "1")),
            pool_max=int(os.getenv("APP_POOL_MAX", "10")),
            app_env=os.getenv("APP_ENV", "production"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_bool(os.getenv("LOG_JSON", "false")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
