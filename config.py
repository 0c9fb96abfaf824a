"""Runtime settings read from the environment."""
from dataclasses import dataclass, field
import os
from typing import List


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_name: str
    port: int
    log_level: str
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


settings = Settings(
    database_url=os.getenv("DATABASE_URL", ""),
    database_name=os.getenv("DATABASE_NAME", ""),
    port=int(os.getenv("PORT", 8000)),
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    cors_origins=_split(os.getenv("CORS_ORIGINS", "*")),
)
