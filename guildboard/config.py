import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    auto_close_orders: bool = True
    store_timeout: float = Field(default=5.0, gt=0)
    admin_token: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("GUILD_DATABASE_URL") or None,
            auto_close_orders=_env_flag("GUILD_AUTO_CLOSE_ORDERS", True),
            store_timeout=float(os.getenv("GUILD_STORE_TIMEOUT", "5.0")),
            admin_token=os.getenv("GUILD_ADMIN_TOKEN") or None,
            log_level=os.getenv("GUILD_LOG_LEVEL", "INFO").upper(),
        )
