import json
import os
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

CONFIG_PATH_ENV = "RANKSYNC_CONFIG"
DEFAULT_CONFIG_PATH = "config.json"

# First-run values; an operator must replace every one of these.
PLACEHOLDER_SUPABASE_URL = "your-project-url.supabase.co"
PLACEHOLDER_SUPABASE_KEY = "your-supabase-anon-key"
PLACEHOLDER_WEBHOOK_SECRET = "change_this_to_a_secure_secret"


class RankDefinition(BaseModel):
    name: str
    prefix: str
    permissions: list[str] = []


def default_ranks() -> dict[str, RankDefinition]:
    return {
        "VIP": RankDefinition(name="VIP", prefix="&a[VIP]", permissions=["fly.lobby", "vip.chat", "vip.perks"]),
        "MVP": RankDefinition(
            name="MVP",
            prefix="&b[MVP]",
            permissions=["fly.lobby", "fly.survival", "mvp.chat", "mvp.perks"],
        ),
        "ELITE": RankDefinition(
            name="ELITE",
            prefix="&5[ELITE]",
            permissions=["fly.*", "elite.chat", "elite.perks", "elite.commands"],
        ),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        json_file=os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH),
        extra="ignore",
    )

    db_url: str = "sqlite:///./ranksync.db"
    ledger_backend: Literal["sql", "postgrest"] = "sql"
    supabase_url: str = PLACEHOLDER_SUPABASE_URL
    supabase_key: str = PLACEHOLDER_SUPABASE_KEY
    webhook_port: int = 8081
    webhook_secret: str = PLACEHOLDER_WEBHOOK_SECRET
    bearer_token: Optional[str] = None
    relay_token: Optional[str] = None
    backend_servers: dict[str, str] = {}
    poll_initial_delay_seconds: float = 30.0
    poll_interval_seconds: float = 30.0
    request_timeout_seconds: float = 10.0
    pending_alert_after_seconds: Optional[float] = None
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    ranks: dict[str, RankDefinition] = default_ranks()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def placeholder_fields(config: Settings) -> list[str]:
    """
    Names of settings still carrying their first-run placeholder value.
    """
    placeholders = {
        "supabase_url": PLACEHOLDER_SUPABASE_URL,
        "supabase_key": PLACEHOLDER_SUPABASE_KEY,
        "webhook_secret": PLACEHOLDER_WEBHOOK_SECRET,
    }
    return [name for name, value in placeholders.items() if getattr(config, name) == value]


def write_default_config(path: str | Path) -> bool:
    """
    Write a first-run config file. Returns False when one already exists.
    """
    target = Path(path)
    if target.exists():
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    body = {
        "supabase_url": PLACEHOLDER_SUPABASE_URL,
        "supabase_key": PLACEHOLDER_SUPABASE_KEY,
        "webhook_port": 8081,
        "webhook_secret": PLACEHOLDER_WEBHOOK_SECRET,
        "ranks": {name: rank.model_dump() for name, rank in default_ranks().items()},
    }
    target.write_text(json.dumps(body, indent=2))
    return True


settings = Settings()


class RankUpdateStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    ERROR = "error"


class PurchaseStatus(str, Enum):
    PROCESSING = "processing"
    QUEUED = "queued"
    APPLIED = "applied"
    ERROR = "error"
