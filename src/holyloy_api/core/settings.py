from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./holyloy.db"
    database_echo: bool = False

    # Internal API security
    admin_api_key: str = ""
    rewards_api_key: str = ""
    observability_api_key: str = ""

    # QR point transfers
    qr_transfer_default_expiration_minutes: int = 15
    qr_transfer_max_expiration_minutes: int = 24 * 60

    # Cascade execution
    cascade_step_max_attempts: int = 3
    infinity_cycle_policy: Literal["first_cycle_only", "cumulative_threshold"] = "first_cycle_only"

    # Shopping vouchers
    voucher_expiry_days: int = 365

    # Cascade re-drive automation
    cascade_redrive_worker_enabled: bool = False
    cascade_redrive_interval_seconds: int = 300
    cascade_redrive_batch_size: int = 100
    cascade_redrive_trigger_label: str = "scheduler"
    cascade_redrive_steps: list[str] = Field(
        default_factory=lambda: [
            "step_up",
            "ripple",
            "affiliate",
            "infinity",
            "cashback",
            "merchant_referral",
            "voucher",
        ]
    )

    @field_validator("cascade_redrive_steps", mode="before")
    @classmethod
    def _parse_step_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
