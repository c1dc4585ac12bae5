"""
Ledger configuration using Pydantic Settings.

Every value can be overridden with a `CREDIT_`-prefixed environment
variable (dict values are given as JSON), or through a local `.env` file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the store, billing provider and pricing policy."""

    # Store
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "credit_ledger"
    STORE_TIMEOUT_MS: int = 5000

    # Ledger log
    LEDGER_LOG_PATH: str = "logs/credit_ledger.jsonl"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Pricing
    STANDARD_GENERATION_COST: int = 10
    BATCH_SIZE: int = 3
    BATCH_BUNDLE_COST: int = 25
    HIGH_RESOLUTION_SURCHARGE: int = 5
    PRIORITY_SURCHARGE: int = 5
    PROJECT_CREATION_COST: int = 50
    RESTRICTED_COSTS: Dict[str, int] = {"essential": 30, "ultimate": 15}

    # Plans
    PLAN_MONTHLY_CREDITS: Dict[str, int] = {
        "base": 50,
        "essential": 250,
        "ultimate": 500,
    }
    PLAN_PRICES: Dict[str, float] = {
        "base": 9.99,
        "essential": 19.99,
        "ultimate": 29.99,
    }
    PRICE_PLAN_MAP: Dict[str, str] = {}

    # Free tier
    FREE_TIER_GENERATIONS: int = 3

    # Notifications / cache
    LOW_CREDIT_THRESHOLD: int = 10
    BALANCE_CACHE_TTL_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_", env_file=".env", case_sensitive=True, extra="ignore"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
