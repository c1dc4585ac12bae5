from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from ..billing.base import BillingProvider
from ..billing.stripe_provider import StripeBillingProvider
from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..logging.ledger_logger import LedgerLogger
from ..notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from ..services.credit_service import CreditService
from ..services.notification_service import NotificationService
from ..services.pricing import PricingPolicy
from ..services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    db: BaseDBManager
    cache: AsyncCacheBackend
    ledger: LedgerLogger
    queue: AsyncNotificationQueue
    pricing: PricingPolicy
    notifications: NotificationService
    credits: CreditService
    reconciliation: ReconciliationService


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI, settings.MONGO_DB, timeout_ms=settings.STORE_TIMEOUT_MS
        )
    logger.warning("CREDIT_MONGO_URI is not set, using the in-memory ledger store")
    return InMemoryDBManager()


def build_services(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    billing: Optional[BillingProvider] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    ledger_path: Optional[Path] = None,
) -> LedgerServices:
    db = db or _create_db_manager(settings)
    billing = billing or StripeBillingProvider(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
    )
    queue = queue or InMemoryNotificationQueue()
    cache = InMemoryAsyncCache(default_ttl_seconds=settings.BALANCE_CACHE_TTL_SECONDS)
    ledger = LedgerLogger(db=db, file_path=ledger_path or Path(settings.LEDGER_LOG_PATH))
    pricing = PricingPolicy.from_settings(settings)
    notifications = NotificationService(
        db=db, queue=queue, low_credit_threshold=settings.LOW_CREDIT_THRESHOLD
    )
    credits = CreditService(
        db=db,
        ledger=ledger,
        pricing=pricing,
        cache=cache,
        notifications=notifications,
        balance_cache_ttl=settings.BALANCE_CACHE_TTL_SECONDS,
    )
    reconciliation = ReconciliationService(
        db=db,
        ledger=ledger,
        billing=billing,
        pricing=pricing,
        cache=cache,
        price_plan_map=settings.PRICE_PLAN_MAP,
    )
    return LedgerServices(
        db=db,
        cache=cache,
        ledger=ledger,
        queue=queue,
        pricing=pricing,
        notifications=notifications,
        credits=credits,
        reconciliation=reconciliation,
    )


@lru_cache
def get_services() -> LedgerServices:
    return build_services(get_settings())
