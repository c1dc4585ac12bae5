from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from .base import BaseDBManager
from ..exceptions import StoreTimeout, StoreUnavailable
from ..models.account import Account, PlanTier
from ..models.base import DBSerializableModel, utcnow
from ..models.generation import GeneratedOutput, Project
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import (
    PriceMapping,
    ProcessedCheckout,
    SubscriptionHistoryEntry,
)
from ..models.transaction import Transaction


TModel = TypeVar("TModel", bound=DBSerializableModel)


@asynccontextmanager
async def _translate_errors() -> AsyncIterator[None]:
    """
    Map driver failures onto the ledger's infrastructure errors.

    A timeout after the request was sent leaves the write indeterminate,
    which is what StoreTimeout signals to callers.
    """
    try:
        yield
    except ServerSelectionTimeoutError as exc:
        raise StoreUnavailable(f"ledger store unreachable: {exc}") from exc
    except (NetworkTimeout, ExecutionTimeout, WTimeoutError) as exc:
        raise StoreTimeout(f"ledger store timed out: {exc}") from exc
    except ConnectionFailure as exc:
        raise StoreUnavailable(f"ledger store connection failed: {exc}") from exc


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the primary
    key attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    The account primitives rely on MongoDB's single-document atomicity: each
    is one `find_one_and_update` whose filter carries the guard condition
    (sufficient balance, session not yet processed), so check and write can
    never be split by a concurrent writer.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str, timeout_ms: int = 5000) -> "MongoDBManager":
        client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
            wTimeoutMS=timeout_ms,
        )
        return cls(client[db_name])

    async def initialize(self) -> None:
        await self.ensure_indexes()

    async def ensure_indexes(self) -> None:
        async with _translate_errors():
            await self._db[Account.collection_name].create_index(
                [("billing_customer_id", ASCENDING)], unique=True, sparse=True
            )
            await self._db[Transaction.collection_name].create_index(
                [("account_id", ASCENDING), ("created_at", ASCENDING)]
            )
            await self._db[Project.collection_name].create_index([("account_id", ASCENDING)])
            await self._db[GeneratedOutput.collection_name].create_index(
                [("project_id", ASCENDING)]
            )
            await self._db[SubscriptionHistoryEntry.collection_name].create_index(
                [("account_id", ASCENDING)]
            )

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        key = model.primary_key or "id"
        model_id = getattr(model, key, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, key, model_id)
            data[key] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        key = model_cls.primary_key or "id"
        if "_id" in data and key not in data:
            data[key] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        data = self._prepare_insert(model)
        async with _translate_errors():
            await col.insert_one(data)
        return model

    async def _find_many(
        self, model_cls: Type[TModel], query: Dict[str, Any], sort_key: str = "created_at"
    ) -> list[TModel]:
        col = self._db[model_cls.collection_name]
        async with _translate_errors():
            cursor = col.find(query).sort(sort_key, ASCENDING)
            docs = await cursor.to_list(length=None)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    async def _update_account(
        self, query: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        col = self._db[Account.collection_name]
        async with _translate_errors():
            return await col.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )

    # Accounts
    async def add_account(self, account: Account) -> Account:
        return await self._insert(account)

    async def get_account(self, account_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        async with _translate_errors():
            doc = await col.find_one({"_id": account_id})
        return self._decode(Account, doc)

    async def get_account_by_customer_id(self, customer_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        async with _translate_errors():
            doc = await col.find_one({"billing_customer_id": customer_id})
        return self._decode(Account, doc)

    # Atomic account primitives
    async def debit_credits(self, account_id: str, amount: int) -> Optional[int]:
        doc = await self._update_account(
            {"_id": account_id, "credits": {"$gte": amount}},
            {"$inc": {"credits": -amount}, "$set": {"updated_at": utcnow()}},
        )
        return int(doc["credits"]) if doc else None

    async def credit_credits(self, account_id: str, amount: int) -> Optional[int]:
        doc = await self._update_account(
            {"_id": account_id},
            {"$inc": {"credits": amount}, "$set": {"updated_at": utcnow()}},
        )
        return int(doc["credits"]) if doc else None

    async def apply_checkout_grant(
        self,
        account_id: str,
        *,
        session_id: str,
        plan: PlanTier,
        monthly_allocation: int,
        subscription_id: Optional[str],
        customer_id: Optional[str],
        subscription_start: datetime,
        subscription_renewal: Optional[datetime],
    ) -> Optional[int]:
        fields: Dict[str, Any] = {
            "plan": plan.value,
            "monthly_allocation": monthly_allocation,
            "billing_subscription_id": subscription_id,
            "subscription_start": subscription_start,
            "subscription_renewal": subscription_renewal,
            "updated_at": utcnow(),
        }
        if customer_id:
            fields["billing_customer_id"] = customer_id
        doc = await self._update_account(
            {"_id": account_id, "processed_checkout_sessions": {"$ne": session_id}},
            {
                "$inc": {"credits": monthly_allocation},
                "$set": fields,
                "$push": {"processed_checkout_sessions": session_id},
            },
        )
        return int(doc["credits"]) if doc else None

    async def update_subscription_metadata(
        self,
        account_id: str,
        *,
        plan: PlanTier,
        monthly_allocation: int,
        subscription_id: str,
        customer_id: Optional[str],
        subscription_renewal: Optional[datetime],
    ) -> Optional[Account]:
        fields: Dict[str, Any] = {
            "plan": plan.value,
            "monthly_allocation": monthly_allocation,
            "billing_subscription_id": subscription_id,
            "subscription_renewal": subscription_renewal,
            "updated_at": utcnow(),
        }
        if customer_id:
            fields["billing_customer_id"] = customer_id
        doc = await self._update_account({"_id": account_id}, {"$set": fields})
        return self._decode(Account, doc)

    async def clear_subscription(self, account_id: str) -> Optional[Account]:
        doc = await self._update_account(
            {"_id": account_id},
            {
                "$set": {"plan": None, "monthly_allocation": 0, "updated_at": utcnow()},
                "$unset": {
                    "billing_subscription_id": "",
                    "subscription_start": "",
                    "subscription_renewal": "",
                },
            },
        )
        return self._decode(Account, doc)

    # Audit transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        return await self._insert(tx)

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        return await self._find_many(Transaction, {"account_id": account_id})

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        col = self._db[Transaction.collection_name]
        async with _translate_errors():
            doc = await col.find_one({"_id": transaction_id})
        return self._decode(Transaction, doc)

    async def mark_transaction_refunded(self, transaction_id: str) -> Optional[Transaction]:
        col = self._db[Transaction.collection_name]
        async with _translate_errors():
            doc = await col.find_one_and_update(
                {"_id": transaction_id, "refunded_at": None},
                {"$set": {"refunded_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return self._decode(Transaction, doc)

    # Generated outputs
    async def add_project(self, project: Project) -> Project:
        return await self._insert(project)

    async def add_generated_output(self, output: GeneratedOutput) -> GeneratedOutput:
        return await self._insert(output)

    async def delete_generated_output(self, output_id: str) -> None:
        col = self._db[GeneratedOutput.collection_name]
        async with _translate_errors():
            await col.delete_one({"_id": output_id})

    async def count_generated_outputs(self, account_id: str) -> int:
        projects = self._db[Project.collection_name]
        outputs = self._db[GeneratedOutput.collection_name]
        async with _translate_errors():
            project_ids = await projects.distinct("_id", {"account_id": account_id})
            if not project_ids:
                return 0
            return await outputs.count_documents({"project_id": {"$in": project_ids}})

    # Billing bookkeeping
    async def add_price_mapping(self, mapping: PriceMapping) -> PriceMapping:
        col = self._db[PriceMapping.collection_name]
        data = self._prepare_insert(mapping)
        async with _translate_errors():
            await col.replace_one({"_id": data["_id"]}, data, upsert=True)
        return mapping

    async def get_price_mapping(self, price_id: str) -> Optional[PriceMapping]:
        col = self._db[PriceMapping.collection_name]
        async with _translate_errors():
            doc = await col.find_one({"_id": price_id})
        return self._decode(PriceMapping, doc)

    async def add_processed_checkout(self, record: ProcessedCheckout) -> bool:
        try:
            await self._insert(record)
        except DuplicateKeyError:
            return False
        return True

    async def get_processed_checkout(self, session_id: str) -> Optional[ProcessedCheckout]:
        col = self._db[ProcessedCheckout.collection_name]
        async with _translate_errors():
            doc = await col.find_one({"_id": session_id})
        return self._decode(ProcessedCheckout, doc)

    async def add_subscription_history(
        self, entry: SubscriptionHistoryEntry
    ) -> SubscriptionHistoryEntry:
        return await self._insert(entry)

    async def get_subscription_history(
        self, account_id: str
    ) -> Iterable[SubscriptionHistoryEntry]:
        return await self._find_many(SubscriptionHistoryEntry, {"account_id": account_id})

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._insert(notification)

    async def get_notification_events(self, account_id: str) -> Iterable[NotificationEvent]:
        return await self._find_many(NotificationEvent, {"account_id": account_id})

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await self._insert(entry)
