from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings
from app.schemas.ingestion import IngestionStatus

RECLAIMABLE_STATUSES = (
    IngestionStatus.seen.value,
    IngestionStatus.error.value,
    IngestionStatus.skipped.value,
)


@dataclass(frozen=True)
class IngestionClaim:
    acquired: bool
    record: dict[str, Any] | None = None


class IngestionStore(ABC):
    @abstractmethod
    def get(self, message_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def claim(
        self,
        message_id: str,
        raw_payload: Mapping[str, Any],
        *,
        stale_before: datetime,
    ) -> IngestionClaim:
        raise NotImplementedError

    @abstractmethod
    def finish(
        self,
        message_id: str,
        status: IngestionStatus,
        *,
        action: str | None = None,
        appointment_id: str | None = None,
        coach_id: str | None = None,
        error: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryIngestionStore(IngestionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}

    def get(self, message_id: str) -> dict[str, Any] | None:
        record = self._records.get(message_id)
        return copy.deepcopy(record) if record else None

    def claim(
        self,
        message_id: str,
        raw_payload: Mapping[str, Any],
        *,
        stale_before: datetime,
    ) -> IngestionClaim:
        now = datetime.now(UTC)
        with self._lock:
            existing = self._records.get(message_id)
            if existing is None:
                record = build_ingestion_document(message_id, raw_payload, received_at=now)
                self._records[message_id] = record
                return IngestionClaim(acquired=True, record=copy.deepcopy(record))

            if not _is_reclaimable(existing, stale_before):
                return IngestionClaim(acquired=False, record=copy.deepcopy(existing))

            existing.update(
                {
                    "status": IngestionStatus.processing.value,
                    "raw_payload": dict(raw_payload),
                    "error": None,
                    "updated_at": now,
                    "attempts": int(existing.get("attempts") or 0) + 1,
                },
            )
            return IngestionClaim(acquired=True, record=copy.deepcopy(existing))

    def finish(
        self,
        message_id: str,
        status: IngestionStatus,
        *,
        action: str | None = None,
        appointment_id: str | None = None,
        coach_id: str | None = None,
        error: str | None = None,
    ) -> None:
        now = datetime.now(UTC)
        with self._lock:
            record = self._records.setdefault(
                message_id,
                build_ingestion_document(message_id, {}, received_at=now),
            )
            record.update(
                _build_finish_updates(
                    status,
                    action=action,
                    appointment_id=appointment_id,
                    coach_id=coach_id,
                    error=error,
                    updated_at=now,
                ),
            )

    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        records = sorted(
            self._records.values(),
            key=lambda record: record.get("received_at") or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return [copy.deepcopy(record) for record in records[:limit]]


class MongoIngestionStore(IngestionStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("received_at", self._desc)])
        self._collection.create_index([("status", 1), ("updated_at", self._desc)])

    def get(self, message_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": message_id})

    def claim(
        self,
        message_id: str,
        raw_payload: Mapping[str, Any],
        *,
        stale_before: datetime,
    ) -> IngestionClaim:
        from pymongo import ReturnDocument
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        document = build_ingestion_document(message_id, raw_payload, received_at=now)
        try:
            self._collection.insert_one(document)
            return IngestionClaim(acquired=True, record=document)
        except DuplicateKeyError:
            pass

        reclaimed = self._collection.find_one_and_update(
            {
                "_id": message_id,
                "$or": [
                    {"status": {"$in": list(RECLAIMABLE_STATUSES)}},
                    {
                        "status": IngestionStatus.processing.value,
                        "updated_at": {"$lt": stale_before},
                    },
                ],
            },
            {
                "$set": {
                    "status": IngestionStatus.processing.value,
                    "raw_payload": dict(raw_payload),
                    "error": None,
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if reclaimed:
            return IngestionClaim(acquired=True, record=reclaimed)
        return IngestionClaim(acquired=False, record=self.get(message_id))

    def finish(
        self,
        message_id: str,
        status: IngestionStatus,
        *,
        action: str | None = None,
        appointment_id: str | None = None,
        coach_id: str | None = None,
        error: str | None = None,
    ) -> None:
        now = datetime.now(UTC)
        self._collection.update_one(
            {"_id": message_id},
            {
                "$set": _build_finish_updates(
                    status,
                    action=action,
                    appointment_id=appointment_id,
                    coach_id=coach_id,
                    error=error,
                    updated_at=now,
                ),
                "$setOnInsert": {
                    "message_id": message_id,
                    "received_at": now,
                    "raw_payload": {},
                    "attempts": 1,
                },
            },
            upsert=True,
        )

    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find().sort("received_at", self._desc).limit(limit)
        return list(cursor)


def build_ingestion_document(
    message_id: str,
    raw_payload: Mapping[str, Any],
    *,
    received_at: datetime,
) -> dict[str, Any]:
    return {
        "_id": message_id,
        "message_id": message_id,
        "status": IngestionStatus.processing.value,
        "received_at": received_at,
        "updated_at": received_at,
        "raw_payload": dict(raw_payload),
        "action": None,
        "appointment_id": None,
        "coach_id": None,
        "error": None,
        "attempts": 1,
    }


def _build_finish_updates(
    status: IngestionStatus,
    *,
    action: str | None,
    appointment_id: str | None,
    coach_id: str | None,
    error: str | None,
    updated_at: datetime,
) -> dict[str, Any]:
    return {
        "status": status.value,
        "action": action,
        "appointment_id": appointment_id,
        "coach_id": coach_id,
        "error": error,
        "updated_at": updated_at,
    }


def _is_reclaimable(record: Mapping[str, Any], stale_before: datetime) -> bool:
    status = record.get("status")
    if status in RECLAIMABLE_STATUSES:
        return True
    if status == IngestionStatus.processing.value:
        updated_at = record.get("updated_at")
        return isinstance(updated_at, datetime) and updated_at < stale_before
    return False


def create_ingestion_store(settings: Settings) -> IngestionStore:
    return _create_ingestion_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_ingestions_collection=settings.mongodb_ingestions_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_ingestion_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_ingestions_collection: str,
    mongodb_connect_timeout_ms: int,
) -> IngestionStore:
    if data_store == "memory":
        return InMemoryIngestionStore()

    if data_store == "mongodb":
        return MongoIngestionStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_ingestions_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    # Unknown values keep the service running on the volatile store.
    return InMemoryIngestionStore()


def clear_ingestion_store_cache() -> None:
    _create_ingestion_store_cached.cache_clear()
