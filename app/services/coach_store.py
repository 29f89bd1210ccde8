from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class CoachStore(ABC):
    @abstractmethod
    def get_coach_by_id(self, coach_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_coach_by_alias(self, alias: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_coaches(self, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def upsert_coach(
        self,
        coach_id: str,
        *,
        email: str | None,
        display_name: str,
        aliases: Sequence[str],
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryCoachStore(CoachStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._coaches: dict[str, dict[str, Any]] = {}

    def get_coach_by_id(self, coach_id: str) -> dict[str, Any] | None:
        coach = self._coaches.get(coach_id)
        if not coach:
            return None
        return _copy_coach(coach)

    def find_coach_by_alias(self, alias: str) -> dict[str, Any] | None:
        for coach in self._coaches.values():
            if alias in coach.get("aliases", []):
                return _copy_coach(coach)
        return None

    def list_coaches(self, limit: int) -> list[dict[str, Any]]:
        return [_copy_coach(coach) for coach in list(self._coaches.values())[:limit]]

    def upsert_coach(
        self,
        coach_id: str,
        *,
        email: str | None,
        display_name: str,
        aliases: Sequence[str],
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        with self._lock:
            existing = self._coaches.get(coach_id)
            coach = {
                "_id": coach_id,
                "email": email,
                "display_name": display_name,
                "aliases": list(aliases),
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            self._coaches[coach_id] = coach
        return _copy_coach(coach)


class MongoCoachStore(CoachStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index("aliases")

    def get_coach_by_id(self, coach_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": coach_id})

    def find_coach_by_alias(self, alias: str) -> dict[str, Any] | None:
        return self._collection.find_one({"aliases": alias})

    def list_coaches(self, limit: int) -> list[dict[str, Any]]:
        return list(self._collection.find().limit(limit))

    def upsert_coach(
        self,
        coach_id: str,
        *,
        email: str | None,
        display_name: str,
        aliases: Sequence[str],
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        return self._collection.find_one_and_update(
            {"_id": coach_id},
            {
                "$set": {
                    "email": email,
                    "display_name": display_name,
                    "aliases": list(aliases),
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )


def _copy_coach(coach: dict[str, Any]) -> dict[str, Any]:
    copied = dict(coach)
    copied["aliases"] = list(coach.get("aliases", []))
    return copied


def create_coach_store(settings: Settings) -> CoachStore:
    return _create_coach_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_coaches_collection=settings.mongodb_coaches_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_coach_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_coaches_collection: str,
    mongodb_connect_timeout_ms: int,
) -> CoachStore:
    if data_store == "memory":
        return InMemoryCoachStore()

    if data_store == "mongodb":
        return MongoCoachStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_coaches_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCoachStore()


def clear_coach_store_cache() -> None:
    _create_coach_store_cached.cache_clear()
