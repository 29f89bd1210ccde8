from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class AppointmentStore(ABC):
    @abstractmethod
    def get_by_id(self, appointment_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_coach_and_start(self, coach_id: str, start_iso: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_start(self, start_iso: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_by_start_range(self, lower: datetime, upper: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def find_starting_from(self, moment: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_by_coach(self, coach_id: str, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def insert(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def update(self, appointment_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete(self, appointment_id: str) -> bool:
        raise NotImplementedError


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._records: dict[str, dict[str, Any]] = {}

    def get_by_id(self, appointment_id: str) -> dict[str, Any] | None:
        record = self._records.get(appointment_id)
        return copy.deepcopy(record) if record else None

    def find_by_coach_and_start(self, coach_id: str, start_iso: str) -> dict[str, Any] | None:
        for record in self._snapshot():
            if record.get("coach_id") == coach_id and record.get("start") == start_iso:
                return record
        return None

    def find_by_start(self, start_iso: str) -> list[dict[str, Any]]:
        return [record for record in self._snapshot() if record.get("start") == start_iso]

    def find_by_start_range(self, lower: datetime, upper: datetime) -> list[dict[str, Any]]:
        return [
            record
            for record in self._snapshot()
            if isinstance(record.get("start_ts"), datetime) and lower <= record["start_ts"] <= upper
        ]

    def find_starting_from(self, moment: datetime) -> list[dict[str, Any]]:
        records = [
            record
            for record in self._snapshot()
            if isinstance(record.get("start_ts"), datetime) and record["start_ts"] >= moment
        ]
        return sorted(records, key=lambda record: record["start_ts"])

    def list_by_coach(self, coach_id: str, limit: int) -> list[dict[str, Any]]:
        records = [record for record in self._snapshot() if record.get("coach_id") == coach_id]
        records.sort(key=lambda record: record.get("start") or "")
        return records[:limit]

    def insert(self, document: Mapping[str, Any]) -> str:
        with self._lock:
            appointment_id = f"memory-{self._next_id}"
            self._next_id += 1
            stored = copy.deepcopy(dict(document))
            stored["_id"] = appointment_id
            self._records[appointment_id] = stored
        return appointment_id

    def update(self, appointment_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            record = self._records.get(appointment_id)
            if record is None:
                return False
            for path, value in updates.items():
                _set_dotted_path(record, path, copy.deepcopy(value))
        return True

    def delete(self, appointment_id: str) -> bool:
        with self._lock:
            return self._records.pop(appointment_id, None) is not None

    def _snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._records.values()]


class MongoAppointmentStore(AppointmentStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._asc = ASCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("coach_id", self._asc), ("start", self._asc)])
        self._collection.create_index([("start", self._asc)])
        self._collection.create_index([("start_ts", self._asc)])

    def get_by_id(self, appointment_id: str) -> dict[str, Any] | None:
        object_id = _to_object_id(appointment_id)
        if object_id is None:
            return None
        return _serialize_record(self._collection.find_one({"_id": object_id}))

    def find_by_coach_and_start(self, coach_id: str, start_iso: str) -> dict[str, Any] | None:
        return _serialize_record(self._collection.find_one({"coach_id": coach_id, "start": start_iso}))

    def find_by_start(self, start_iso: str) -> list[dict[str, Any]]:
        return _serialize_records(self._collection.find({"start": start_iso}))

    def find_by_start_range(self, lower: datetime, upper: datetime) -> list[dict[str, Any]]:
        return _serialize_records(
            self._collection.find({"start_ts": {"$gte": lower, "$lte": upper}}),
        )

    def find_starting_from(self, moment: datetime) -> list[dict[str, Any]]:
        cursor = self._collection.find({"start_ts": {"$gte": moment}}).sort("start_ts", self._asc)
        return _serialize_records(cursor)

    def list_by_coach(self, coach_id: str, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find({"coach_id": coach_id}).sort("start_ts", self._asc).limit(limit)
        return _serialize_records(cursor)

    def insert(self, document: Mapping[str, Any]) -> str:
        insert_result = self._collection.insert_one(dict(document))
        return str(insert_result.inserted_id)

    def update(self, appointment_id: str, updates: Mapping[str, Any]) -> bool:
        object_id = _to_object_id(appointment_id)
        if object_id is None:
            return False
        result = self._collection.update_one({"_id": object_id}, {"$set": dict(updates)})
        return result.matched_count > 0

    def delete(self, appointment_id: str) -> bool:
        object_id = _to_object_id(appointment_id)
        if object_id is None:
            return False
        result = self._collection.delete_one({"_id": object_id})
        return result.deleted_count > 0


def _set_dotted_path(record: dict[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    target = record
    for segment in segments[:-1]:
        nested = target.get(segment)
        if not isinstance(nested, dict):
            nested = {}
            target[segment] = nested
        target = nested
    target[segments[-1]] = value


def _to_object_id(appointment_id: str) -> Any:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(appointment_id)
    except (InvalidId, TypeError):
        return None


def _serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def _serialize_records(records: Any) -> list[dict[str, Any]]:
    serialized_records: list[dict[str, Any]] = []
    for record in records:
        serialized = _serialize_record(record)
        if serialized:
            serialized_records.append(serialized)
    return serialized_records


def create_appointment_store(settings: Settings) -> AppointmentStore:
    return _create_appointment_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_appointments_collection=settings.mongodb_appointments_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_appointment_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_appointments_collection: str,
    mongodb_connect_timeout_ms: int,
) -> AppointmentStore:
    if data_store == "memory":
        return InMemoryAppointmentStore()

    if data_store == "mongodb":
        return MongoAppointmentStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_appointments_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryAppointmentStore()


def clear_appointment_store_cache() -> None:
    _create_appointment_store_cached.cache_clear()
