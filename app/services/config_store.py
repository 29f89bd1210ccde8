from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache

from app.core.config import Settings

WEBHOOK_CONFIG_DOCUMENT_ID = "webhook"


class ConfigStore(ABC):
    @abstractmethod
    def get_webhook_secret(self) -> str:
        raise NotImplementedError


class InMemoryConfigStore(ConfigStore):
    def __init__(self, webhook_secret: str = "") -> None:
        self._webhook_secret = webhook_secret

    def get_webhook_secret(self) -> str:
        return self._webhook_secret.strip()

    def set_webhook_secret(self, secret: str) -> None:
        self._webhook_secret = secret


class MongoConfigStore(ConfigStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        fallback_webhook_secret: str = "",
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        self._collection = self._client[db_name][collection_name]
        self._fallback_webhook_secret = fallback_webhook_secret

    def get_webhook_secret(self) -> str:
        record = self._collection.find_one({"_id": WEBHOOK_CONFIG_DOCUMENT_ID}, {"secret": 1})
        if record and isinstance(record.get("secret"), str) and record["secret"].strip():
            return record["secret"].strip()
        return self._fallback_webhook_secret.strip()


def create_config_store(settings: Settings) -> ConfigStore:
    return _create_config_store_cached(
        data_store=settings.data_store,
        webhook_secret=settings.webhook_secret,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_system_collection=settings.mongodb_system_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_config_store_cached(
    *,
    data_store: str,
    webhook_secret: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_system_collection: str,
    mongodb_connect_timeout_ms: int,
) -> ConfigStore:
    if data_store == "mongodb":
        return MongoConfigStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_system_collection,
            fallback_webhook_secret=webhook_secret,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryConfigStore(webhook_secret=webhook_secret)


def clear_config_store_cache() -> None:
    _create_config_store_cached.cache_clear()
