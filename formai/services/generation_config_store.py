"""Store for generation configurations.

Supports two backends:
1. MongoDB (durable) - the ``generation_configs`` collection
2. In-memory - for testing or local development

Configurations are owned by the admin side of the product; the job
handler only reads them.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from formai.models import GenerationConfig

logger = logging.getLogger(__name__)

# One document per target_id
GENERATION_CONFIGS_COLLECTION = "generation_configs"


class BaseGenerationConfigStore(ABC):
    """Abstract base class for generation config stores."""

    @abstractmethod
    async def get_config(self, target_id: str) -> Optional[GenerationConfig]:
        """Get a configuration by target ID."""
        pass

    @abstractmethod
    async def save_config(self, config: GenerationConfig) -> GenerationConfig:
        """Insert or replace a configuration."""
        pass

    @abstractmethod
    async def delete_config(self, target_id: str) -> bool:
        """Delete a configuration."""
        pass


class InMemoryGenerationConfigStore(BaseGenerationConfigStore):
    """In-memory config store. Configurations are lost on restart."""

    def __init__(self):
        self._configs: dict[str, GenerationConfig] = {}
        self._lock = asyncio.Lock()

    async def get_config(self, target_id: str) -> Optional[GenerationConfig]:
        async with self._lock:
            return self._configs.get(target_id)

    async def save_config(self, config: GenerationConfig) -> GenerationConfig:
        async with self._lock:
            self._configs[config.target_id] = config
        return config

    async def delete_config(self, target_id: str) -> bool:
        async with self._lock:
            return self._configs.pop(target_id, None) is not None


class MongoGenerationConfigStore(BaseGenerationConfigStore):
    """MongoDB-backed config store keyed by target_id."""

    def __init__(self):
        self._index_created = False

    async def _get_collection(self):
        """The generation_configs collection."""
        from formai.db.mongo import get_database
        db = await get_database()
        return db[GENERATION_CONFIGS_COLLECTION]

    async def ensure_indexes(self) -> None:
        """Create the unique target_id index if not exists."""
        if self._index_created:
            return
        try:
            collection = await self._get_collection()
            await collection.create_index("target_id", unique=True)
            self._index_created = True
        except Exception as e:
            logger.warning(f"Failed to create generation config indexes: {e}")

    async def get_config(self, target_id: str) -> Optional[GenerationConfig]:
        collection = await self._get_collection()
        doc = await collection.find_one({"target_id": target_id}, {"_id": 0})
        if not doc:
            return None
        return GenerationConfig.model_validate(doc)

    async def save_config(self, config: GenerationConfig) -> GenerationConfig:
        await self.ensure_indexes()
        collection = await self._get_collection()
        await collection.replace_one(
            {"target_id": config.target_id},
            config.model_dump(mode="json"),
            upsert=True,
        )
        logger.debug(f"Saved generation config {config.target_id}")
        return config

    async def delete_config(self, target_id: str) -> bool:
        collection = await self._get_collection()
        result = await collection.delete_one({"target_id": target_id})
        return result.deleted_count > 0


# Process-wide store, see get_generation_config_store()
_default_store: Optional[BaseGenerationConfigStore] = None


def get_generation_config_store() -> BaseGenerationConfigStore:
    """Process-wide config store; JOB_STORE_BACKEND picks the backend."""
    global _default_store
    if _default_store is None:
        use_mongo = os.getenv("JOB_STORE_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _default_store = MongoGenerationConfigStore()
            logger.info("Using MongoDB generation config store")
        else:
            _default_store = InMemoryGenerationConfigStore()
            logger.info("Using in-memory generation config store")
    return _default_store


def set_generation_config_store(store: Optional[BaseGenerationConfigStore]) -> None:
    """Set the generation config store instance (for testing)."""
    global _default_store
    _default_store = store
