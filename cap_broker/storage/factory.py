"""Factory for creating storage instances."""

import logging
from typing import Optional

from cap_broker.config import Config, config as default_config
from cap_broker.exceptions import ConfigurationError
from cap_broker.storage.base import StateStore
from cap_broker.storage.cloudant_store import CloudantStateStore
from cap_broker.storage.memory_store import MemoryStateStore

logger = logging.getLogger(__name__)


class StorageFactory:
    """Factory for creating storage instances."""

    @staticmethod
    def create_store(config: Optional[Config] = None) -> StateStore:
        """Create the state store selected by configuration (not yet initialized)."""
        config = config or default_config
        db_type = config.database.type.lower()

        if db_type == 'memory':
            logger.info("Creating in-memory storage backend")
            return MemoryStateStore()

        if db_type == 'cloudant':
            if not config.database.cloudant_url:
                raise ConfigurationError(
                    "CLOUDANT_URL is required when DB_TYPE=cloudant", config_key='CLOUDANT_URL'
                )
            logger.info(f"Creating Cloudant storage backend (database {config.database.cloudant_database})")
            return CloudantStateStore.from_config(config.database)

        raise ConfigurationError(f"Unsupported database type: {config.database.type}", config_key='DB_TYPE')

    @staticmethod
    async def create_initialized_store(config: Optional[Config] = None) -> StateStore:
        """Create and initialize the configured state store."""
        store = StorageFactory.create_store(config)
        await store.initialize()
        return store
