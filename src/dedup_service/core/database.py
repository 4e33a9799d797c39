"""
MongoDB access for the dedup engine: connection, indexes, transactions and
the repository base class
"""

import logging
from typing import Optional, Dict, Any, List, AsyncGenerator
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .config import get_database_config, DatabaseConfig
from .ports import NoTransactionManager, TransactionManager

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# logical collection -> list of (keys, options)
INDEXES = {
    "patients": [
        ([("patient_id", ASCENDING)], {"unique": True}),
        ([("scope_id", ASCENDING), ("status", ASCENDING), ("patient_id", ASCENDING)], {}),
        # array match keys become multikey indexes
        ([("scope_id", ASCENDING), ("match_keys.name_trigrams", ASCENDING)], {}),
        ([("scope_id", ASCENDING), ("match_keys.phonetic_tokens", ASCENDING)], {}),
        ([("scope_id", ASCENDING), ("match_keys.phone_suffix", ASCENDING)], {}),
        ([("scope_id", ASCENDING), ("match_keys.dob", ASCENDING)], {}),
    ],
    "duplicate_candidates": [
        ([("pair_key", ASCENDING)], {"unique": True}),
        ([("scope_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)], {}),
    ],
    "audit_log": [
        ([("timestamp", DESCENDING)], {}),
        ([("subject_ids", ASCENDING)], {}),
        ([("operation", ASCENDING), ("timestamp", DESCENDING)], {}),
    ],
}

DEPENDENT_INDEX = [([("patient_id", ASCENDING)], {})]


class DatabaseManager:
    """
    Owns the Motor client and the collection handles.

    Collections are addressed by logical name (``patients``, ``audit_log``,
    one per dependent-record category) and mapped to the configured names.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or get_database_config()
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None
        self._collections: Dict[str, AsyncIOMotorCollection] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Connect, resolve collections and make sure every index exists"""
        if self._initialized:
            return

        logger.info(f"Connecting to MongoDB at {self.config.uri} (database {self.config.name})")

        try:
            self._client = AsyncIOMotorClient(
                self.config.uri,
                maxPoolSize=self.config.max_pool_size,
                minPoolSize=self.config.min_pool_size,
                maxIdleTimeMS=self.config.max_idle_time_ms,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
                tz_aware=True
            )
            await self._client.admin.command('ping')

            self._database = self._client[self.config.name]
            self._collections = {
                "patients": self._database[self.config.patients_collection],
                "duplicate_candidates": self._database[self.config.candidates_collection],
                "audit_log": self._database[self.config.audit_collection],
            }
            for category, collection_name in self.config.dependent_collections().items():
                self._collections[category] = self._database[collection_name]

            await self._ensure_indexes()

            self._initialized = True
            logger.info(f"MongoDB ready: {len(self._collections)} collections")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    async def _ensure_indexes(self) -> None:
        dependents = self.config.dependent_collections()
        for name, collection in self._collections.items():
            specs = DEPENDENT_INDEX if name in dependents else INDEXES.get(name, [])
            for keys, options in specs:
                try:
                    await collection.create_index(keys, **options)
                except Exception as e:
                    logger.error(f"Failed to create index {keys} on {name}: {e}")
                    raise

    async def cleanup(self) -> None:
        if self._client:
            self._client.close()
            self._initialized = False
            logger.info("MongoDB connection closed")

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        """Collection handle by logical name"""
        if not self._initialized:
            raise RuntimeError("Database manager not initialized. Call initialize() first.")
        return self._collections.get(name) or self._database[name]

    async def health_check(self) -> Dict[str, Any]:
        try:
            if not self._initialized:
                return {"status": "error", "message": "Database not initialized"}

            await self._client.admin.command('ping')
            counts = {
                "pending_candidates": await self._collections["duplicate_candidates"].count_documents(
                    {"status": "pending"}
                ),
            }
            return {"status": "healthy", "database": self.config.name, **counts}

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    @asynccontextmanager
    async def session(self) -> AsyncGenerator:
        """Client session; transactions are opened on it by MongoTransactionManager"""
        if not self._initialized:
            raise RuntimeError("Database manager not initialized. Call initialize() first.")

        async with await self._client.start_session() as session:
            yield session


class MongoTransactionManager(TransactionManager):
    """
    Multi-document transactions (needs a replica set).

    Leaving the block with an exception aborts the transaction; a clean exit
    commits it.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @asynccontextmanager
    async def transaction(self):
        async with self.db_manager.session() as session:
            async with session.start_transaction():
                yield session


def get_transaction_manager(db_manager: DatabaseManager) -> TransactionManager:
    """Real transactions when enabled, compensation-only otherwise"""
    if db_manager.config.use_transactions:
        return MongoTransactionManager(db_manager)
    logger.warning("MongoDB transactions disabled; merges rely on compensation only")
    return NoTransactionManager()


class BaseRepository:
    """
    Shared collection operations.

    Each takes an optional session so it can join a merge transaction. Driver
    errors are logged with the collection name and re-raised.
    """

    def __init__(self, db_manager: DatabaseManager, collection_name: str):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @property
    def collection(self) -> AsyncIOMotorCollection:
        return self.db_manager.get_collection(self.collection_name)

    @staticmethod
    def _stamp(update_dict: Dict[str, Any]) -> Dict[str, Any]:
        update_dict.setdefault("$set", {}).setdefault("updated_at", utcnow())
        return update_dict

    async def find_one(
        self,
        filter_dict: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        session: Any = None
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one(filter_dict, projection, session=session)
        except Exception as e:
            logger.error(f"find_one on {self.collection_name} failed: {e}")
            raise

    async def find_many(
        self,
        filter_dict: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        session: Any = None
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.find(filter_dict, projection, session=session)
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=limit)
        except Exception as e:
            logger.error(f"find on {self.collection_name} failed: {e}")
            raise

    async def insert_one(self, document: Dict[str, Any], session: Any = None) -> Any:
        """Insert as given; returns the document _id"""
        try:
            result = await self.collection.insert_one(document, session=session)
            return result.inserted_id
        except Exception as e:
            logger.error(f"insert_one on {self.collection_name} failed: {e}")
            raise

    async def replace_one(
        self,
        filter_dict: Dict[str, Any],
        document: Dict[str, Any],
        session: Any = None
    ) -> bool:
        try:
            result = await self.collection.replace_one(filter_dict, document, session=session)
            return result.matched_count > 0
        except Exception as e:
            logger.error(f"replace_one on {self.collection_name} failed: {e}")
            raise

    async def update_one(
        self,
        filter_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
        upsert: bool = False,
        session: Any = None
    ) -> bool:
        """True when a document matched (or was upserted)"""
        try:
            result = await self.collection.update_one(
                filter_dict, self._stamp(update_dict), upsert=upsert, session=session
            )
            return result.matched_count > 0 or (upsert and result.upserted_id is not None)
        except Exception as e:
            logger.error(f"update_one on {self.collection_name} failed: {e}")
            raise

    async def find_one_and_update(
        self,
        filter_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
        session: Any = None
    ) -> Optional[Dict[str, Any]]:
        """Atomic update returning the document after it, or None when nothing matched"""
        try:
            return await self.collection.find_one_and_update(
                filter_dict,
                self._stamp(update_dict),
                return_document=ReturnDocument.AFTER,
                session=session
            )
        except Exception as e:
            logger.error(f"find_one_and_update on {self.collection_name} failed: {e}")
            raise

    async def update_many(
        self,
        filter_dict: Dict[str, Any],
        update_dict: Dict[str, Any],
        session: Any = None
    ) -> int:
        """Number of documents modified"""
        try:
            result = await self.collection.update_many(filter_dict, self._stamp(update_dict), session=session)
            return result.modified_count
        except Exception as e:
            logger.error(f"update_many on {self.collection_name} failed: {e}")
            raise

    async def aggregate(self, pipeline: List[Dict[str, Any]], session: Any = None) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.aggregate(pipeline, session=session)
            return await cursor.to_list(length=None)
        except Exception as e:
            logger.error(f"aggregate on {self.collection_name} failed: {e}")
            raise
