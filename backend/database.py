import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, DATABASE_URL, POOL_SIZE
from errors import InternalError

logger = logging.getLogger(__name__)

USERS = "users"
PRODUCTS = "products"
REQUESTS = "requests"
MESSAGES = "messages"


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_public(doc: Optional[dict]) -> Optional[dict]:
    """Copy a stored document, exposing ``_id`` as ``id``."""
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


@asynccontextmanager
async def persistence(operation: str):
    """Convert driver failures into an opaque InternalError."""
    try:
        yield
    except PyMongoError as exc:
        logger.exception("persistence_failed operation=%s", operation)
        raise InternalError() from exc


class Database:
    """
    Owns the motor client and its connection pool.

    A client can be passed in (tests hand over an in-memory one); otherwise one
    is created on connect() and closed again on close().
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        url: str = DATABASE_URL,
        name: str = DATABASE_NAME,
        pool_size: int = POOL_SIZE,
    ):
        self.url = url
        self.name = name
        self.pool_size = pool_size
        self._client = client
        self._owns_client = client is None
        self.db = None

    async def connect(self):
        if self._client is None:
            self._client = AsyncIOMotorClient(self.url, maxPoolSize=self.pool_size)
        self.db = self._client[self.name]
        async with persistence("ensure_indexes"):
            await self.ensure_indexes()
        logger.info("database_connected name=%s pool_size=%s", self.name, self.pool_size)

    async def close(self):
        if self._client is not None and self._owns_client:
            self._client.close()
            logger.info("database_closed name=%s", self.name)
        self.db = None

    def __getitem__(self, collection_name: str):
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db[collection_name]

    async def ensure_indexes(self):
        await self.db[USERS].create_index("email", unique=True)
        await self.db[PRODUCTS].create_index([("farmerId", ASCENDING), ("timestamp", DESCENDING)])
        await self.db[REQUESTS].create_index([("farmerId", ASCENDING), ("timestamp", DESCENDING)])
        await self.db[REQUESTS].create_index([("vendorId", ASCENDING), ("timestamp", DESCENDING)])
        await self.db[MESSAGES].create_index(
            [("senderId", ASCENDING), ("recipientId", ASCENDING), ("timestamp", ASCENDING)]
        )
        await self.db[MESSAGES].create_index([("recipientId", ASCENDING), ("timestamp", ASCENDING)])

    async def ping(self):
        return await self.db.command("ping")

    async def create_document(self, collection_name: str, data: Dict[str, Any]) -> dict:
        data = dict(data)
        data.setdefault("_id", new_id())
        await self[collection_name].insert_one(data)
        return data

    async def get_document(self, collection_name: str, doc_id: str) -> Optional[dict]:
        return await self[collection_name].find_one({"_id": doc_id})

    async def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[dict] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[dict]:
        cursor = self[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [doc async for doc in cursor]

    async def count_documents(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        return await self[collection_name].count_documents(filter_dict or {})
