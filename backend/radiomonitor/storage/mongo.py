"""MongoDB event log.

The recorder side inserts one document per event into a collection; the
server watches that collection through a change stream. Change streams
require a replica set, which is why the consumer waits for a writable
primary before opening one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Any

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from radiomonitor.events import format_timestamp
from radiomonitor.storage.base import Change, FeedError, StorageError, StorageUnavailableError

logger = logging.getLogger(__name__)

_INSERTS_ONLY = [{"$match": {"operationType": "insert"}}]


class MongoChangeFeed:
    def __init__(self, stream: Any) -> None:
        self._stream = stream

    def __aiter__(self) -> AsyncIterator[Change]:
        return self

    async def __anext__(self) -> Change:
        try:
            change = await self._stream.next()
        except StopAsyncIteration:
            raise
        except PyMongoError as e:
            raise FeedError(str(e)) from e
        document = dict(change.get("fullDocument") or {})
        document.pop("_id", None)
        return Change(document=document, token=change.get("_id"))

    async def aclose(self) -> None:
        try:
            await self._stream.close()
        except PyMongoError as e:
            logger.debug(f"Error closing change stream: {e}")


class MongoEventLog:
    def __init__(self, uri: str, database: str, collection: str) -> None:
        self._uri = uri
        self._database_name = database
        self._collection_name = collection
        self._client: AsyncMongoClient[dict[str, Any]] | None = None
        self._collection: Any = None

    async def connect(self, timeout_s: float) -> None:
        timeout_ms = int(timeout_s * 1000)
        client: AsyncMongoClient[dict[str, Any]] = AsyncMongoClient(
            self._uri,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            raise StorageUnavailableError(str(e)) from e
        self._client = client
        self._collection = client[self._database_name][self._collection_name]
        logger.info(f"Connected to MongoDB {self._database_name}.{self._collection_name}")

    async def is_writable_primary(self) -> bool:
        if self._client is None:
            return False
        try:
            hello = await self._client.admin.command("hello")
        except PyMongoError as e:
            logger.debug(f"hello command failed: {e}")
            return False
        return bool(hello.get("isWritablePrimary") or hello.get("ismaster"))

    def _require_collection(self) -> Any:
        if self._collection is None:
            raise StorageUnavailableError("Not connected to MongoDB")
        return self._collection

    async def append(self, document: dict[str, Any]) -> None:
        collection = self._require_collection()
        try:
            # insert_one adds _id to the dict it is given
            await collection.insert_one(dict(document))
        except PyMongoError as e:
            raise StorageError(str(e)) from e

    async def watch(self, resume_after: Any = None) -> MongoChangeFeed:
        collection = self._require_collection()
        try:
            stream = await collection.watch(_INSERTS_ONLY, resume_after=resume_after)
        except PyMongoError as e:
            raise FeedError(str(e)) from e
        return MongoChangeFeed(stream)

    async def query(
        self,
        *,
        talkgroup: str | None = None,
        since: datetime | None = None,
        exclude_types: Iterable[str] = (),
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[dict[str, Any]]:
        collection = self._require_collection()
        criteria: dict[str, Any] = {}
        if talkgroup is not None:
            criteria["talkgroupOrSource"] = talkgroup
        if since is not None:
            # Timestamps are stored as second-precision ISO strings, which sort lexically
            criteria["timestamp"] = {"$gte": format_timestamp(since)}
        excluded = list(exclude_types)
        if excluded:
            criteria["eventType"] = {"$nin": excluded}

        cursor = collection.find(criteria, projection={"_id": False}).sort(
            "timestamp", DESCENDING if newest_first else ASCENDING
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        try:
            return await cursor.to_list(None)
        except PyMongoError as e:
            raise StorageError(str(e)) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collection = None
            logger.info("MongoDB connection closed")
