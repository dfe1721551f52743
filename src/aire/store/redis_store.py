"""
Redis store implementation

Persists each record as a JSON string and keeps a sorted-set time index per
record kind for range queries.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis

from ..errors import StoreConnectionError, StoreSerializationError
from .base import RecordKind, StoreBackend

logger = logging.getLogger(__name__)


class RedisStore(StoreBackend):
    """
    Redis-based history store

    Layout:
    - ``<prefix><kind>:<id>`` holds the JSON record
    - ``<prefix><kind>:index`` is a sorted set of ids scored by timestamp
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "aire:",
        max_records: int = 10000,
        connection_pool_size: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.key_prefix = key_prefix
        self.max_records = max_records

        if client is not None:
            self.client = client
        else:
            pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                max_connections=connection_pool_size,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
                decode_responses=False,
            )
            self.client = redis.Redis(connection_pool=pool)

    def _record_key(self, kind: RecordKind, record_id: str) -> str:
        return f"{self.key_prefix}{kind.value}:{record_id}"

    def _index_key(self, kind: RecordKind) -> str:
        return f"{self.key_prefix}{kind.value}:index"

    @staticmethod
    def _serialize(record: dict[str, Any]) -> bytes:
        try:
            return json.dumps(record, ensure_ascii=False, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise StoreSerializationError(f"Failed to serialize record: {e}") from e

    @staticmethod
    def _deserialize(data: bytes) -> dict[str, Any]:
        try:
            return json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreSerializationError(f"Failed to deserialize record: {e}") from e

    async def append(
        self,
        kind: RecordKind,
        record_id: str,
        record: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        data = self._serialize(record)
        index_key = self._index_key(kind)
        try:
            pipe = self.client.pipeline()
            pipe.set(self._record_key(kind, record_id), data)
            # NX keeps the original index time when a record is replaced
            pipe.zadd(index_key, {record_id: timestamp.timestamp()}, nx=True)
            pipe.zcard(index_key)
            results = await pipe.execute()

            overflow = results[-1] - self.max_records
            if overflow > 0:
                await self._evict_oldest(kind, overflow)
        except redis.RedisError as e:
            logger.error(f"Redis error in append: {e}")
            raise StoreConnectionError(f"Redis connection error: {e}") from e

    async def _evict_oldest(self, kind: RecordKind, count: int) -> None:
        index_key = self._index_key(kind)
        oldest = await self.client.zrange(index_key, 0, count - 1)
        if not oldest:
            return
        pipe = self.client.pipeline()
        for raw_id in oldest:
            record_id = raw_id.decode("utf-8") if isinstance(raw_id, bytes) else raw_id
            pipe.delete(self._record_key(kind, record_id))
        pipe.zrem(index_key, *oldest)
        await pipe.execute()

    async def update(
        self, kind: RecordKind, record_id: str, fields: dict[str, Any]
    ) -> bool:
        key = self._record_key(kind, record_id)
        try:
            data = await self.client.get(key)
            if data is None:
                return False
            record = self._deserialize(data)
            record.update(fields)
            await self.client.set(key, self._serialize(record))
            return True
        except redis.RedisError as e:
            logger.error(f"Redis error in update: {e}")
            raise StoreConnectionError(f"Redis connection error: {e}") from e

    async def get(self, kind: RecordKind, record_id: str) -> Optional[dict[str, Any]]:
        try:
            data = await self.client.get(self._record_key(kind, record_id))
        except redis.RedisError as e:
            logger.error(f"Redis error in get: {e}")
            raise StoreConnectionError(f"Redis connection error: {e}") from e
        return self._deserialize(data) if data is not None else None

    async def query(
        self,
        kind: RecordKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        if limit is not None and limit <= 0:
            return []
        minimum = since.timestamp() if since is not None else "-inf"
        try:
            ids = await self.client.zrangebyscore(self._index_key(kind), minimum, "+inf")
            if limit is not None:
                ids = ids[-limit:]
            if not ids:
                return []
            keys = [
                self._record_key(
                    kind, raw.decode("utf-8") if isinstance(raw, bytes) else raw
                )
                for raw in ids
            ]
            values = await self.client.mget(keys)
        except redis.RedisError as e:
            logger.error(f"Redis error in query: {e}")
            raise StoreConnectionError(f"Redis connection error: {e}") from e

        records = []
        for data in values:
            if data is None:
                continue
            try:
                records.append(self._deserialize(data))
            except StoreSerializationError as e:
                logger.warning(f"Skipping unreadable {kind.value} record: {e}")
        return records

    async def purge(self, kind: RecordKind, before: datetime) -> int:
        index_key = self._index_key(kind)
        try:
            stale = await self.client.zrangebyscore(
                index_key, "-inf", f"({before.timestamp()}"
            )
            if not stale:
                return 0
            pipe = self.client.pipeline()
            for raw_id in stale:
                record_id = (
                    raw_id.decode("utf-8") if isinstance(raw_id, bytes) else raw_id
                )
                pipe.delete(self._record_key(kind, record_id))
            pipe.zrem(index_key, *stale)
            await pipe.execute()
            return len(stale)
        except redis.RedisError as e:
            logger.error(f"Redis error in purge: {e}")
            raise StoreConnectionError(f"Redis connection error: {e}") from e

    async def get_stats(self) -> dict[str, Any]:
        try:
            pipe = self.client.pipeline()
            for kind in RecordKind:
                pipe.zcard(self._index_key(kind))
            counts = await pipe.execute()
            info = await self.client.info()
        except redis.RedisError as e:
            logger.error(f"Redis error in get_stats: {e}")
            return {"error": str(e)}

        return {
            "counts": {kind.value: count for kind, count in zip(RecordKind, counts)},
            "max_records": self.max_records,
            "redis_info": {
                "redis_version": info.get("redis_version"),
                "used_memory_human": info.get("used_memory_human"),
                "connected_clients": info.get("connected_clients"),
            },
        }

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
