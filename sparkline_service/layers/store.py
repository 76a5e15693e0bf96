"""
持久化存储引擎
MongoDB（motor） / Redis（redis.asyncio） / 本地文件 三种后端，接口一致：

  open / close / get / bulk_get / upsert / delete_older_than /
  delete_oldest / count / clear / stats

后端本身不吞异常，容错统一由 PersistentCache 负责。
"""

import hashlib
import json
import logging
import os
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from redis.asyncio import Redis

from sparkline_service.config import SparklineSettings
from sparkline_service.models.sparkline import CacheKey, PersistentRecord

logger = logging.getLogger(__name__)


def _empty_stats() -> Dict[str, Any]:
    return {"total_entries": 0, "total_size_bytes": 0, "oldest_entry": None, "newest_entry": None}


# ── MongoDB ──────────────────────────────────────────────

class MongoSparklineStore:
    name = "mongodb"

    def __init__(self, cfg: SparklineSettings):
        self._cfg = cfg
        self._client: Optional[AsyncIOMotorClient] = None
        self._coll: Optional[AsyncIOMotorCollection] = None

    async def open(self) -> None:
        self._client = AsyncIOMotorClient(
            self._cfg.MONGO_URI,
            serverSelectionTimeoutMS=self._cfg.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        )
        try:
            await self._client.admin.command("ping")
            self._coll = self._client[self._cfg.MONGODB_DATABASE][self._cfg.SPARKLINE_TABLE]
            await self._coll.create_index([("symbol", 1), ("market_type", 1)], unique=True)
            await self._coll.create_index("last_fetched_ts")
        except Exception:
            self._client.close()
            self._client = None
            raise
        logger.info(f"✅ MongoDB 存储就绪: {self._cfg.MONGODB_HOST}:{self._cfg.MONGODB_PORT}")

    async def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._coll = None

    @staticmethod
    def _filter(key: CacheKey) -> Dict[str, str]:
        return {"symbol": key.symbol, "market_type": key.market_type}

    async def get(self, key: CacheKey) -> Optional[PersistentRecord]:
        doc = await self._coll.find_one(self._filter(key), {"_id": 0})
        return PersistentRecord.model_validate(doc) if doc else None

    async def bulk_get(self, keys: List[CacheKey]) -> List[PersistentRecord]:
        if not keys:
            return []
        cursor = self._coll.find({"$or": [self._filter(k) for k in keys]}, {"_id": 0})
        docs = await cursor.to_list(length=None)
        return [PersistentRecord.model_validate(d) for d in docs]

    async def upsert(self, record: PersistentRecord) -> None:
        await self._coll.replace_one(self._filter(record.key), record.model_dump(), upsert=True)

    async def delete_older_than(self, cutoff_ms: int) -> int:
        result = await self._coll.delete_many({"last_fetched_ts": {"$lt": cutoff_ms}})
        return result.deleted_count

    async def delete_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        cursor = self._coll.find({}, {"_id": 1}).sort("last_fetched_ts", 1).limit(n)
        ids = [d["_id"] for d in await cursor.to_list(length=n)]
        result = await self._coll.delete_many({"_id": {"$in": ids}})
        return result.deleted_count

    async def count(self) -> int:
        return await self._coll.count_documents({})

    async def clear(self) -> None:
        await self._coll.delete_many({})

    async def stats(self) -> Dict[str, Any]:
        pipeline = [{
            "$group": {
                "_id": None,
                "total_entries": {"$sum": 1},
                "total_size_bytes": {"$sum": {"$bsonSize": "$$ROOT"}},
                "oldest_entry": {"$min": "$last_fetched_ts"},
                "newest_entry": {"$max": "$last_fetched_ts"},
            }
        }]
        rows = await self._coll.aggregate(pipeline).to_list(length=1)
        if not rows:
            return _empty_stats()
        rows[0].pop("_id", None)
        return rows[0]


# ── Redis ────────────────────────────────────────────────

class RedisSparklineStore:
    """每个键一条 JSON 字符串，另以有序集合按 last_fetched_ts 建立索引"""

    name = "redis"

    def __init__(self, cfg: SparklineSettings):
        self._cfg = cfg
        self._redis: Optional[Redis] = None
        self._index = f"{cfg.SPARKLINE_TABLE}:index"

    async def open(self) -> None:
        self._redis = Redis.from_url(
            self._cfg.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=5,
        )
        try:
            await self._redis.ping()
        except Exception:
            await self._redis.aclose()
            self._redis = None
            raise
        logger.info(f"✅ Redis 存储就绪: {self._cfg.REDIS_HOST}:{self._cfg.REDIS_PORT}")

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _record_key(self, member: str) -> str:
        return f"{self._cfg.SPARKLINE_TABLE}:{member}"

    async def get(self, key: CacheKey) -> Optional[PersistentRecord]:
        raw = await self._redis.get(self._record_key(key.render()))
        return PersistentRecord.model_validate_json(raw) if raw else None

    async def bulk_get(self, keys: List[CacheKey]) -> List[PersistentRecord]:
        if not keys:
            return []
        raws = await self._redis.mget([self._record_key(k.render()) for k in keys])
        return [PersistentRecord.model_validate_json(r) for r in raws if r]

    async def upsert(self, record: PersistentRecord) -> None:
        member = record.key.render()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._record_key(member), record.model_dump_json())
            pipe.zadd(self._index, {member: record.last_fetched_ts})
            await pipe.execute()

    async def _delete_members(self, members: List[str]) -> int:
        if not members:
            return 0
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._record_key(m) for m in members])
            pipe.zrem(self._index, *members)
            await pipe.execute()
        return len(members)

    async def delete_older_than(self, cutoff_ms: int) -> int:
        members = await self._redis.zrangebyscore(self._index, "-inf", f"({cutoff_ms}")
        return await self._delete_members(members)

    async def delete_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        members = await self._redis.zrange(self._index, 0, n - 1)
        return await self._delete_members(members)

    async def count(self) -> int:
        return await self._redis.zcard(self._index)

    async def clear(self) -> None:
        members = await self._redis.zrange(self._index, 0, -1)
        await self._delete_members(members)
        await self._redis.delete(self._index)

    async def stats(self) -> Dict[str, Any]:
        members = await self._redis.zrange(self._index, 0, -1, withscores=True)
        if not members:
            return _empty_stats()
        async with self._redis.pipeline(transaction=False) as pipe:
            for member, _ in members:
                pipe.strlen(self._record_key(member))
            sizes = await pipe.execute()
        return {
            "total_entries": len(members),
            "total_size_bytes": int(sum(sizes)),
            "oldest_entry": int(members[0][1]),
            "newest_entry": int(members[-1][1]),
        }


# ── 本地文件 ─────────────────────────────────────────────

class FileSparklineStore:
    """每个键一个 JSON 文件，无需外部服务的嵌入式默认后端"""

    name = "file"

    def __init__(self, cfg: SparklineSettings):
        self._dir = os.path.join(cfg.CACHE_DIR, cfg.SPARKLINE_TABLE)

    async def open(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        logger.info(f"✅ 文件存储就绪: {self._dir}")

    async def close(self) -> None:
        return None

    def _path(self, key: CacheKey) -> str:
        raw = key.render()
        safe = raw.replace(":", "_").replace("/", "_")
        digest = hashlib.md5(raw.encode()).hexdigest()[:8]
        return os.path.join(self._dir, f"{safe}_{digest}.json")

    def _files(self) -> List[str]:
        if not os.path.exists(self._dir):
            return []
        return [os.path.join(self._dir, f) for f in os.listdir(self._dir) if f.endswith(".json")]

    @staticmethod
    def _read(path: str) -> Optional[PersistentRecord]:
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return PersistentRecord.model_validate(json.load(fh))

    def _read_or_discard(self, path: str) -> Optional[PersistentRecord]:
        """读取失败的文件视为损坏记录：删除并按未命中处理"""
        try:
            return self._read(path)
        except (OSError, ValueError) as exc:
            logger.debug(f"丢弃损坏的缓存文件 {path}: {exc}")
        try:
            os.remove(path)
        except OSError as exc:
            logger.debug(f"损坏的缓存文件删除失败 {path}: {exc}")
        return None

    def _all(self) -> List[tuple]:
        rows = []
        for path in self._files():
            record = self._read_or_discard(path)
            if record is not None:
                rows.append((path, record))
        return rows

    async def get(self, key: CacheKey) -> Optional[PersistentRecord]:
        return self._read_or_discard(self._path(key))

    async def bulk_get(self, keys: List[CacheKey]) -> List[PersistentRecord]:
        records = []
        for key in keys:
            record = self._read_or_discard(self._path(key))
            if record is not None:
                records.append(record)
        return records

    async def upsert(self, record: PersistentRecord) -> None:
        path = self._path(record.key)
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(record.model_dump(), fh, ensure_ascii=False)
        os.replace(tmp, path)

    async def delete_older_than(self, cutoff_ms: int) -> int:
        removed = 0
        for path, record in self._all():
            if record.last_fetched_ts < cutoff_ms:
                os.remove(path)
                removed += 1
        return removed

    async def delete_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        rows = sorted(self._all(), key=lambda row: row[1].last_fetched_ts)[:n]
        for path, _ in rows:
            os.remove(path)
        return len(rows)

    async def count(self) -> int:
        return len(self._all())

    async def clear(self) -> None:
        for path in self._files():
            os.remove(path)

    async def stats(self) -> Dict[str, Any]:
        rows = self._all()
        if not rows:
            return _empty_stats()
        stamps = [record.last_fetched_ts for _, record in rows]
        return {
            "total_entries": len(rows),
            "total_size_bytes": sum(os.path.getsize(path) for path, _ in rows),
            "oldest_entry": min(stamps),
            "newest_entry": max(stamps),
        }


# ── 后端选择 ─────────────────────────────────────────────

_BACKENDS = {
    "mongodb": MongoSparklineStore,
    "redis": RedisSparklineStore,
    "file": FileSparklineStore,
}


def _candidates(cfg: SparklineSettings) -> List[str]:
    if cfg.STORE_BACKEND == "none":
        return []
    if cfg.STORE_BACKEND != "auto":
        return [cfg.STORE_BACKEND]
    order = []
    if cfg.MONGODB_ENABLED:
        order.append("mongodb")
    if cfg.REDIS_ENABLED:
        order.append("redis")
    order.append("file")
    return order


async def open_store(cfg: SparklineSettings):
    """按 MongoDB → Redis → 文件 的优先级打开第一个可用后端，全部失败返回 None"""
    for name in _candidates(cfg):
        store = _BACKENDS[name](cfg)
        try:
            await store.open()
            return store
        except Exception as exc:
            logger.warning(f"⚠️ 持久化后端 {name} 不可用，尝试下一个: {exc}")
    logger.warning("⚠️ 无可用的持久化后端，降级为纯内存缓存")
    return None
