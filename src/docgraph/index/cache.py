from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import CacheFailure
from .vector_store import EmbeddingVector


logger = logging.getLogger(__name__)

SWEEP_INTERVAL_S = 60.0


@dataclass
class CacheStats:
    """Hit/miss counters plus a size gauge, updated by every cache backend."""

    hits: int = 0
    misses: int = 0
    size: int = 0

    def record_hit(self) -> None:
        self.hits += 1

    def record_miss(self) -> None:
        self.misses += 1

    def set_size(self, n: int) -> None:
        self.size = int(n)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EmbeddingCache(ABC):
    """Key -> EmbeddingVector store.

    Backends never raise from these methods: a failing backend logs and
    behaves like an empty cache so the caller recomputes.
    """

    stats: CacheStats

    @abstractmethod
    def get(self, key: str) -> EmbeddingVector | None: ...

    @abstractmethod
    def set(self, key: str, vector: EmbeddingVector) -> None: ...

    @abstractmethod
    def has(self, key: str) -> bool: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def size(self) -> int: ...

    @abstractmethod
    def get_all(self) -> list[EmbeddingVector]: ...

    def close(self) -> None:
        pass


def _stamp(vector: EmbeddingVector, now: float) -> EmbeddingVector:
    meta = dataclasses.replace(vector.metadata, cached_at=datetime.fromtimestamp(now, tz=timezone.utc))
    return dataclasses.replace(vector, metadata=meta)


def _age_s(vector: EmbeddingVector, now: float) -> float | None:
    cached_at = vector.metadata.cached_at
    if cached_at is None:
        return None
    if cached_at.tzinfo is None:
        cached_at = cached_at.replace(tzinfo=timezone.utc)
    return now - cached_at.timestamp()


class MemoryEmbeddingCache(EmbeddingCache):
    def __init__(
        self,
        ttl_seconds: float | None = None,
        *,
        stats: CacheStats | None = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = SWEEP_INTERVAL_S,
    ):
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds else None
        self.stats = stats or CacheStats()
        self._clock = clock
        self._entries: dict[str, EmbeddingVector] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

        if self.ttl_seconds:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(float(sweep_interval),),
                name="embedding-cache-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    def _expired(self, vector: EmbeddingVector) -> bool:
        if not self.ttl_seconds:
            return False
        age = _age_s(vector, self._clock())
        return age is not None and age > self.ttl_seconds

    def get(self, key: str) -> EmbeddingVector | None:
        vector = self._entries.get(key)
        if vector is None:
            self.stats.record_miss()
            return None
        if self._expired(vector):
            self.delete(key)
            self.stats.record_miss()
            return None
        self.stats.record_hit()
        return vector

    def set(self, key: str, vector: EmbeddingVector) -> None:
        with self._lock:
            self._entries[key] = _stamp(vector, self._clock())
            self.stats.set_size(len(self._entries))
        logger.debug("Cached embedding %s in memory (dim=%d)", key, len(vector.vector))

    def has(self, key: str) -> bool:
        vector = self._entries.get(key)
        return vector is not None and not self._expired(vector)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self.stats.set_size(len(self._entries))

    def clear(self) -> None:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            self.stats.set_size(0)
        logger.info("Memory embedding cache cleared (%d entries)", n)

    def size(self) -> int:
        return len(self._entries)

    def get_all(self) -> list[EmbeddingVector]:
        self.sweep()
        return list(self._entries.values())

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        if not self.ttl_seconds:
            return 0
        with self._lock:
            doomed = [k for k, v in self._entries.items() if self._expired(v)]
            for k in doomed:
                del self._entries[k]
            self.stats.set_size(len(self._entries))
        if doomed:
            logger.debug("Evicted %d expired embeddings (%d remain)", len(doomed), len(self._entries))
        return len(doomed)

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Memory cache sweep failed")

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None


class RedisEmbeddingCache(EmbeddingCache):
    """Redis-backed cache; TTL is enforced by Redis via SET ... EX."""

    prefix = "embedding:"

    def __init__(
        self,
        client: Any,
        ttl_seconds: float | None = None,
        *,
        stats: CacheStats | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = client
        self.ttl_seconds = int(ttl_seconds) if ttl_seconds else None
        self.stats = stats or CacheStats()
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, ttl_seconds: float | None = None, *, stats: CacheStats | None = None) -> "RedisEmbeddingCache":
        import redis

        client = redis.Redis.from_url(url, socket_connect_timeout=2.0, socket_timeout=2.0)
        client.ping()
        return cls(client, ttl_seconds, stats=stats)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _keys(self) -> list[Any]:
        return list(self._redis.scan_iter(match=f"{self.prefix}*", count=500))

    def _decode(self, key: str, raw: Any) -> EmbeddingVector:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            return EmbeddingVector.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            raise CacheFailure(f"Malformed cached embedding at {key}: {e}") from e

    def get(self, key: str) -> EmbeddingVector | None:
        try:
            raw = self._redis.get(self._key(key))
            if raw is None:
                self.stats.record_miss()
                return None
            vector = self._decode(key, raw)
        except CacheFailure as e:
            logger.error("%s; dropping entry", e)
            self.delete(key)
            self.stats.record_miss()
            return None
        except Exception as e:
            logger.error("Embedding cache get failed for %s: %s", key, e)
            self.stats.record_miss()
            return None

        age = _age_s(vector, self._clock())
        if self.ttl_seconds and age is not None and age > self.ttl_seconds:
            self.delete(key)
            self.stats.record_miss()
            return None

        self.stats.record_hit()
        return vector

    def set(self, key: str, vector: EmbeddingVector) -> None:
        try:
            payload = json.dumps(_stamp(vector, self._clock()).to_dict())
            if self.ttl_seconds:
                self._redis.set(self._key(key), payload, ex=self.ttl_seconds)
            else:
                self._redis.set(self._key(key), payload)
        except Exception as e:
            logger.error("Embedding cache set failed for %s: %s", key, e)
            return
        self._update_size()

    def has(self, key: str) -> bool:
        try:
            return bool(self._redis.exists(self._key(key)))
        except Exception as e:
            logger.error("Embedding cache has check failed for %s: %s", key, e)
            return False

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(self._key(key))
        except Exception as e:
            logger.error("Embedding cache delete failed for %s: %s", key, e)
            return
        self._update_size()

    def clear(self) -> None:
        try:
            keys = self._keys()
            if keys:
                self._redis.delete(*keys)
        except Exception as e:
            logger.error("Embedding cache clear failed: %s", e)
            return
        logger.info("Redis embedding cache cleared (%d keys)", len(keys))
        self._update_size()

    def size(self) -> int:
        try:
            return len(self._keys())
        except Exception as e:
            logger.error("Embedding cache size check failed: %s", e)
            return 0

    def get_all(self) -> list[EmbeddingVector]:
        out: list[EmbeddingVector] = []
        try:
            keys = self._keys()
        except Exception as e:
            logger.error("Embedding cache get_all failed: %s", e)
            return []
        for k in keys:
            name = k.decode("utf-8") if isinstance(k, bytes) else str(k)
            try:
                raw = self._redis.get(name)
                if raw is None:
                    continue
                out.append(self._decode(name, raw))
            except CacheFailure as e:
                logger.warning("%s; skipping", e)
            except Exception as e:
                logger.error("Embedding cache read failed for %s: %s", name, e)
        return out

    def _update_size(self) -> None:
        self.stats.set_size(self.size())

    def close(self) -> None:
        try:
            self._redis.close()
        except Exception as e:
            logger.debug("Redis close failed: %s", e)
