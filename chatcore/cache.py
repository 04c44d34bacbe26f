"""
Advisory Cache Manager
Presence registry, recent-message cache and unread counters on Redis.

Every operation here is best-effort: when Redis is missing or failing the
call is logged and a safe default is returned, so the request path never
depends on the volatile store.
"""
import json
from typing import Any, Optional, List, Dict
from . import core
from .errors import AdvisoryStoreFailure
import logging

logger = logging.getLogger(__name__)


def _decode(value):
    return value.decode() if isinstance(value, bytes) else value


class CacheManager:
    """
    Thin wrapper over the shared Redis client.
    Failures are absorbed and turned into defaults.
    """

    def __init__(self):
        self.default_ttl = 3600  # 1 hour default TTL

    def _client(self):
        client = core.get_redis()
        if client is None:
            raise AdvisoryStoreFailure('redis unavailable')
        return client

    def _make_key(self, key: str, prefix: str = "") -> str:
        """Generate cache key with prefix"""
        if prefix:
            return f"{prefix}:{key}"
        return key

    async def set(self, key: str, value: Any, ttl: int = None, prefix: str = "") -> bool:
        """Set cache value with TTL"""
        cache_key = self._make_key(key, prefix)
        ttl = ttl or self.default_ttl

        try:
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            await self._client().set(cache_key, value, ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for key {cache_key}: {str(e)}")
            return False

    async def get(self, key: str, prefix: str = "") -> Optional[str]:
        """Get cache value as a string"""
        cache_key = self._make_key(key, prefix)

        try:
            value = await self._client().get(cache_key)
            return None if value is None else _decode(value)
        except Exception as e:
            logger.warning(f"Cache get failed for key {cache_key}: {str(e)}")
            return None

    async def delete(self, key: str, prefix: str = "") -> bool:
        """Delete cache key"""
        cache_key = self._make_key(key, prefix)

        try:
            result = await self._client().delete(cache_key)
            return result > 0
        except Exception as e:
            logger.warning(f"Cache delete failed for key {cache_key}: {str(e)}")
            return False

    async def increment(self, key: str, amount: int = 1, ttl: int = None, prefix: str = "") -> Optional[int]:
        """Increment a counter atomically and refresh its TTL"""
        cache_key = self._make_key(key, prefix)
        ttl = ttl or self.default_ttl

        try:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.incrby(cache_key, amount)
                pipe.expire(cache_key, ttl)
                value, _ = await pipe.execute()
            return int(value)
        except Exception as e:
            logger.warning(f"Cache increment failed for key {cache_key}: {str(e)}")
            return None

    async def push_capped(self, key: str, value: Any, cap: int, ttl: int = None, prefix: str = "") -> bool:
        """Prepend to a list, keep the newest `cap` entries and refresh the list TTL"""
        cache_key = self._make_key(key, prefix)
        ttl = ttl or self.default_ttl

        try:
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.lpush(cache_key, value)
                pipe.ltrim(cache_key, 0, cap - 1)
                pipe.expire(cache_key, ttl)
                await pipe.execute()
            return True
        except Exception as e:
            logger.warning(f"Cache push_capped failed for key {cache_key}: {str(e)}")
            return False

    async def get_list(self, key: str, start: int = 0, end: int = -1, prefix: str = "") -> List[Any]:
        """Get list slice from cache, JSON entries decoded"""
        cache_key = self._make_key(key, prefix)

        try:
            values = await self._client().lrange(cache_key, start, end)
        except Exception as e:
            logger.warning(f"Cache get_list failed for key {cache_key}: {str(e)}")
            return []

        result = []
        for value in values:
            try:
                result.append(json.loads(value))
            except (json.JSONDecodeError, TypeError):
                result.append(_decode(value))
        return result

# Global cache manager instance
cache = CacheManager()

# Presence registry
async def set_connection(user_id: int, handle: str) -> bool:
    """Remember which connection currently serves the user"""
    return await cache.set(f"user:{user_id}:socket", handle, core.PRESENCE_CONNECTION_TTL)

async def get_connection(user_id: int) -> Optional[str]:
    return await cache.get(f"user:{user_id}:socket")

async def clear_connection(user_id: int) -> bool:
    return await cache.delete(f"user:{user_id}:socket")

async def set_online(user_id: int) -> bool:
    return await cache.set(f"user:{user_id}:online", 'true', core.PRESENCE_ONLINE_TTL)

async def is_online(user_id: int) -> bool:
    return await cache.get(f"user:{user_id}:online") == 'true'

async def set_offline(user_id: int) -> bool:
    return await cache.delete(f"user:{user_id}:online")

# Recent messages
async def push_recent_message(thread_id: str, message: Dict) -> bool:
    """Cache a serialized message at the head of the thread list"""
    return await cache.push_capped(
        f"thread:{thread_id}:messages",
        message,
        cap=core.RECENT_MESSAGES_LIMIT,
        ttl=core.RECENT_MESSAGES_TTL,
    )

async def get_recent_messages(thread_id: str, limit: int = 50) -> List[Dict]:
    """Up to `limit` newest cached messages in chronological order, [] on miss"""
    if limit <= 0:
        return []
    messages = await cache.get_list(f"thread:{thread_id}:messages", 0, limit - 1)
    messages.reverse()
    return messages

async def invalidate_recent_messages(thread_id: str):
    await cache.delete(f"thread:{thread_id}:messages")

# Unread counters
async def increment_unread(user_id: int, thread_id: str) -> Optional[int]:
    return await cache.increment(f"user:{user_id}:unread:{thread_id}", 1, ttl=core.UNREAD_TTL)

async def get_unread(user_id: int, thread_id: str) -> int:
    value = await cache.get(f"user:{user_id}:unread:{thread_id}")
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0

async def clear_unread(user_id: int, thread_id: str) -> bool:
    return await cache.delete(f"user:{user_id}:unread:{thread_id}")

async def reconcile_unread(user_id: int, thread_id: str, exact: int) -> int:
    """Overwrite a drifted counter with the count taken from the message log"""
    cached = await get_unread(user_id, thread_id)
    if cached != exact:
        logger.info({'msg': 'unread_counter_reconciled', 'user_id': user_id,
                     'thread_id': thread_id, 'cached': cached, 'exact': exact})
        if exact:
            await cache.set(f"user:{user_id}:unread:{thread_id}", exact, core.UNREAD_TTL)
        else:
            await clear_unread(user_id, thread_id)
    return exact
