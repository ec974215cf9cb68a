"""Redis client with connection pooling and graceful fallback."""
import logging
import re

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import NoScriptError, RedisError

logger = logging.getLogger(__name__)

# Lua script for fixed window rate limiting.
# Atomic: reads the counter, rejects without incrementing once the limit is
# reached, otherwise increments and pushes the expiry to the end of the window.
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
    return {0, current}  -- denied, counter untouched
end

local count = redis.call('INCR', key)
redis.call('EXPIRE', key, ttl)
return {1, count}  -- allowed, new count
"""

# Characters with special meaning in SCAN MATCH patterns
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")

# Keys deleted per DEL call during prefix invalidation
_DELETE_BATCH_SIZE = 500


class RedisClient:
    """Async Redis client with connection pooling and graceful fallback."""

    def __init__(
        self,
        url: str,
        enabled: bool = True,
        pool_size: int = 20,
        timeout: float | None = None,
        client: Redis | None = None,
    ) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._timeout = timeout
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._injected_client = client
        self._fixed_window_sha: str | None = None

    async def connect(self) -> None:
        """Initialize connection pool and load Lua scripts."""
        if not self._enabled:
            logger.info("Redis disabled by configuration")
            return
        try:
            if self._injected_client is not None:
                self._client = self._injected_client
            else:
                self._pool = ConnectionPool.from_url(
                    self._url,
                    max_connections=self._pool_size,
                    socket_timeout=self._timeout,
                    socket_connect_timeout=self._timeout,
                )
                self._client = Redis(connection_pool=self._pool)
            # Verify connection
            await self._client.ping()
            await self._load_scripts()
            logger.info("Redis connected successfully")
        except RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            self._client = None
            self._pool = None

    async def _load_scripts(self) -> None:
        """Load Lua scripts and store their SHAs for evalsha calls."""
        if not self._client:
            return
        try:
            self._fixed_window_sha = await self._client.script_load(FIXED_WINDOW_SCRIPT)
            logger.info("Redis Lua scripts loaded")
        except RedisError as e:
            logger.warning("Failed to load Lua scripts: %s", e)
            self._fixed_window_sha = None

    async def close(self) -> None:
        """Close connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def enabled(self) -> bool:
        """Whether Redis is enabled by configuration."""
        return self._enabled

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None

    @property
    def fixed_window_sha(self) -> str | None:
        """Get SHA for fixed window script."""
        return self._fixed_window_sha

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False

    async def get(self, key: str) -> bytes | None:
        """Get value, returns None if Redis unavailable."""
        if not self._client:
            return None
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.warning("Redis GET failed: %s", e)
            return None

    async def setex(self, key: str, seconds: int, value: str | bytes) -> bool:
        """Set value with expiry, returns False if Redis unavailable."""
        if not self._client:
            return False
        try:
            await self._client.setex(key, seconds, value)
            return True
        except RedisError as e:
            logger.warning("Redis SETEX failed: %s", e)
            return False

    async def delete(self, *keys: str) -> bool:
        """Delete key(s), returns False if Redis unavailable."""
        if not self._client:
            return False
        if not keys:
            return True
        try:
            await self._client.delete(*keys)
            return True
        except RedisError as e:
            logger.warning("Redis DELETE failed: %s", e)
            return False

    async def keys_by_prefix(self, prefix: str) -> list[str]:
        """
        List keys starting with prefix using SCAN (non-blocking, unlike KEYS).

        Glob metacharacters in the prefix are escaped so they match literally.
        Returns an empty list if Redis is unavailable.
        """
        if not self._client:
            return []
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        try:
            return [
                key.decode() if isinstance(key, bytes) else key
                async for key in self._client.scan_iter(match=pattern, count=500)
            ]
        except RedisError as e:
            logger.warning("Redis SCAN failed: %s", e)
            return []

    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number of keys targeted."""
        keys = await self.keys_by_prefix(prefix)
        for start in range(0, len(keys), _DELETE_BATCH_SIZE):
            await self.delete(*keys[start:start + _DELETE_BATCH_SIZE])
        return len(keys)

    async def eval_fixed_window(
        self,
        key: str,
        max_requests: int,
        ttl_seconds: int,
    ) -> list[int] | None:
        """
        Execute fixed window rate limit script with automatic script reload.

        Handles NOSCRIPT errors by reloading scripts and retrying once.

        Args:
            key: Redis key for this window's counter
            max_requests: Maximum requests allowed in window
            ttl_seconds: Expiry applied to the counter when it is incremented

        Returns:
            [allowed, count] or None if Redis unavailable
        """
        # SHA is None when Redis was unavailable at startup or a reload failed.
        # Either way the caller decides the fail-open/closed policy from None.
        if not self._client or self._fixed_window_sha is None:
            return None

        try:
            return await self._client.evalsha(
                self._fixed_window_sha, 1, key, max_requests, ttl_seconds,
            )
        except NoScriptError:
            # Redis restarted, scripts need reloading
            logger.warning("redis_script_reload", extra={"script": "fixed_window"})
            await self._load_scripts()
            if self._fixed_window_sha is None:
                return None
            # Retry once with fresh SHA
            try:
                return await self._client.evalsha(
                    self._fixed_window_sha, 1, key, max_requests, ttl_seconds,
                )
            except RedisError as e:
                logger.warning("Redis fixed window retry failed: %s", e)
                return None
        except RedisError as e:
            logger.warning("Redis fixed window failed: %s", e)
            return None
