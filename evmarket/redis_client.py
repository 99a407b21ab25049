"""
Redis client wrapper with connection pooling, retry logic, and optimistic transactions.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, Dict, List
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError,
    WatchError
)

from evmarket.config import Config
from evmarket.exceptions import RedisConnectionError, TransactionConflictError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        # An injected client manages its own connections
        self._owns_pool = client is None
        if self._owns_pool:
            self._connect()

    def _connect(self):
        """Initialize Redis connection pool"""
        try:
            options = dict(
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )
            if Config.REDIS_SSL:
                # ElastiCache uses self-signed certs
                options["ssl_cert_reqs"] = None

            self.pool = redis.ConnectionPool.from_url(Config.redis_url(), **options)
            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            self.client.ping()

        except (ConnectionError, AuthenticationError) as e:
            raise RedisConnectionError(f"Failed to connect to Redis: {e}")

    def _retry_with_backoff(
        self,
        func: Callable,
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute function with exponential backoff retry.

        Args:
            func: Function to execute
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            RedisConnectionError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    # Last attempt failed, raise error
                    raise RedisConnectionError(f"Redis operation failed after {max_retries} retries: {e}")

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                time.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

                if self._owns_pool:
                    try:
                        self._connect()
                    except RedisConnectionError as reconnect_error:
                        logger.warning(f"Reconnect attempt failed: {reconnect_error}")

            except WatchError:
                # Handled by transaction()
                raise
            except RedisError as e:
                # Non-retryable errors
                raise RedisConnectionError(f"Redis error: {e}")

    def transaction(
        self,
        func: Callable[[Any], Any],
        *watches: str,
        max_attempts: Optional[int] = None
    ) -> Any:
        """
        Run ``func(pipe)`` as one optimistic MULTI/EXEC transaction.

        The pipeline starts in immediate mode with ``watches`` under WATCH, so reads made
        through ``pipe`` see live data. ``func`` may WATCH further keys, must call
        ``pipe.multi()`` before queueing writes, and returns the transaction result.
        If any watched key changes before EXEC the whole function is re-run.

        Raises:
            TransactionConflictError: If watched keys keep changing
            RedisConnectionError: If Redis is unavailable
        """
        attempts = max_attempts or Config.TRANSACTION_MAX_ATTEMPTS

        def _run():
            with self.client.pipeline() as pipe:
                if watches:
                    pipe.watch(*watches)
                result = func(pipe)
                pipe.execute()
                return result

        for attempt in range(1, attempts + 1):
            try:
                return self._retry_with_backoff(_run)
            except WatchError:
                logger.info(f"Watched keys changed, retrying transaction ({attempt}/{attempts})")

        raise TransactionConflictError(
            f"Transaction aborted after {attempts} conflicting concurrent updates"
        )

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        def _get():
            return self.client.get(key)
        return self._retry_with_backoff(_get)

    def mget(self, keys: List[str]) -> List[Optional[str]]:
        """Get several values in one round trip"""
        def _mget():
            return self.client.mget(keys) if keys else []
        return self._retry_with_backoff(_mget)

    def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        """Set value in Redis with optional TTL"""
        def _set():
            return self.client.set(key, value, ex=ex, nx=nx)
        return self._retry_with_backoff(_set)

    def delete(self, *keys: str) -> int:
        """Delete one or more keys"""
        def _delete():
            return self.client.delete(*keys)
        return self._retry_with_backoff(_delete)

    def exists(self, *keys: str) -> int:
        """Check if keys exist"""
        def _exists():
            return self.client.exists(*keys)
        return self._retry_with_backoff(_exists)

    def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        """Set fields in hash"""
        def _hset():
            return self.client.hset(key, mapping=mapping)
        return self._retry_with_backoff(_hset)

    def hgetall(self, key: str) -> dict:
        """Get all fields from hash"""
        def _hgetall():
            return self.client.hgetall(key)
        return self._retry_with_backoff(_hgetall)

    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Get a slice of a list"""
        def _lrange():
            return self.client.lrange(key, start, end)
        return self._retry_with_backoff(_lrange)

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return self.client.ping()
        except RedisError:
            return False

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.disconnect()


# Global Redis client instance
_redis_client: Optional[RedisClient] = None

def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
