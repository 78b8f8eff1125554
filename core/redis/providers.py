from dishka import Provider, Scope, provide, FromComponent
from typing import Annotated, AsyncIterable
from core.environment.config import Settings
from redis.asyncio import Redis
from redis.exceptions import RedisError
import json
import logging


class CacheService:
    """
    Service for caching data in Redis.

    The cache is optional: without a client every lookup misses and
    every write is dropped, so callers never depend on Redis being up.

    Parameters
    ----------
    redis_client : Redis | None
        Redis client instance, or None when caching is disabled
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, redis_client: Redis | None, logger: logging.Logger):
        self.redis = redis_client
        self.logger = logger

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def get(self, key: str) -> dict | None:
        """
        Get cached value.

        Parameters
        ----------
        key : str
            Cache key

        Returns
        -------
        dict | None
            Cached value or None
        """
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(key)
            if value:
                return json.loads(value)
        except (RedisError, ValueError) as e:
            self.logger.debug(f"Cache read error for {key}: {e}")
        return None

    async def set(self, key: str, value: dict, ttl: int = 3600) -> bool:
        """
        Set cached value.

        Parameters
        ----------
        key : str
            Cache key
        value : dict
            Value to cache
        ttl : int
            Time to live in seconds

        Returns
        -------
        bool
            Success status
        """
        if self.redis is None:
            return False
        try:
            await self.redis.setex(
                key,
                ttl,
                json.dumps(value)
            )
            return True
        except RedisError as e:
            self.logger.debug(f"Cache write error for {key}: {e}")
            return False


class CacheProvider(Provider):
    """
    Provider for the Redis-backed cache service.
    """

    component = "cache"
    scope = Scope.APP

    @provide(scope=Scope.APP)
    async def provide_cache_service(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> AsyncIterable[CacheService]:
        """
        Create the cache service, connecting to Redis when configured.

        An unreachable Redis disables the cache instead of failing
        startup: cached token metadata can always be read from chain.

        Parameters
        ----------
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Yields
        ------
        CacheService
            Cache service instance
        """
        if not settings.redis_host:
            logger.info("Redis is not configured, token metadata cache disabled")
            yield CacheService(None, logger)
            return

        redis_client = Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password if settings.redis_password else None,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

        try:
            await redis_client.ping()
        except RedisError as e:
            logger.warning(f"Failed to connect to Redis, cache disabled: {e}")
            await redis_client.aclose()
            yield CacheService(None, logger)
            return

        try:
            yield CacheService(redis_client, logger)
        finally:
            await redis_client.aclose()
