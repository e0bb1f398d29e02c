import redis
from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)

USE_REDIS = settings.USE_REDIS

# Redis connection pool
pool = redis.ConnectionPool(
    host=settings.REDIS_HOST,
    port=settings.REDIS_PORT,
    db=settings.REDIS_DB,
    password=settings.REDIS_PASSWORD or None,
    decode_responses=True,
    max_connections=20,
    socket_timeout=0.25,
    socket_connect_timeout=0.25,
)

redis_client = redis.Redis(connection_pool=pool)


class RedisService:
    """Redis-backed visitor sets used to speed up unique-click checks."""

    VISITORS_PREFIX = "visitors:link:"

    VISITORS_TTL = 30 * 86400  # 30 days

    @staticmethod
    def is_known_visitor(link_id: int, ip_hash: str) -> bool:
        """
        True only when Redis positively remembers this visitor for the link.
        False means "not cached", so callers must confirm against the database.
        """
        if not USE_REDIS:
            return False
        try:
            key = f"{RedisService.VISITORS_PREFIX}{link_id}"
            return bool(redis_client.sismember(key, ip_hash))
        except redis.RedisError as e:
            logger.debug(f"Visitor lookup failed for link {link_id}: {e}")
            return False

    @staticmethod
    def remember_visitor(link_id: int, ip_hash: str) -> bool:
        """Add a visitor hash to the link's set. Returns False if Redis is unavailable."""
        if not USE_REDIS:
            return False
        try:
            key = f"{RedisService.VISITORS_PREFIX}{link_id}"
            redis_client.sadd(key, ip_hash)
            redis_client.expire(key, RedisService.VISITORS_TTL)
            return True
        except redis.RedisError as e:
            logger.debug(f"Failed to remember visitor for link {link_id}: {e}")
            return False

    @staticmethod
    def health_check() -> bool:
        """Check Redis connection health."""
        if not USE_REDIS:
            return True
        try:
            return bool(redis_client.ping())
        except redis.RedisError:
            return False
