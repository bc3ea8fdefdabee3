"""Arq broker settings."""

from urllib.parse import urlparse

from arq.connections import RedisSettings

from app.config import get_settings

settings = get_settings()


def parse_redis_url(url: str) -> RedisSettings:
    """Parse ``redis[s]://[user:pass@]host[:port][/db]`` into RedisSettings."""
    parsed = urlparse(url)
    database = 0
    if parsed.path and parsed.path.strip("/"):
        database = int(parsed.path.strip("/"))
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        username=parsed.username or None,
        password=parsed.password or None,
        database=database,
        ssl=parsed.scheme == "rediss",
    )


def mask_redis_url(url: str) -> str:
    """Redis URL with the password replaced, for logs."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":***@", 1)


redis_settings = parse_redis_url(settings.redis_url)
