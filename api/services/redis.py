# SPDX-License-Identifier: Apache-2.0

"""
Redis access for the JWT blocklist and the dashboard counters cache.

``REDIS_TOKEN`` selects the Upstash HTTP client (the URL is then the
Upstash REST endpoint); otherwise ``REDIS_URL`` is opened with redis-py.
Redis is optional: every operation degrades to a no-op or a miss.
"""

import os
import json
import time
from typing import Optional, List, Dict, Any, Union, Callable
import redis
from upstash_redis import Redis as UpstashRedis
from opentelemetry import trace
import logging

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

BLOCKLIST_PREFIX = "jwt:blocked:"
STATS_PREFIX = "stats:"
HEALTH_PREFIX = "health:check:"


class RedisConnectionError(Exception):
    """The configured Redis did not answer a ping."""
    pass


def _is_pong(reply: Any) -> bool:
    # redis-py answers True, Upstash answers "PONG"
    return reply is True or reply == "PONG"


def _open_client(url: str, token: Optional[str]):
    if token:
        return UpstashRedis(url=url, token=token), "upstash"
    return redis.from_url(url, decode_responses=True), "redis"


class RedisService:
    """Key/value operations that report failure instead of raising."""

    def __init__(self, redis_url: Optional[str] = None, redis_token: Optional[str] = None):
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        self.redis_token = redis_token or os.getenv("REDIS_TOKEN")
        self.client = None
        self.backend = None

        if not self.redis_url:
            logger.warning("REDIS_URL not set, token revocation and stats caching are disabled")
            return

        try:
            client, backend = _open_client(self.redis_url, self.redis_token)
            if not _is_pong(client.ping()):
                raise RedisConnectionError(f"{backend} did not answer PING")
        except Exception as e:
            logger.error(f"Redis unavailable, continuing without it: {str(e)}")
            return

        self.client, self.backend = client, backend
        logger.info(f"Connected to Redis ({backend})")

    def is_available(self) -> bool:
        return self.client is not None

    def _run(self, command: str, default: Any, call: Callable[[], Any]) -> Any:
        """Run ``call`` against the client, returning ``default`` when Redis is missing or fails."""
        if self.client is None:
            return default
        try:
            return call()
        except Exception as e:
            logger.error(f"Redis {command} failed: {str(e)}")
            return default

    def set_with_ttl(self, key: str, value: Union[str, Dict, List], ttl_seconds: int) -> bool:
        """Store ``value`` (JSON-encoded unless a string) for ``ttl_seconds``."""
        if ttl_seconds <= 0:
            return False
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)

        with tracer.start_as_current_span("redis.setex", attributes={"redis.key": key, "redis.ttl": ttl_seconds}):
            def setex():
                self.client.setex(key, ttl_seconds, value)
                return True
            return self._run("SETEX", False, setex)

    def get(self, key: str) -> Optional[str]:
        return self._run("GET", None, lambda: self.client.get(key))

    def get_json(self, key: str) -> Optional[Any]:
        """Decoded JSON value. A value that is not JSON is treated as a miss."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-JSON value cached under {key}")
            return None

    def delete(self, key: str) -> bool:
        return bool(self._run("DEL", 0, lambda: self.client.delete(key)))

    def exists(self, key: str) -> bool:
        return bool(self._run("EXISTS", 0, lambda: self.client.exists(key)))

    # Token blocklist

    def is_token_blocked(self, token_id: str) -> bool:
        """
        Whether ``token_id`` was revoked.

        Without Redis every token is accepted; the access token lifetime
        bounds how long a revoked one stays usable.
        """
        if not self.is_available():
            logger.warning("Redis unavailable, skipping token revocation check")
            return False

        with tracer.start_as_current_span("redis.is_token_blocked") as span:
            blocked = self.exists(f"{BLOCKLIST_PREFIX}{token_id}")
            span.set_attribute("auth.token_blocked", blocked)
            return blocked

    def block_token(self, token_id: str, ttl_seconds: int) -> bool:
        """Revoke ``token_id`` until it would have expired on its own."""
        if not self.is_available():
            logger.error(f"Redis unavailable, token {token_id} cannot be revoked")
            return False

        blocked = self.set_with_ttl(f"{BLOCKLIST_PREFIX}{token_id}", "1", max(ttl_seconds, 1))
        if blocked:
            logger.info(f"Token {token_id} revoked for {ttl_seconds}s")
        else:
            logger.error(f"Token {token_id} could not be revoked")
        return blocked

    # Dashboard counters

    def cache_stats(self, scope: str, stats: Dict[str, Any], ttl_seconds: int = 60) -> bool:
        """Cache dashboard counters for ``scope`` (``admin`` or an institution id)."""
        return self.set_with_ttl(f"{STATS_PREFIX}{scope}", stats, ttl_seconds)

    def get_cached_stats(self, scope: str) -> Optional[Dict[str, Any]]:
        return self.get_json(f"{STATS_PREFIX}{scope}")

    def invalidate_stats(self, *scopes: str) -> None:
        for scope in filter(None, scopes):
            self.delete(f"{STATS_PREFIX}{scope}")

    # Health

    def ping(self) -> bool:
        return _is_pong(self._run("PING", False, lambda: self.client.ping()))

    def health_check(self) -> Dict[str, Any]:
        """Write, read back and delete a short-lived key."""
        started = time.time()
        if not self.is_available():
            return {"status": "unavailable", "message": "Redis client not initialized", "timestamp": started}

        probe = f"{HEALTH_PREFIX}{int(started)}"
        self.set_with_ttl(probe, "test", 10)
        value = self.get(probe)
        self.delete(probe)

        report = {
            "status": "healthy" if value == "test" else "degraded",
            "backend": self.backend,
            "response_time_ms": round((time.time() - started) * 1000, 2),
            "timestamp": time.time()
        }
        if value != "test":
            report["message"] = "Value written to Redis could not be read back"
        return report
