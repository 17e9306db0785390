from fastapi import Request, status
from fastapi.responses import JSONResponse
import time
import redis
import structlog
from app.core.config import settings

logger = structlog.get_logger()

# Only producer writes are limited; sync and admin routes are internal
LIMITED_PREFIX = "/conversions"
LIMITED_METHODS = frozenset({"POST"})


class ProducerRateLimiter:
    """Redis sliding-window limiter for conversion producers, with an in-memory fallback"""

    def __init__(self, rate: int, period: int, redis_url: str | None = None):
        """
        Args:
            rate: Number of requests allowed
            period: Time period in seconds
        """
        self.rate = rate
        self.period = period
        self.buckets: dict[str, dict[str, float]] = {}
        self.use_redis = False
        if redis_url is None:
            return
        try:
            self.redis_client = redis.from_url(redis_url, decode_responses=False, socket_connect_timeout=1)
            self.redis_client.ping()
            self.use_redis = True
            logger.info("rate_limiter_using_redis")
        except Exception as e:
            logger.warning("rate_limiter_redis_failed_using_memory", error=str(e))

    def is_allowed(self, key: str) -> bool:
        """
        Record a request for key and report whether it is within the limit

        Args:
            key: Identifier (API key or client IP)
        """
        if self.use_redis:
            try:
                return self._is_allowed_redis(key)
            except redis.RedisError as e:
                logger.warning("rate_limiter_redis_error_using_memory", error=str(e))
        return self._is_allowed_memory(key)

    def _is_allowed_redis(self, key: str) -> bool:
        redis_key = f"conversions_rate_limit:{key}"
        now = time.time()
        window_start = now - self.period

        pipe = self.redis_client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, self.period)
        results = pipe.execute()

        # results[1] is the count before adding current request
        return results[1] < self.rate

    def _is_allowed_memory(self, key: str) -> bool:
        now = time.time()
        bucket = self.buckets.setdefault(key, {"tokens": float(self.rate), "last_update": now})

        # Refill tokens based on time passed
        time_passed = now - bucket["last_update"]
        bucket["last_update"] = now
        bucket["tokens"] = min(self.rate, bucket["tokens"] + (time_passed / self.period) * self.rate)

        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True
        return False

    def get_remaining(self, key: str) -> int:
        if self.use_redis:
            try:
                now = time.time()
                count = self.redis_client.zcount(f"conversions_rate_limit:{key}", now - self.period, now)
                return max(0, self.rate - count)
            except redis.RedisError:
                pass
        bucket = self.buckets.get(key)
        if not bucket:
            return self.rate
        return int(bucket["tokens"])


rate_limiter = ProducerRateLimiter(
    rate=settings.rate_limit_requests,
    period=settings.rate_limit_period,
    redis_url=settings.redis_url
)


def rate_limit_key(request: Request) -> str:
    api_key = request.headers.get("X-API-Key")
    if api_key and settings.api_key and api_key == settings.api_key:
        return f"api_key:{api_key}"
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


async def rate_limit_middleware(request: Request, call_next):
    """Limit conversion writes per API key or client IP"""
    if request.method not in LIMITED_METHODS or not request.url.path.startswith(LIMITED_PREFIX):
        return await call_next(request)

    key = rate_limit_key(request)
    headers = {
        "X-RateLimit-Limit": str(rate_limiter.rate),
        "X-RateLimit-Reset": str(rate_limiter.period),
    }

    if not rate_limiter.is_allowed(key):
        remaining = rate_limiter.get_remaining(key)
        logger.warning("rate_limit_exceeded", key=key, path=request.url.path, remaining=remaining)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "Rate limit exceeded. Please try again later.",
                "retry_after": rate_limiter.period
            },
            headers={
                **headers,
                "X-RateLimit-Remaining": str(max(0, remaining)),
                "Retry-After": str(rate_limiter.period)
            }
        )

    response = await call_next(request)
    response.headers.update(headers)
    response.headers["X-RateLimit-Remaining"] = str(max(0, rate_limiter.get_remaining(key)))
    return response
