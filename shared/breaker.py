import time


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker, shared by every instance that talks to the
    same collaborator.

    States:
      - CLOSED: calls pass, failures are counted inside a rolling window
      - OPEN: calls are refused until reset_timeout_seconds have passed
      - HALF_OPEN: one probe is let through; its outcome closes or reopens

    With no redis client the breaker is inert and always allows calls.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        failure_window_seconds: int = 60,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        if not self.enabled:
            return "CLOSED"
        return await self.redis.get(self._key("state")) or "CLOSED"

    async def allow_request(self) -> None:
        state = await self.state()
        if state != "OPEN":
            return

        opened_at = await self.redis.get(self._key("opened_at"))
        if not opened_at:
            await self.close()
            return

        if time.time() - float(opened_at) >= self.reset_timeout_seconds:
            await self.redis.set(self._key("state"), "HALF_OPEN")
            return

        raise CircuitBreakerOpen(f"circuit breaker open for {self.name}")

    async def record_success(self) -> None:
        if self.enabled:
            await self.close()

    async def record_failure(self) -> None:
        if not self.enabled:
            return

        if await self.state() == "HALF_OPEN":
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "OPEN", ex=ttl)
        pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), "CLOSED", ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        await pipe.execute()

    async def call(self, fn, *args, **kwargs):
        """Run an awaitable-returning callable under the breaker."""
        await self.allow_request()
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result
