"""Client-side rate limiting shared by HTTP backends."""

import asyncio
import time

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from chatloop.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Moving-window limiter on requests and tokens per minute."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def acquire(self, estimated_tokens: int, identifier: str) -> None:
        """Wait until a request of ``estimated_tokens`` fits within both limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        await self._wait(self.request_limit, identifier, 1, "Request")
        # A single request larger than the whole budget could never pass
        cost = max(1, min(estimated_tokens, self.token_limit.amount))
        await self._wait(self.token_limit, f"{identifier}_tokens", cost, "Token")

    async def _wait(self, limit, identifier: str, cost: int, label: str) -> None:
        while not self.limiter.hit(limit, identifier, cost=cost):
            stats = self.limiter.get_window_stats(limit, identifier)
            wait_time = max(0.1, stats.reset_time - time.time())
            logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
