import logging
import time
from dataclasses import dataclass
from typing import Callable

from cache import CacheError, CacheStore
from errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    scope: str
    limit: int
    window_secs: int
    message: str
    retry_after: str


GENERAL = RateLimit(
    "general",
    100,
    15 * 60,
    "Too many requests from this IP, please try again later.",
    "15 minutes",
)
AUTH = RateLimit(
    "auth",
    5,
    15 * 60,
    "Too many authentication attempts, please try again later.",
    "15 minutes",
)
TRANSACTIONS = RateLimit(
    "transactions",
    100,
    60 * 60,
    "Too many transaction requests, please try again later.",
    "1 hour",
)
ANALYTICS = RateLimit(
    "analytics",
    50,
    60 * 60,
    "Too many analytics requests, please try again later.",
    "1 hour",
)


class RateLimiter:
    """Fixed-window request counters kept in the cache backend.

    Counting failures let the request through.
    """

    def __init__(
        self, store: CacheStore, clock: Callable[[], float] = time.time
    ) -> None:
        self.store = store
        self.clock = clock

    def hit(self, rule: RateLimit, client: str) -> int:
        now = int(self.clock())
        window = now // rule.window_secs
        key = f"ratelimit:{rule.scope}:{client}:{window}"
        try:
            count = self.store.incr(key, ttl=rule.window_secs)
        except CacheError as exc:
            logger.warning(f"rate_limit_unavailable: scope={rule.scope} error={exc}")
            return 0
        if count > rule.limit:
            retry_in = (window + 1) * rule.window_secs - now
            logger.info(f"rate_limited: scope={rule.scope} client={client}")
            raise RateLimited(
                rule.message, retry_after=retry_in, retry_hint=rule.retry_after
            )
        return count
