import math
import threading
import time
from typing import Callable, Tuple


DEFAULT_ESTIMATED_TOKENS = 1000
TOKEN_ESTIMATE_MARGIN = 1.2


class DualTokenBucket:
    """Request-count plus token-count bucket sharing one refill window.

    Both capacities refill linearly with elapsed wall-clock time and are capped
    at their limits. ``consume`` never blocks: it either takes both costs and
    returns 0, or takes nothing and returns how many milliseconds the caller
    should wait before trying again.
    """

    def __init__(
        self,
        request_limit: float,
        token_limit: float,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        limits = (request_limit, token_limit, window_seconds)
        if not all(math.isfinite(v) and v > 0 for v in limits):
            raise ValueError("request_limit, token_limit and window_seconds must be finite and > 0")
        self.request_limit = float(request_limit)
        self.token_limit = float(token_limit)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._available_requests = self.request_limit
        self._available_tokens = self.token_limit
        self._last_refill = clock()
        self._last_response_tokens = 0

    @property
    def window_ms(self) -> float:
        return self.window_seconds * 1000.0

    def consume(self, requests: float = 1, tokens: float = 0) -> float:
        requests = max(0.0, float(requests))
        tokens = max(0.0, float(tokens))
        with self._lock:
            now = self._clock()
            self._refill_locked(now)
            if requests > self._available_requests or tokens > self._available_tokens:
                request_wait = 0.0
                token_wait = 0.0
                if requests > self._available_requests:
                    request_wait = (
                        (requests - self._available_requests)
                        * self.window_ms
                        / self.request_limit
                    )
                if tokens > self._available_tokens:
                    token_wait = (
                        (tokens - self._available_tokens)
                        * self.window_ms
                        / self.token_limit
                    )
                return max(request_wait, token_wait)
            self._available_requests -= requests
            self._available_tokens -= tokens
            return 0.0

    def acquire(
        self,
        requests: float = 1,
        tokens: float = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> float:
        """Consume, sleeping out every returned wait. Returns total seconds slept.

        A cost larger than the bucket can ever hold is clamped to the limit so
        the loop always terminates.
        """
        requests = min(float(requests), self.request_limit)
        tokens = min(float(tokens), self.token_limit)
        slept = 0.0
        while True:
            wait_ms = self.consume(requests, tokens)
            if wait_ms <= 0:
                return slept
            sleep(wait_ms / 1000.0)
            slept += wait_ms / 1000.0

    def _refill_locked(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        ratio = min(1.0, elapsed / self.window_seconds)
        self._available_requests = min(
            self.request_limit,
            self._available_requests + self.request_limit * ratio,
        )
        self._available_tokens = min(
            self.token_limit,
            self._available_tokens + self.token_limit * ratio,
        )
        self._last_refill = now

    def update_from_response(self, total_tokens: int) -> None:
        with self._lock:
            self._last_response_tokens = max(0, int(total_tokens or 0))

    def estimated_tokens(self) -> int:
        with self._lock:
            last = self._last_response_tokens
        if not last:
            return DEFAULT_ESTIMATED_TOKENS
        return int(math.ceil(last * TOKEN_ESTIMATE_MARGIN))

    def reset(self) -> None:
        with self._lock:
            self._available_requests = self.request_limit
            self._available_tokens = self.token_limit
            self._last_refill = self._clock()

    def available(self) -> Tuple[float, float]:
        with self._lock:
            return self._available_requests, self._available_tokens
