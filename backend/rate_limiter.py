import threading
import time
from dataclasses import dataclass


@dataclass
class RateLimit:
    window: float       # segundos
    max_requests: int


@dataclass
class Decision:
    limited: bool
    remaining: int
    reset_at: float

    def headers(self, limit: RateLimit):
        return {
            'X-RateLimit-Limit': str(limit.max_requests),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(int(self.reset_at + 0.999)),
        }


class RateLimiter:
    # janela fixa por chave; uma instância por app, nada em nível de módulo

    def __init__(self, clock=time.time, cleanup_interval=300.0):
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()
        self._entries = {}
        self._lock = threading.Lock()

    def hit(self, key, limit: RateLimit) -> Decision:
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            count, reset_at = self._entries.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + limit.window
            if count >= limit.max_requests:
                return Decision(True, 0, reset_at)
            count += 1
            self._entries[key] = (count, reset_at)
            return Decision(False, limit.max_requests - count, reset_at)

    def _cleanup(self, now):
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        expired = [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]
        for k in expired:
            del self._entries[k]

    def __len__(self):
        return len(self._entries)
