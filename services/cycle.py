import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict
from services.exceptions import CycleTimeoutError
from services.network_stats_service import refresh_network_stats_cache
from services.nodes_service import refresh_nodes_cache

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Summary of one reconciliation cycle and the HTTP status it maps to."""
    summary: Dict[str, Any] = field(default_factory=dict)
    status_code: int = 200

    @property
    def success(self):
        return bool(self.summary.get("success"))


class Deadline:
    """Wall-clock budget of one cycle."""

    def __init__(self, budget_seconds, clock=time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self.expires_at = clock() + budget_seconds

    def remaining(self):
        return max(0.0, self.expires_at - self._clock())

    def expired(self):
        return self._clock() >= self.expires_at

    def check(self, during):
        if self.expired():
            raise CycleTimeoutError(f"Cycle budget of {self.budget_seconds}s exceeded during {during}")


def elapsed_ms(start):
    return int((time.monotonic() - start) * 1000)


def refresh_caches(session_factory, caches):
    """Best-effort refresh of both caches. Returns False if either reload failed."""
    ok = True
    for refresh, cache in (
        (refresh_network_stats_cache, caches.network_stats),
        (refresh_nodes_cache, caches.nodes),
    ):
        try:
            ok = refresh(session_factory, cache) and ok
        except Exception as e:
            logger.error(f"⚠️ Failed to refresh caches: {e}")
            ok = False
    return ok
