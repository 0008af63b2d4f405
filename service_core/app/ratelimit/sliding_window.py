"""
Sliding-window rate limiter for outbound APIs.

Each (tenant, API) pair keeps the timestamps of admitted requests. A check
forgets timestamps that are at least one window old, denies when the rest
already fill the quota, and otherwise admits and records ``now``.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.clock import Clock, SystemClock
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tenancy import validate_tenant_id

from service_core.app.ratelimit.backends import InMemoryRateWindowBackend, RateWindowBackend, WindowState


@dataclass(frozen=True)
class RateLimitQuota:
    """``requests`` admissions per ``window_seconds``."""
    requests: int
    window_seconds: float

    def __post_init__(self):
        if self.requests <= 0:
            raise ValueError("requests must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_in_seconds": self.reset_in_seconds,
        }


class SlidingWindowRateLimiter:
    """Per-(tenant, API) admission counter."""

    def __init__(
        self,
        backend: Optional[RateWindowBackend] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        key_prefix: str = "rate_limit",
    ):
        self.backend = backend or InMemoryRateWindowBackend()
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.logger = get_logger("core.rate_limiter")

    def _make_key(self, tenant_id: str, api_name: str) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{tenant_id}:{api_name}"

    @staticmethod
    def _reset_in(state: WindowState, now: float, quota: RateLimitQuota) -> int:
        if state.oldest is None:
            return 0
        return max(0, math.ceil(state.oldest + quota.window_seconds - now))

    async def check_and_consume(self, tenant_id: str, api_name: str, quota: RateLimitQuota) -> RateLimitDecision:
        """Admit one request if the window has room."""
        validate_tenant_id(tenant_id)
        key = self._make_key(tenant_id, api_name)
        now = self.clock.now()

        try:
            state = await self.backend.check_and_append(key, now, quota.window_seconds, quota.requests)
        except Exception as e:
            # Fail open: an unavailable window store must not take the gateway down
            self.logger.error("Rate limit check error", tenant_id=tenant_id, api=api_name, error=str(e))
            self._count(api_name, "error")
            return RateLimitDecision(
                allowed=True,
                limit=quota.requests,
                remaining=quota.requests,
                reset_in_seconds=math.ceil(quota.window_seconds),
            )

        if state.allowed:
            decision = RateLimitDecision(
                allowed=True,
                limit=quota.requests,
                remaining=max(0, quota.requests - state.count),
                reset_in_seconds=self._reset_in(state, now, quota),
            )
        else:
            decision = RateLimitDecision(
                allowed=False,
                limit=quota.requests,
                remaining=0,
                reset_in_seconds=max(1, self._reset_in(state, now, quota)),
            )
            self.logger.warning(
                "Rate limit exceeded",
                tenant_id=tenant_id,
                api=api_name,
                current_count=state.count,
                limit=quota.requests,
                reset_in_seconds=decision.reset_in_seconds,
            )

        self._count(api_name, "allowed" if decision.allowed else "denied")
        return decision

    async def status(self, tenant_id: str, api_name: str, quota: RateLimitQuota) -> RateLimitDecision:
        """Current window usage without consuming a slot."""
        validate_tenant_id(tenant_id)
        now = self.clock.now()
        state = await self.backend.peek(self._make_key(tenant_id, api_name), now, quota.window_seconds)
        return RateLimitDecision(
            allowed=state.count < quota.requests,
            limit=quota.requests,
            remaining=max(0, quota.requests - state.count),
            reset_in_seconds=self._reset_in(state, now, quota),
        )

    async def reset(self, tenant_id: str, api_name: str) -> bool:
        """Reset rate limit for tenant and API."""
        validate_tenant_id(tenant_id)
        try:
            await self.backend.clear(self._make_key(tenant_id, api_name))
        except Exception as e:
            self.logger.error("Rate limit reset error", tenant_id=tenant_id, api=api_name, error=str(e))
            return False
        self.logger.info("Rate limit reset", tenant_id=tenant_id, api=api_name)
        return True

    def _count(self, api_name: str, decision: str):
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", api=api_name, decision=decision)
