"""
Outbound API gateway.

A request goes through configuration lookup, local rate limiting, the
response cache, then the HTTP call with exponential backoff on network
errors. Callers always get a typed result back:

* ``GatewaySuccess`` for a 2xx (possibly served from cache),
* ``GatewayRateLimited`` when the local quota is spent,
* ``GatewayFailure`` for missing configuration, non-2xx responses,
  exhausted retries or internal faults.

Only network failures and timeouts are retried. A non-2xx response is an
answer, not a transient fault.
"""

import hashlib
import json
from typing import Any, Dict, Optional, Tuple, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.clock import Clock, SystemClock
from shared.errors import (
    ApplicationError,
    ConfigNotFoundError,
    CoreLayerException,
    ServiceError,
    TransientNetworkError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry
from shared.tenancy import validate_tenant_id

from service_core.app.caching.tenant_cache import TenantCache
from service_core.app.gateway.auth import DEFAULT_USER_AGENT, build_headers
from service_core.app.gateway.models import (
    BODY_METHODS,
    APIConfig,
    APIRequest,
    GatewayFailure,
    GatewayRateLimited,
    GatewayResult,
    GatewaySuccess,
    UpstreamRateLimitInfo,
)
from service_core.app.gateway.registry import APIConfigRegistry
from service_core.app.monitoring.metric_store import MetricStore
from service_core.app.monitoring.models import TimeRange
from service_core.app.ratelimit.sliding_window import SlidingWindowRateLimiter

RELEVANT_HEADERS = (
    "content-type",
    "x-ratelimit-remaining",
    "x-ratelimit-reset",
    "x-ratelimit-limit",
    "x-total-count",
    "link",
)

RESPONSE_TIME_METRIC = "api.external.response_time"
REQUEST_COUNT_METRIC = "api.external.request_count"
ERROR_COUNT_METRIC = "api.external.error_count"


def make_cache_key(api_name: str, request: APIRequest) -> str:
    """Deterministic cache key over (api, endpoint, method, params, body)."""
    canonical = json.dumps(
        {
            "api": api_name,
            "endpoint": request.endpoint,
            "method": request.method,
            "params": request.params,
            "data": request.data,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return f"api:{api_name}:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


def build_url(base_url: str, endpoint: str) -> str:
    if not endpoint:
        return base_url
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def parse_body(response: httpx.Response) -> Any:
    """JSON body, falling back to text; ``None`` when empty."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def extract_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {name: headers[name] for name in RELEVANT_HEADERS if headers.get(name)}


class RetryingClient:
    """Rate-limited, cached, retrying client for third-party APIs."""

    def __init__(
        self,
        registry: APIConfigRegistry,
        cache: Optional[TenantCache] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        metric_store: Optional[MetricStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        default_timeout_ms: int = 10000,
        backoff_base_seconds: float = 1.0,
    ):
        self.registry = registry
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.metric_store = metric_store
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.user_agent = user_agent
        self.default_timeout_ms = default_timeout_ms
        self.backoff_base_seconds = backoff_base_seconds
        self.logger = get_logger("core.gateway")

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()
        self._upstream_limits: Dict[Tuple[str, str], UpstreamRateLimitInfo] = {}

    async def close(self):
        if self._owns_http_client:
            await self.http_client.aclose()

    async def request(
        self,
        tenant_id: str,
        api_name: str,
        api_request: Union[APIRequest, Dict[str, Any], None] = None,
    ) -> GatewayResult:
        """Perform one gateway call. Never raises."""
        started = self.clock.now()
        try:
            if not isinstance(api_request, APIRequest):
                api_request = APIRequest.model_validate(api_request or {})
            return await self._request(tenant_id, api_name, api_request, started)
        except PydanticValidationError as e:
            return GatewayFailure(
                error=ValidationError("Invalid gateway request", {"errors": [err["msg"] for err in e.errors()]}),
                response_time_ms=self._elapsed_ms(started),
            )
        except CoreLayerException as e:
            return GatewayFailure(error=e, response_time_ms=self._elapsed_ms(started))
        except Exception as e:
            self.logger.error("Unexpected gateway error", api=api_name, tenant_id=tenant_id, error=str(e), exc_info=True)
            self._count(api_name, "internal_error")
            return GatewayFailure(
                error=ServiceError(f"Gateway error: {e}", {"api_name": api_name}),
                response_time_ms=self._elapsed_ms(started),
            )

    def _elapsed_ms(self, started: float) -> float:
        return max(0.0, (self.clock.now() - started) * 1000)

    async def _request(self, tenant_id: str, api_name: str, api_request: APIRequest, started: float) -> GatewayResult:
        validate_tenant_id(tenant_id)

        config = self.registry.resolve(tenant_id, api_name)
        if config is None:
            self.logger.warning("API configuration not found", api=api_name, tenant_id=tenant_id)
            self._count(api_name, "config_not_found")
            return GatewayFailure(error=ConfigNotFoundError(api_name, tenant_id), status=404)

        if config.rate_limit is not None and self.rate_limiter is not None:
            decision = await self.rate_limiter.check_and_consume(tenant_id, api_name, config.rate_limit.to_quota())
            if not decision.allowed:
                self._count(api_name, "rate_limited")
                return GatewayRateLimited(reset_in_seconds=decision.reset_in_seconds, limit=decision.limit)

        cache_key = None
        if self._cacheable(config, api_request):
            cache_key = make_cache_key(api_name, api_request)
            entry = await self.cache.get_entry(tenant_id, cache_key)
            if entry is not None:
                elapsed_ms = self._elapsed_ms(started)
                await self._record_metrics(tenant_id, api_name, elapsed_ms, 200, cached=True)
                self._count(api_name, "cached")
                return GatewaySuccess(data=entry.value, status=200, cached=True, response_time_ms=elapsed_ms)

        try:
            response = await self._dispatch(config, api_request)
        except RetryError as e:
            elapsed_ms = self._elapsed_ms(started)
            last = e.last_exception
            message = str(last) or type(last).__name__
            self.logger.error(
                "External API unreachable",
                api=api_name,
                tenant_id=tenant_id,
                attempts=e.attempts,
                error=message,
            )
            await self._record_metrics(tenant_id, api_name, elapsed_ms, 0, error=message)
            self._count(api_name, "network_error")
            return GatewayFailure(
                error=TransientNetworkError(api_name, message, attempts=e.attempts, last_exception=last),
                response_time_ms=elapsed_ms,
            )

        elapsed_ms = self._elapsed_ms(started)
        upstream_limits = UpstreamRateLimitInfo.from_headers(response.headers)
        if upstream_limits is not None:
            self._upstream_limits[(tenant_id, api_name)] = upstream_limits

        if not response.is_success:
            body = response.text
            self.logger.warning(
                "External API returned error status",
                api=api_name,
                tenant_id=tenant_id,
                status_code=response.status_code,
            )
            await self._record_metrics(tenant_id, api_name, elapsed_ms, response.status_code, error=f"HTTP {response.status_code}")
            self._count(api_name, "application_error")
            return GatewayFailure(
                error=ApplicationError(api_name, response.status_code, body),
                status=response.status_code,
                response_time_ms=elapsed_ms,
            )

        data = parse_body(response)
        if cache_key is not None:
            await self.cache.set(
                tenant_id,
                cache_key,
                data,
                ttl_seconds=config.cache_ttl_seconds,
                tags=[f"api:{api_name}"],
            )

        await self._record_metrics(tenant_id, api_name, elapsed_ms, response.status_code)
        self._count(api_name, "success")
        return GatewaySuccess(
            data=data,
            status=response.status_code,
            headers=extract_headers(response.headers),
            response_time_ms=elapsed_ms,
        )

    def _cacheable(self, config: APIConfig, api_request: APIRequest) -> bool:
        return (
            self.cache is not None
            and api_request.method == "GET"
            and api_request.cache
            and bool(config.cache_ttl_seconds)
        )

    async def _dispatch(self, config: APIConfig, api_request: APIRequest) -> httpx.Response:
        url = build_url(config.base_url, api_request.endpoint)
        headers = build_headers(config, api_request.headers, self.user_agent)
        timeout_seconds = (api_request.timeout_ms or config.timeout_ms or self.default_timeout_ms) / 1000
        body = api_request.data if api_request.method in BODY_METHODS else None

        async def attempt() -> httpx.Response:
            return await self.http_client.request(
                api_request.method,
                url,
                params=api_request.params or None,
                json=body,
                headers=headers,
                timeout=timeout_seconds,
            )

        def on_retry(attempt_number: int, error: BaseException, delay: float):
            if self.metrics:
                self.metrics.increment_counter("gateway_retries_total", api=config.name)

        # Delay before retry n (0-based) is base * 2**n
        retry_config = RetryConfig(
            max_attempts=config.retries + 1,
            base_delay=self.backoff_base_seconds,
            max_delay=float("inf"),
            exponential_base=2.0,
            jitter=False,
        )
        return await call_with_retry(
            attempt,
            exceptions=(httpx.TransportError,),
            config=retry_config,
            sleep=self.clock.sleep,
            name=f"gateway.{config.name}",
            on_retry=on_retry,
        )

    async def _record_metrics(
        self,
        tenant_id: str,
        api_name: str,
        response_time_ms: float,
        status: int,
        cached: bool = False,
        error: Optional[str] = None,
    ):
        if self.metrics:
            self.metrics.observe_histogram("gateway_request_duration_seconds", response_time_ms / 1000, api=api_name)
        if self.metric_store is None:
            return

        await self.metric_store.record(
            tenant_id,
            RESPONSE_TIME_METRIC,
            response_time_ms,
            {"api": api_name, "status": str(status), "cached": str(cached).lower()},
        )
        await self.metric_store.record(tenant_id, REQUEST_COUNT_METRIC, 1, {"api": api_name, "status": str(status)})
        if error:
            await self.metric_store.record(tenant_id, ERROR_COUNT_METRIC, 1, {"api": api_name, "error": error[:200]})

    def _count(self, api_name: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("gateway_requests_total", api=api_name, outcome=outcome)

    def get_rate_limit_info(self, tenant_id: str, api_name: str) -> Optional[UpstreamRateLimitInfo]:
        """Last rate-limit headers reported by the upstream."""
        return self._upstream_limits.get((tenant_id, api_name))

    async def invalidate_cache(self, tenant_id: str, api_name: str) -> int:
        if self.cache is None:
            return 0
        return await self.cache.invalidate_by_tag(tenant_id, f"api:{api_name}")

    async def get_api_stats(self, tenant_id: str, api_name: str) -> Dict[str, Any]:
        """Configuration, upstream limits, local window and last-hour traffic."""
        config = self.registry.resolve(tenant_id, api_name)
        upstream = self.get_rate_limit_info(tenant_id, api_name)

        requests = []
        if self.metric_store is not None:
            now = self.clock.now()
            points = await self.metric_store.query(tenant_id, REQUEST_COUNT_METRIC, TimeRange(now - 3600, now))
            requests = [p for p in points if p.tags.get("api") == api_name]

        local_window = None
        if config is not None and config.rate_limit is not None and self.rate_limiter is not None:
            status = await self.rate_limiter.status(tenant_id, api_name, config.rate_limit.to_quota())
            local_window = status.to_dict()

        return {
            "config": config.public_view() if config else None,
            "rate_limit_info": upstream.to_dict() if upstream else None,
            "local_rate_limit": local_window,
            "requests_last_hour": len(requests),
            "last_request_time": max((p.timestamp for p in requests), default=None),
        }
