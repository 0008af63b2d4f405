"""
Gateway configuration, requests and typed results.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

from shared.errors import CoreLayerException, RateLimitError

from service_core.app.ratelimit.sliding_window import RateLimitQuota

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
BODY_METHODS = ("POST", "PUT", "PATCH")


class AuthType(str, Enum):
    """Supported upstream authentication schemes."""
    NONE = "none"
    API_KEY = "api_key"
    BEARER = "bearer"
    BASIC = "basic"
    OAUTH2 = "oauth2"


class RateLimitSettings(BaseModel):
    """Local admission quota for one API."""

    requests: int = Field(gt=0)
    window_seconds: float = Field(gt=0)

    def to_quota(self) -> RateLimitQuota:
        return RateLimitQuota(requests=self.requests, window_seconds=self.window_seconds)


class APIConfig(BaseModel):
    """Configuration of one third-party API, for one tenant or as the default.

    ``retries`` counts retries after the first attempt. Caching applies to
    GET requests when ``cache_ttl_seconds`` is set.
    """

    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    tenant: Optional[str] = None
    auth_type: AuthType = AuthType.NONE
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit: Optional[RateLimitSettings] = None
    timeout_ms: int = Field(default=10000, gt=0)
    retries: int = Field(default=1, ge=0)
    cache_ttl_seconds: Optional[int] = Field(default=None, ge=0)

    def credential(self) -> Optional[str]:
        """Inline credential, else the one named by ``api_key_env``."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env) or None
        return None

    def public_view(self) -> Dict[str, Any]:
        """Configuration without secrets."""
        data = self.model_dump(mode="json", exclude={"api_key", "headers"})
        data["has_credential"] = self.credential() is not None
        return data


class APIRequest(BaseModel):
    """One call through the gateway."""

    endpoint: str = ""
    method: str = "GET"
    params: Dict[str, Any] = Field(default_factory=dict)
    data: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    cache: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("method")
    @classmethod
    def validate_method(cls, value: str) -> str:
        method = value.upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {value}")
        return method


@dataclass(frozen=True)
class UpstreamRateLimitInfo:
    """Rate-limit headers reported by the upstream. Informational only."""
    remaining: int
    reset: int
    limit: int

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["UpstreamRateLimitInfo"]:
        def header(name: str) -> Optional[str]:
            return headers.get(f"x-ratelimit-{name}") or headers.get(f"x-rate-limit-{name}")

        remaining, reset, limit = header("remaining"), header("reset"), header("limit")
        if not (remaining and reset and limit):
            return None
        try:
            return cls(remaining=int(remaining), reset=int(reset), limit=int(limit))
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, int]:
        return {"remaining": self.remaining, "reset": self.reset, "limit": self.limit}


@dataclass
class GatewaySuccess:
    data: Any
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    cached: bool = False
    response_time_ms: float = 0.0

    success = True

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "data": self.data,
            "status": self.status,
            "headers": self.headers,
            "cached": self.cached,
            "response_time_ms": round(self.response_time_ms, 3),
        }


@dataclass
class GatewayRateLimited:
    reset_in_seconds: int
    limit: Optional[int] = None

    success = False
    status = 429

    @property
    def error(self) -> RateLimitError:
        return RateLimitError(
            f"Rate limit exceeded. Try again in {self.reset_in_seconds} seconds",
            reset_in_seconds=self.reset_in_seconds,
            details={"limit": self.limit} if self.limit is not None else None,
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.error.to_response().model_dump(),
            "status": self.status,
            "reset_in_seconds": self.reset_in_seconds,
        }


@dataclass
class GatewayFailure:
    error: CoreLayerException
    status: Optional[int] = None
    response_time_ms: float = 0.0

    success = False

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.error.to_response().model_dump(),
            "status": self.status,
            "response_time_ms": round(self.response_time_ms, 3),
        }


GatewayResult = Union[GatewaySuccess, GatewayRateLimited, GatewayFailure]
