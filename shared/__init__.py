"""
Shared utilities for the Tenant Infrastructure Core.

This package aggregates common building blocks consumed by the core service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and tenant correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers with exponential backoff
- clock: Injectable time source
- tenancy: Tenant id validation and ambient tenant resolution

Any cross-component logic should live here to avoid import cycles. Do not
import from service_core into shared/.
"""
