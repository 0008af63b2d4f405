"""
Core service package for the Tenant Infrastructure Core.

The core owns the shared infrastructure every tenant-facing feature leans on:
- Monitoring: bounded per-tenant metric history, threshold alerts, notifications
- Caching: tenant-namespaced cache with TTLs and tag-based invalidation
- Rate limiting: sliding-window admission per (tenant, API)
- Gateway: outbound API calls with auth, caching, rate limiting and retries

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.monitoring: Metric store, alert engine, notifications, health, timers.
- app.caching: Tenant cache, KV backends, serialization.
- app.ratelimit: Sliding-window limiter and window backends.
- app.gateway: API registry, auth headers, retrying client.
"""
