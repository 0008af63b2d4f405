"""
Rate limiting package.

Holds the sliding-window limiter that enforces per-(tenant, API) request
quotas for outbound calls, with in-process and Redis-backed windows.
"""
