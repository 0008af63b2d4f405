"""
Tenant cache package.

Caching is best-effort: a backend outage turns reads into misses and writes
into no-ops. Callers must never treat the cache as a source of truth.
"""
