"""Shared primitives: error taxonomy, retry/backoff and TTL caching."""
