"""
Common utilities for wingman.

Modules:
- crypto: password-derived key session and ``ivHex:cipherHex`` envelopes
- expiring: thread-safe map with per-entry deadlines and a periodic sweep
- rate_limiter / lockout / security: per-identity admission checks
- config / log / errors / identities: settings, logging and shared helpers
"""

__all__ = [
    "config",
    "crypto",
    "errors",
    "expiring",
    "identities",
    "lockout",
    "log",
    "rate_limiter",
    "security",
]
