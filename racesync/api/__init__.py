"""HTTP request layer for racesync.

Validates and sanitizes requests, applies rate limits, and translates store
results into ``{success, data}`` / ``{success: false, error}`` envelopes.
"""

from .app import create_app

__all__ = ["create_app"]
