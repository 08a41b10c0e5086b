"""Shared utilities for the Stacy safety companion."""
from .numeric import clamp
from .redact import configure_log_salt, hash_identifier, fingerprint_text

__all__ = ["clamp", "configure_log_salt", "hash_identifier", "fingerprint_text"]
