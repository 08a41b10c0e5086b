"""Log redaction helpers: no raw identifiers or utterances in logs.

Session and device identifiers are replaced by a keyed HMAC before they
are logged or published, so hashes are stable within one deployment but
cannot be recomputed without its key. Transcript text is only ever
logged as a short fingerprint.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

# Set once at startup from LOG_HASH_SALT
_LOG_KEY: Optional[bytes] = None


def configure_log_salt(salt: str) -> None:
    """Install the deployment key used by hash_identifier().

    Raises:
        ValueError: If salt is shorter than MIN_SALT_LENGTH characters
    """
    global _LOG_KEY
    length = len(salt or "")
    if length < MIN_SALT_LENGTH:
        logger.critical(
            "LOG_SALT_REJECTED",
            extra={"salt_length": length, "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"Log salt must be at least {MIN_SALT_LENGTH} characters")

    _LOG_KEY = salt.encode()
    logger.info("LOG_SALT_CONFIGURED", extra={"salt_length": length})


def hash_identifier(value: str) -> str:
    """HMAC-SHA256 of a session or device identifier, as 64 hex chars."""
    if _LOG_KEY is None:
        raise RuntimeError("Log salt not configured. Call configure_log_salt() first.")
    return hmac.new(_LOG_KEY, value.encode(), hashlib.sha256).hexdigest()


def fingerprint_text(text: str, length: int = 16) -> str:
    """Short unkeyed digest of an utterance, for correlating log lines."""
    return hashlib.blake2b(text.encode(), digest_size=length // 2).hexdigest()
