from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

MIN_TOKEN_BYTES = 32


def generate_token(length_bytes: int = MIN_TOKEN_BYTES) -> str:
    """Return ``length_bytes`` of CSPRNG output as a hex string."""
    if length_bytes < MIN_TOKEN_BYTES:
        raise ValueError(f"tokens need at least {MIN_TOKEN_BYTES} bytes of entropy")
    return secrets.token_hex(length_bytes)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(expected: Optional[str], submitted: Optional[str]) -> bool:
    """Constant-time comparison; ``None`` or empty never matches."""
    if not expected or not submitted:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))
