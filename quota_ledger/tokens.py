"""Rough token estimation for callers without an exact count at reserve time."""
import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """
    Estimate tokens at ~4 characters per token.

    Blank input is 0; any non-blank input is at least 1.
    """
    stripped = (text or "").strip()
    if not stripped:
        return 0
    return max(1, math.ceil(len(stripped) / CHARS_PER_TOKEN))
