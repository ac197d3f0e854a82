"""
Shared token estimation used for file accounting and the request ceiling.
"""
from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_token_count(text: str | None) -> int:
    """
    Approximates LLM tokens as ceil(len(text) / 4).
    Stored file token counts and the per-request ceiling both use this estimate.
    """
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)
