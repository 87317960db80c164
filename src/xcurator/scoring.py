"""Engagement score shared by every ranking and top-N listing."""

from __future__ import annotations

# ── Weights ────────────────────────────────────────────────────────────────
_W_VIEW = 1
_W_LIKE = 10
_W_RT = 5
_W_REPLY = 3


def engagement_score(*, views: int, likes: int, retweets: int, replies: int) -> int:
    """Return ``views + likes*10 + retweets*5 + replies*3``."""
    return views * _W_VIEW + likes * _W_LIKE + retweets * _W_RT + replies * _W_REPLY
