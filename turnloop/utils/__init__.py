"""Utility modules."""

from turnloop.utils.cancellation import CancellationToken
from turnloop.utils.lru import LruCache
from turnloop.utils.tokens import estimate_tokens

__all__ = ["CancellationToken", "LruCache", "estimate_tokens"]
