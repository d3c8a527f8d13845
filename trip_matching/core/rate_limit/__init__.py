# trip_matching/core/rate_limit/__init__.py
"""
Ограничение частоты запросов.
"""

from trip_matching.core.rate_limit.service import RateLimitBucket, RateLimiter, RateLimitRule, identity_key

__all__ = ["RateLimitBucket", "RateLimiter", "RateLimitRule", "identity_key"]
