# trip_matching/core/gateway/__init__.py
"""
Фасад операций с лимитами запросов.
"""

from trip_matching.core.gateway.service import CallerContext, MatchingGateway, build_gateway, rate_limited

__all__ = ["CallerContext", "MatchingGateway", "build_gateway", "rate_limited"]
