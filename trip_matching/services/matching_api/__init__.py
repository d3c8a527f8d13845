# trip_matching/services/matching_api/__init__.py
"""
HTTP API движка подбора и торгов (FastAPI).
"""

from trip_matching.services.matching_api.app import create_app

__all__ = ["create_app"]
