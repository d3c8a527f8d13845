# trip_matching/core/arbiter/__init__.py
"""
Арбитр принятия предложения.
"""

from trip_matching.core.arbiter.service import AcceptanceArbiter, AcceptanceResult

__all__ = ["AcceptanceArbiter", "AcceptanceResult"]
