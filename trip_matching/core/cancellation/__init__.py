# trip_matching/core/cancellation/__init__.py
"""
Отмена заказа и штрафы.
"""

from trip_matching.core.cancellation.fees import FeePolicy, FeeQuote
from trip_matching.core.cancellation.service import CancellationResult, CancellationService

__all__ = ["FeePolicy", "FeeQuote", "CancellationResult", "CancellationService"]
