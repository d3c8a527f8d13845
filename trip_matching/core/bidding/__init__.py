# trip_matching/core/bidding/__init__.py
"""
Торги: предложения исполнителей и окно аукциона.
"""

from trip_matching.core.bidding.models import Offer, pick_best_offer

__all__ = ["Offer", "pick_best_offer"]
