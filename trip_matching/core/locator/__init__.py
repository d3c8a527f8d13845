# trip_matching/core/locator/__init__.py
"""
Поиск исполнителей рядом с точкой подачи.
"""

from trip_matching.core.locator.service import CandidateLocator, CandidateSearchResult, WorkerCandidate

__all__ = ["CandidateLocator", "CandidateSearchResult", "WorkerCandidate"]
