# trip_matching/core/intake/__init__.py
"""
Приём заявок на поездку/доставку.
"""

from trip_matching.core.intake.models import CreateTripRequestDTO
from trip_matching.core.intake.service import RequestIntakeService

__all__ = ["CreateTripRequestDTO", "RequestIntakeService"]
