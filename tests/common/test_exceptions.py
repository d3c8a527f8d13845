# tests/common/test_exceptions.py
"""
Тесты типизированных ошибок.
"""

from __future__ import annotations

from trip_matching.common.constants import OrderStatus
from trip_matching.common.exceptions import (
    ConflictError,
    ExpiredSession,
    InvalidStateTransition,
    MatchingError,
    NoDriversAvailable,
    NotFoundError,
    RateLimitExceeded,
    ServiceUnavailable,
    ValidationError,
)


class TestErrors:
    """Тесты сериализации ошибок."""

    def test_all_inherit_base(self) -> None:
        for error_type in (
            ValidationError,
            NotFoundError,
            ConflictError,
            InvalidStateTransition,
            RateLimitExceeded,
            NoDriversAvailable,
            ExpiredSession,
            ServiceUnavailable,
        ):
            assert issubclass(error_type, MatchingError)

    def test_validation_error_keeps_all_fields(self) -> None:
        error = ValidationError({"origin.latitude": "bad", "service_class": "unknown"})

        data = error.to_dict()

        assert data["error"] == "validation_error"
        assert data["fields"] == {"origin.latitude": "bad", "service_class": "unknown"}
        assert "origin.latitude" in error.message

    def test_validation_error_copies_dict(self) -> None:
        errors = {"price": "bad"}
        error = ValidationError(errors)
        errors["other"] = "x"

        assert error.errors == {"price": "bad"}

    def test_not_found(self) -> None:
        error = NotFoundError("Заказ", "abc")
        assert error.entity == "Заказ"
        assert error.entity_id == "abc"
        assert error.to_dict()["error"] == "not_found"

    def test_invalid_transition(self) -> None:
        error = InvalidStateTransition(OrderStatus.COMPLETED, OrderStatus.CANCELLED, "o-1")

        data = error.to_dict()

        assert data["current"] == "completed"
        assert data["target"] == "cancelled"
        assert "o-1" in error.message

    def test_rate_limit_retry_after_not_negative(self) -> None:
        error = RateLimitExceeded(-3.0, limit=5, identity_key="client-1")

        assert error.retry_after == 0.0
        assert error.to_dict()["retry_after"] == 0.0

    def test_no_drivers_suggests_widen_search(self) -> None:
        error = NoDriversAvailable(10125.0, 4)

        data = error.to_dict()

        assert data["radius_m"] == 10125.0
        assert data["widen_search"] is True

    def test_default_message_from_docstring(self) -> None:
        assert ExpiredSession().message == "Окно торгов уже закрыто."
        assert ConflictError("занято").message == "занято"
