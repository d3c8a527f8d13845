# trip_matching/services/matching_api/dependencies.py
"""
Зависимости FastAPI: шлюз движка и контекст вызывающего.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from trip_matching.common.constants import CallerRole
from trip_matching.common.exceptions import ValidationError
from trip_matching.core.gateway import CallerContext, MatchingGateway

# Роли, которые можно заявить через заголовок
HEADER_ROLES = frozenset({
    CallerRole.ANONYMOUS,
    CallerRole.CLIENT,
    CallerRole.WORKER,
    CallerRole.PARTNER,
    CallerRole.ADMIN,
})


def get_gateway(request: Request) -> MatchingGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Gateway not initialized")
    return gateway


def get_caller(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> CallerContext:
    """
    Контекст вызывающего из заголовков X-User-Id и X-User-Role.
    Без X-User-Id вызывающий анонимен и лимитируется по адресу клиента.

    Raises:
        ValidationError: неизвестная роль
    """
    origin = request.client.host if request.client else None
    if not x_user_id:
        return CallerContext(caller_id=None, role=CallerRole.ANONYMOUS, origin=origin)

    role_name = (x_user_role or CallerRole.CLIENT.value).strip().lower()
    try:
        role = CallerRole(role_name)
    except ValueError:
        role = None
    if role not in HEADER_ROLES:
        raise ValidationError({"X-User-Role": f"Недопустимая роль: {x_user_role}"})

    return CallerContext(caller_id=x_user_id, role=role, origin=origin)
