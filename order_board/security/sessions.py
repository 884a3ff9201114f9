from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from sqlalchemy import select

from order_board.auth import Principal, Role
from order_board.config import settings
from order_board.db import get_session_factory
from order_board.models import StaffUser, WebSession

BEARER_PREFIX = 'bearer '


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def session_token_from_request(request: Request) -> str | None:
    header = request.headers.get('authorization', '')
    if header.lower().startswith(BEARER_PREFIX):
        token = header[len(BEARER_PREFIX) :].strip()
        if token:
            return token
    return request.cookies.get(settings.session_cookie_name)


def load_principal_from_token(db, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, StaffUser)
        .join(StaffUser, StaffUser.id == WebSession.principal_id)
        .where(WebSession.session_token == token)
    ).one_or_none()
    if not row:
        return None

    web_session, user = row
    now = _now()
    if web_session.revoked_at is not None or _as_utc(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    role = Role(user.role.value if hasattr(user.role, 'value') else user.role)
    return Principal(
        id=user.id,
        username=user.username,
        tenant_id=user.tenant_id,
        role=role,
        active=user.active,
    )


def install_auth_session_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        token = session_token_from_request(request)
        request.state.principal = None
        if token:
            with get_session_factory(request)() as db:
                request.state.principal = load_principal_from_token(db, token)
                db.commit()
        return await call_next(request)
