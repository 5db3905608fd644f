from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.core.config import Settings, get_settings
from notifypipe.services.auth.api_keys import find_api_key, normalize_role, role_allows


def get_app_settings(request: Request) -> Settings:
    # Apps built for tests carry their own settings; fall back to the process-wide instance.
    return getattr(request.app.state, "settings", None) or get_settings()


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with session_factory() as session:
        yield session


class Principal(BaseModel):
    # Identity derived from the API key; owner_id scopes every job read.
    owner_id: str
    role: str
    api_key_id: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Principal:
    raw_key = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    try:
        api_key = await find_api_key(db, raw_key)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if api_key is None:
        raise _auth_error("Invalid API key")
    if api_key.revoked_at is not None:
        raise _auth_error("API key is revoked")
    try:
        role = normalize_role(api_key.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc
    return Principal(owner_id=api_key.owner_id, role=role, api_key_id=api_key.id)


def require_role(minimum_role: str) -> Callable[..., Awaitable[Principal]]:
    # Dependency factory for route-level RBAC.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def ensure_role(principal: Principal, minimum_role: str) -> None:
    # Inline RBAC check for routes whose required role depends on a query flag.
    if not role_allows(role=principal.role, minimum_role=minimum_role):
        raise _forbidden_error("Insufficient role for this operation")
