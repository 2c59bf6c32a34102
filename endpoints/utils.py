# endpoints/utils.py
from typing import Optional

import structlog
from dependency_injector.wiring import Provide, inject
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from containers import Container
from dtos import TokenPayload
from errors import authentication_error, rate_limited
from services.auth_service import AuthService
from services.rate_limit import DEFAULT_LIMIT, RELAXED_LIMIT, STRICT_LIMIT, RateLimiter, RateLimitStore

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@inject
async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth: AuthService = Depends(Provide[Container.auth_service]),
) -> TokenPayload:
    """
    Достаёт пользователя из заголовка Authorization: Bearer <jwt>.
    """
    if credentials is None or not credentials.credentials:
        raise authentication_error("Authentication required")
    payload = auth.decode_token(credentials.credentials)
    request.state.user_id = payload.user_id
    structlog.contextvars.bind_contextvars(user_id=payload.user_id)
    return payload


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


async def _apply_limit(limiter: RateLimiter, request: Request, response: Response, store: RateLimitStore) -> None:
    # Ключ - пользователь, если он уже известен, иначе IP.
    # Поэтому в эндпоинтах лимит идёт после get_current_user
    user_id = getattr(request.state, "user_id", None)
    identity = f"user:{user_id}" if user_id is not None else f"ip:{get_client_ip(request)}"
    try:
        result = await limiter.check(store, identity)
    except Exception as e:
        logger.error("Rate limit check failed, request allowed", prefix=limiter.prefix, error=str(e))
        return
    if not result.allowed:
        raise rate_limited(headers=result.headers)
    response.headers.update(result.headers)


@inject
async def default_rate_limit(
    request: Request,
    response: Response,
    store: RateLimitStore = Depends(Provide[Container.rate_limit_store]),
) -> None:
    await _apply_limit(DEFAULT_LIMIT, request, response, store)


@inject
async def strict_rate_limit(
    request: Request,
    response: Response,
    store: RateLimitStore = Depends(Provide[Container.rate_limit_store]),
) -> None:
    await _apply_limit(STRICT_LIMIT, request, response, store)


@inject
async def relaxed_rate_limit(
    request: Request,
    response: Response,
    store: RateLimitStore = Depends(Provide[Container.rate_limit_store]),
) -> None:
    await _apply_limit(RELAXED_LIMIT, request, response, store)
