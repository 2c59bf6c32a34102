# endpoints/api_auth.py
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Request

from containers import Container
from dtos import AuthResultDTO, Envelope, LoginDTO, RegisterDTO
from endpoints.utils import get_client_ip, strict_rate_limit
from services.auth_service import AuthService

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=201, response_model=Envelope[AuthResultDTO])
@inject
async def register(
    payload: RegisterDTO,
    request: Request,
    _limit: None = Depends(strict_rate_limit),
    auth: AuthService = Depends(Provide[Container.auth_service]),
):
    result = await auth.register(payload, ip=get_client_ip(request))
    return Envelope(message="Registered", data=result)


@router.post("/login", response_model=Envelope[AuthResultDTO])
@inject
async def login(
    payload: LoginDTO,
    request: Request,
    _limit: None = Depends(strict_rate_limit),
    auth: AuthService = Depends(Provide[Container.auth_service]),
):
    result = await auth.login(payload, ip=get_client_ip(request))
    return Envelope(message="Logged in", data=result)
