# endpoints/api_users.py
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends

from containers import Container
from dtos import Envelope, PasswordChangeDTO, ProfileUpdateDTO, TokenPayload, UserProfileDTO, UserStatsDTO
from endpoints.utils import default_rate_limit, get_current_user, relaxed_rate_limit, strict_rate_limit
from services.user_service import UserService

router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/profile", response_model=Envelope[UserProfileDTO])
@inject
async def get_profile(
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(relaxed_rate_limit),
    user_service: UserService = Depends(Provide[Container.user_service]),
):
    return Envelope(data=await user_service.get_profile(current_user.user_id))


@router.put("/profile", response_model=Envelope[UserProfileDTO])
@inject
async def update_profile(
    payload: ProfileUpdateDTO,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    user_service: UserService = Depends(Provide[Container.user_service]),
):
    profile = await user_service.update_profile(current_user.user_id, payload)
    return Envelope(message="Profile updated", data=profile)


@router.get("/stats", response_model=Envelope[UserStatsDTO])
@inject
async def get_stats(
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(relaxed_rate_limit),
    user_service: UserService = Depends(Provide[Container.user_service]),
):
    return Envelope(data=await user_service.get_stats(current_user.user_id))


@router.post("/password", response_model=Envelope)
@inject
async def change_password(
    payload: PasswordChangeDTO,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(strict_rate_limit),
    user_service: UserService = Depends(Provide[Container.user_service]),
):
    await user_service.change_password(current_user.user_id, payload)
    return Envelope(message="Password changed")
