# services/user_service.py
import asyncio

import structlog

from dtos import PasswordChangeDTO, ProfileUpdateDTO, UserProfileDTO, UserStatsDTO
from errors import business_error, not_found
from models import User
from repositories.chat_repo import ChatRepository
from repositories.message_repo import MessageRepository
from repositories.user_repo import UserRepository
from services.auth_service import hash_password, verify_password

logger = structlog.get_logger(__name__)


class UserService:
    def __init__(self, user_repo: UserRepository, chat_repo: ChatRepository, message_repo: MessageRepository):
        self.user_repo = user_repo
        self.chat_repo = chat_repo
        self.message_repo = message_repo

    async def _get_user(self, user_id: int) -> User:
        user = await self.user_repo.get_by_id(user_id)
        if user is None:
            raise not_found("User")
        return user

    async def get_profile(self, user_id: int) -> UserProfileDTO:
        return UserProfileDTO.model_validate(await self._get_user(user_id))

    async def update_profile(self, user_id: int, payload: ProfileUpdateDTO) -> UserProfileDTO:
        name = payload.name.strip() if payload.name is not None else None
        user = await self.user_repo.update_profile(user_id, name=name or None, avatar=payload.avatar)
        if user is None:
            raise not_found("User")
        logger.info("Profile updated", user_id=user_id)
        return UserProfileDTO.model_validate(user)

    async def get_stats(self, user_id: int) -> UserStatsDTO:
        user = await self._get_user(user_id)
        return UserStatsDTO(
            total_chats=await self.chat_repo.count_for_user(user_id),
            total_messages=await self.message_repo.count_for_user(user_id),
            prompt_tokens=user.total_prompt_tokens,
            completion_tokens=user.total_completion_tokens,
            total_tokens=user.total_tokens,
            credits=user.credits,
        )

    async def change_password(self, user_id: int, payload: PasswordChangeDTO) -> None:
        user = await self._get_user(user_id)
        if not await asyncio.to_thread(verify_password, payload.old_password, user.password):
            raise business_error("Current password is incorrect")
        password_hash = await asyncio.to_thread(hash_password, payload.new_password)
        await self.user_repo.update_password(user_id, password_hash)
        logger.info("Password changed", user_id=user_id)
