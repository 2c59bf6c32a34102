from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from models import MessageRole, UserRole

T = TypeVar("T")


class CamelModel(BaseModel):
    # Наружу (и на вход) поля идут в camelCase, внутри остаются snake_case
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        protected_namespaces=(),
    )


class Envelope(BaseModel, Generic[T]):
    code: int = 0
    message: str = "success"
    data: Optional[T] = None


# ======================
# Input DTOs
# ======================

class RegisterDTO(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    name: Optional[str] = Field(None, max_length=50)


class LoginDTO(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class ProfileUpdateDTO(CamelModel):
    name: Optional[str] = Field(None, max_length=50)
    avatar: Optional[str] = Field(None, max_length=512)


class PasswordChangeDTO(CamelModel):
    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)


class ChatCreateDTO(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field("New chat", min_length=1, max_length=255)
    model_id: Optional[int] = None


class ChatTitleDTO(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=255)


class SendMessageDTO(CamelModel):
    # content проверяется в ChatService: пустая строка должна давать
    # ошибку валидации до создания каких-либо записей
    content: str
    chat_id: Optional[int] = None
    model_id: Optional[int] = None
    stream: bool = True


# ======================
# Output DTOs
# ======================

class UserDTO(CamelModel):
    id: int
    email: str
    name: Optional[str] = None


class AuthResultDTO(CamelModel):
    token: str
    user: UserDTO


class TokenPayload(CamelModel):
    user_id: int
    name: Optional[str] = None
    email: str


class UserProfileDTO(CamelModel):
    id: int
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    role: UserRole
    credits: int = 0
    created_at: datetime
    last_login_at: Optional[datetime] = None


class UserStatsDTO(CamelModel):
    total_chats: int
    total_messages: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    credits: int


class UsageDTO(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AIResponseDTO(CamelModel):
    content: str
    reasoning: Optional[str] = None
    model_id: str
    model_name: str
    duration: float
    usage: UsageDTO


class MessageDTO(CamelModel):
    id: int
    role: MessageRole
    content: str
    reasoning: Optional[str] = None
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    duration: Optional[float] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime


class LastMessageDTO(CamelModel):
    role: MessageRole
    content: str
    created_at: datetime


class ChatSummaryDTO(CamelModel):
    id: int
    title: str
    message_count: int = 0
    last_message: Optional[LastMessageDTO] = None
    created_at: datetime
    updated_at: datetime


class PaginationDTO(CamelModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class ChatListDTO(CamelModel):
    items: List[ChatSummaryDTO] = Field(default_factory=list, alias="list")
    pagination: PaginationDTO


class ChatDetailDTO(CamelModel):
    id: int
    title: str
    model_id: Optional[int] = None
    model_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    messages: List[MessageDTO] = []


class ModelRefDTO(CamelModel):
    id: int
    name: str
    model_id: str


class ChatCreatedDTO(CamelModel):
    id: int
    title: str
    model: ModelRefDTO
    created_at: datetime


class ModelInfoDTO(CamelModel):
    id: int
    name: str
    model_id: str
    provider: str
