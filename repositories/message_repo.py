from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Chat, Message, MessageRole, User, utcnow


class MessageRepository:
    """
    Репозиторий для управления сообщениями в базе данных.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add_message(self, chat_id: int, role: MessageRole, content: str) -> Message:
        """Сохраняет новое сообщение в базу данных."""
        message = Message(chat_id=chat_id, role=role, content=content)
        async with self.session_factory() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
        return message

    async def add_assistant_message(
        self,
        user_id: int,
        chat_id: int,
        content: str,
        reasoning: Optional[str],
        model_id: str,
        model_name: str,
        duration: float,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> Message:
        """
        Ответ модели, отметка активности чата и счётчики токенов пользователя
        пишутся одной транзакцией.
        """
        total_tokens = prompt_tokens + completion_tokens
        message = Message(
            chat_id=chat_id,
            role=MessageRole.ASSISTANT,
            content=content,
            reasoning=reasoning,
            model_id=model_id,
            model_name=model_name,
            duration=duration,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )
        async with self.session_factory.begin() as session:
            session.add(message)
            await session.execute(update(Chat).where(Chat.id == chat_id).values(updated_at=utcnow()))
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    total_prompt_tokens=User.total_prompt_tokens + prompt_tokens,
                    total_completion_tokens=User.total_completion_tokens + completion_tokens,
                    total_tokens=User.total_tokens + total_tokens,
                )
            )
        return message

    async def delete_message(self, message_id: int) -> None:
        async with self.session_factory.begin() as session:
            await session.execute(delete(Message).where(Message.id == message_id))

    async def get_messages_for_chat(self, chat_id: int, newest_first: bool = False) -> List[Message]:
        """
        Получает все сообщения для чата, отсортированные по времени.
        """
        if newest_first:
            order = (Message.created_at.desc(), Message.id.desc())
        else:
            order = (Message.created_at, Message.id)
        async with self.session_factory() as session:
            q = await session.execute(select(Message).where(Message.chat_id == chat_id).order_by(*order))
            return list(q.scalars().all())

    async def get_recent_messages_for_chat(self, chat_id: int, limit: int = 10) -> List[Message]:
        """
        Получает последние N сообщений для контекста LLM.
        """
        async with self.session_factory() as session:
            q = await session.execute(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            # Результат нужно развернуть, так как мы получаем его в обратном порядке
            return list(q.scalars().all())[::-1]

    async def count_for_user(self, user_id: int) -> int:
        async with self.session_factory() as session:
            q = await session.execute(
                select(func.count(Message.id)).join(Chat, Chat.id == Message.chat_id).where(Chat.user_id == user_id)
            )
            return q.scalar_one()

    async def clear_for_chat(self, chat_id: int) -> int:
        async with self.session_factory.begin() as session:
            result = await session.execute(delete(Message).where(Message.chat_id == chat_id))
            await session.execute(update(Chat).where(Chat.id == chat_id).values(updated_at=utcnow()))
        return result.rowcount or 0
