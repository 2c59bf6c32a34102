# repositories/chat_repo.py
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import Chat, Message, utcnow


class ChatRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_chat(
        self,
        user_id: int,
        title: str,
        model_id: Optional[int] = None,
        model_name: Optional[str] = None,
    ) -> Chat:
        chat = Chat(user_id=user_id, title=title, model_id=model_id, model_name=model_name)
        async with self.session_factory() as session:
            session.add(chat)
            await session.commit()
            await session.refresh(chat)
        return chat

    async def get_chat_for_user(self, chat_id: int, user_id: int) -> Optional[Chat]:
        """Чат, только если он принадлежит пользователю."""
        async with self.session_factory() as session:
            q = await session.execute(select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id))
            return q.scalars().first()

    async def count_for_user(self, user_id: int) -> int:
        async with self.session_factory() as session:
            q = await session.execute(select(func.count(Chat.id)).where(Chat.user_id == user_id))
            return q.scalar_one()

    async def list_chats_for_user(
        self,
        user_id: int,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Tuple[Chat, int, Optional[Message]]]:
        """
        Страница чатов пользователя (сначала недавно активные)
        вместе с количеством сообщений и последним сообщением каждого.
        """
        async with self.session_factory() as session:
            q = await session.execute(
                select(Chat)
                .where(Chat.user_id == user_id)
                .order_by(Chat.updated_at.desc(), Chat.id.desc())
                .offset(offset)
                .limit(limit)
            )
            chats = list(q.scalars().all())
            if not chats:
                return []
            chat_ids = [c.id for c in chats]

            q = await session.execute(
                select(Message.chat_id, func.count(Message.id))
                .where(Message.chat_id.in_(chat_ids))
                .group_by(Message.chat_id)
            )
            counts: Dict[int, int] = {chat_id: count for chat_id, count in q.all()}

            ranked = (
                select(
                    Message.id.label("message_id"),
                    func.row_number()
                    .over(
                        partition_by=Message.chat_id,
                        order_by=(Message.created_at.desc(), Message.id.desc()),
                    )
                    .label("rn"),
                )
                .where(Message.chat_id.in_(chat_ids))
                .subquery()
            )
            q = await session.execute(
                select(Message).join(ranked, ranked.c.message_id == Message.id).where(ranked.c.rn == 1)
            )
            last_messages: Dict[int, Message] = {m.chat_id: m for m in q.scalars().all()}

        return [(c, counts.get(c.id, 0), last_messages.get(c.id)) for c in chats]

    async def update_title(self, chat_id: int, title: str) -> None:
        async with self.session_factory.begin() as session:
            await session.execute(
                update(Chat).where(Chat.id == chat_id).values(title=title, updated_at=utcnow())
            )

    async def delete_chat(self, chat_id: int) -> None:
        # Сообщения удаляем явно, не полагаясь на каскад в конкретной СУБД
        async with self.session_factory.begin() as session:
            await session.execute(delete(Message).where(Message.chat_id == chat_id))
            await session.execute(delete(Chat).where(Chat.id == chat_id))
