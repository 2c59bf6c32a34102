# repositories/model_repo.py
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import ModelConfig


class ModelRepository:
    """Реестр доступных моделей провайдеров."""

    # Порядок выбора модели по умолчанию: sort_order, затем имя
    _ORDER = (ModelConfig.sort_order, ModelConfig.name, ModelConfig.id)

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_model(
        self,
        name: str,
        model_id: str,
        provider: str = "openai",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        enabled: bool = True,
        sort_order: int = 0,
    ) -> ModelConfig:
        model = ModelConfig(
            name=name,
            model_id=model_id,
            provider=provider,
            base_url=base_url,
            api_key=api_key,
            enabled=enabled,
            sort_order=sort_order,
        )
        async with self.session_factory() as session:
            session.add(model)
            await session.commit()
            await session.refresh(model)
        return model

    async def count(self) -> int:
        async with self.session_factory() as session:
            q = await session.execute(select(func.count(ModelConfig.id)))
            return q.scalar_one()

    async def list_enabled(self) -> List[ModelConfig]:
        async with self.session_factory() as session:
            q = await session.execute(select(ModelConfig).where(ModelConfig.enabled.is_(True)).order_by(*self._ORDER))
            return list(q.scalars().all())

    async def get_enabled(self, model_config_id: int) -> Optional[ModelConfig]:
        async with self.session_factory() as session:
            q = await session.execute(
                select(ModelConfig).where(ModelConfig.id == model_config_id, ModelConfig.enabled.is_(True))
            )
            return q.scalars().first()

    async def first_enabled(self) -> Optional[ModelConfig]:
        async with self.session_factory() as session:
            q = await session.execute(
                select(ModelConfig).where(ModelConfig.enabled.is_(True)).order_by(*self._ORDER).limit(1)
            )
            return q.scalars().first()
