# services/llm_provider.py
import asyncio
from typing import Any, Dict, List, Mapping, Optional

import httpx
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_deepseek import ChatDeepSeek
from langchain_ollama import ChatOllama
from openai import APITimeoutError

from errors import configuration_error
from models import ModelConfig

OLLAMA_DEFAULT_URL = "http://localhost:11434"

_MESSAGE_TYPES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


class LLMFactory:
    """
    Строит langchain-клиент под конкретную запись реестра моделей.
    provider "ollama" -> ChatOllama, всё остальное считается OpenAI-совместимым API.

    Для OpenAI-совместимых провайдеров берётся ChatDeepSeek: в отличие от ChatOpenAI
    он переносит reasoning_content из ответа в additional_kwargs.
    """

    def __init__(
        self,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        http_async_client: Optional[httpx.AsyncClient] = None,
    ):
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.http_async_client = http_async_client

    def create(self, model: ModelConfig) -> BaseChatModel:
        provider = (model.provider or "openai").lower()

        if provider == "ollama":
            return ChatOllama(
                model=model.model_id,
                base_url=model.base_url or OLLAMA_DEFAULT_URL,
                temperature=self.temperature,
                num_predict=self.max_tokens,
                client_kwargs={"timeout": self.timeout},
            )

        if not model.base_url or not model.api_key:
            raise configuration_error("Model configuration is incomplete: base_url and api_key are required")

        return ChatDeepSeek(
            model=model.model_id,
            base_url=model.base_url,
            api_key=model.api_key,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
            # повторы - забота вызывающей стороны
            max_retries=0,
            stream_usage=True,
            http_async_client=self.http_async_client,
        )


def to_langchain_messages(history: List[Mapping[str, str]]) -> List[BaseMessage]:
    return [_MESSAGE_TYPES[m["role"]](content=m["content"]) for m in history]


def message_text(content: Any) -> str:
    """Текст из content чанка: строка или список частей."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def message_reasoning(message: BaseMessage) -> Optional[str]:
    # DeepSeek-подобные провайдеры кладут рассуждения в отдельный канал
    return message.additional_kwargs.get("reasoning_content") or None


def message_usage(message: BaseMessage) -> Optional[Dict[str, int]]:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return None
    prompt = usage.get("input_tokens", 0) or 0
    completion = usage.get("output_tokens", 0) or 0
    # total всегда сумма двух частей, как и в сохранённом сообщении
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}


def upstream_status(exc: BaseException) -> Optional[int]:
    """HTTP-статус ошибки провайдера, если его удаётся достать."""
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return 504
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None
