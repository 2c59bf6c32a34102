# services/token_service.py
"""
Локальный подсчёт токенов через tiktoken.

Используется как запасной вариант, когда провайдер не прислал usage.
Это приближение: с биллингом провайдера число может не совпадать.
"""
import threading
from typing import Dict, Iterable, Mapping

import structlog
import tiktoken

logger = structlog.get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"

# Кэш энкодеров на весь процесс: строится при первом обращении, потом только читается
_encoders: Dict[str, tiktoken.Encoding] = {}
_encoders_lock = threading.Lock()


def get_encoder(encoding_name: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    encoder = _encoders.get(encoding_name)
    if encoder is None:
        with _encoders_lock:
            encoder = _encoders.get(encoding_name)
            if encoder is None:
                encoder = tiktoken.get_encoding(encoding_name)
                _encoders[encoding_name] = encoder
    return encoder


def dispose_encoders() -> None:
    """Освобождает кэш энкодеров (вызывается при остановке приложения)."""
    with _encoders_lock:
        _encoders.clear()


def _encode(text: str, encoding_name: str) -> int:
    # Служебные маркеры вроде <|im_start|> считаем обычным текстом
    return len(get_encoder(encoding_name).encode(text, disallowed_special=()))


def count_tokens(text: str, encoding_name: str = DEFAULT_ENCODING) -> int:
    try:
        return _encode(text, encoding_name)
    except Exception as e:
        logger.error("Token counting failed", encoding=encoding_name, error=str(e))
        return 0


def count_message_tokens(
    messages: Iterable[Mapping[str, str]],
    encoding_name: str = DEFAULT_ENCODING,
) -> int:
    """
    Токены списка сообщений в chat-формате:
    <|im_start|>{role}\\n{content}<|im_end|> на каждое сообщение плюс завершающий <|im_end|>.
    """
    total = 0
    for message in messages:
        total += _encode(f"<|im_start|>{message['role']}\n{message['content']}<|im_end|>", encoding_name)
    total += _encode("<|im_end|>", encoding_name)
    return total


class TokenCounter:
    """Обёртка над функциями модуля для внедрения через контейнер."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name

    def count(self, text: str) -> int:
        return count_tokens(text, self.encoding_name)

    def count_messages(self, messages: Iterable[Mapping[str, str]]) -> int:
        return count_message_tokens(messages, self.encoding_name)
