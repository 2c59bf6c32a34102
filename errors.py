# errors.py
import enum
from typing import Dict, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    BUSINESS = "business"
    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


_DEFAULT_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.BUSINESS: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UPSTREAM: 503,
    ErrorKind.CONFIGURATION: 503,
    ErrorKind.INTERNAL: 500,
}


class AppError(Exception):
    """
    Единый тип ошибки приложения.
    Сервисы бросают его рядом с местом обнаружения, а в ответ
    {code, message, data} он превращается один раз, на границе HTTP.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        upstream_status: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code or _DEFAULT_STATUS[kind]
        self.cause = cause
        self.upstream_status = upstream_status
        self.headers = headers

    def to_envelope(self) -> dict:
        return {"code": self.status_code, "message": self.message, "data": None}

    def __repr__(self) -> str:
        return f"AppError(kind={self.kind.value!r}, status={self.status_code}, message={self.message!r})"


def validation_error(field: str, message: str) -> AppError:
    return AppError(ErrorKind.VALIDATION, f"{field}: {message}")


def authentication_error(message: str) -> AppError:
    return AppError(ErrorKind.AUTHENTICATION, message)


def not_found(resource: str) -> AppError:
    return AppError(ErrorKind.NOT_FOUND, f"{resource} not found")


def conflict(message: str) -> AppError:
    return AppError(ErrorKind.CONFLICT, message)


def business_error(message: str, status_code: int = 400) -> AppError:
    return AppError(ErrorKind.BUSINESS, message, status_code=status_code)


def rate_limited(
    message: str = "Too many requests, please try again later",
    headers: Optional[Dict[str, str]] = None,
) -> AppError:
    return AppError(ErrorKind.RATE_LIMITED, message, headers=headers)


def configuration_error(message: str) -> AppError:
    return AppError(ErrorKind.CONFIGURATION, message)


def upstream_error(cause: BaseException, upstream_status: Optional[int] = None) -> AppError:
    if upstream_status:
        message = f"AI service error (upstream status {upstream_status})"
    else:
        message = "AI service is temporarily unavailable, please try again later"
    return AppError(ErrorKind.UPSTREAM, message, cause=cause, upstream_status=upstream_status)
