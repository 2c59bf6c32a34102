# main.py
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import endpoints.api_auth as api_auth_module
import endpoints.api_chats as api_chats_module
import endpoints.api_users as api_users_module
import endpoints.utils as utils_module
from containers import container
from db import init_db
from endpoints.api_auth import router as api_auth_router
from endpoints.api_chats import router as api_chats_router
from endpoints.api_users import router as api_users_router
from errors import AppError, ErrorKind
from logging_config import RequestContextMiddleware, configure_logging, get_logger
from services.token_service import dispose_encoders

logger = get_logger(__name__)


async def seed_default_model() -> None:
    """Кладёт модель из DEFAULT_MODEL_* в реестр, если он пуст."""
    settings = container.settings()
    model_repo = container.model_repo()
    if settings.default_model is None or await model_repo.count() > 0:
        return
    default = settings.default_model
    model = await model_repo.create_model(
        name=default.name,
        model_id=default.model_id,
        provider=default.provider,
        base_url=default.base_url,
        api_key=default.api_key,
    )
    logger.info("Default model registered", model_id=model.model_id, provider=model.provider)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = container.engine()
    await init_db(engine)
    await seed_default_model()
    logger.info("Application started", env=container.settings().env)
    yield
    dispose_encoders()
    await engine.dispose()
    logger.info("Application stopped")


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    # loc вида ("body", "email") -> "email"
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    return f"{field}: {first.get('msg')}" if field else str(first.get("msg"))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "Request rejected",
            kind=exc.kind.value,
            status=exc.status_code,
            message=exc.message,
            upstream_status=exc.upstream_status,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        message = _first_validation_message(exc)
        return JSONResponse(status_code=400, content={"code": 400, "message": message, "data": None})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.status_code, "message": str(exc.detail), "data": None},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", path=request.url.path, method=request.method)
        # Детали наружу только при разработке
        message = str(exc) if container.settings().is_development else "Internal server error"
        error = AppError(ErrorKind.INTERNAL, message, cause=exc)
        return JSONResponse(status_code=error.status_code, content=error.to_envelope())


def create_app() -> FastAPI:
    settings = container.settings()
    configure_logging(json_format=settings.log_format == "json", log_level=settings.log_level)

    app = FastAPI(title="LLM Chat Backend", lifespan=lifespan)

    # Подключаем контейнер к модулям, иначе @inject не сработает
    container.wire(modules=[
        utils_module,
        api_auth_module,
        api_chats_module,
        api_users_module,
    ])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)

    app.include_router(api_auth_router)
    app.include_router(api_chats_router)
    app.include_router(api_users_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    settings = container.settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)
