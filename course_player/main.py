import logging

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from course_player import models  # noqa: F401
from course_player.api.routes import player, rte
from course_player.core.config import get_settings
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError
from course_player.core.logging import configure_logging
from course_player.db.base import Base
from course_player.db.session import engine
from course_player.services.session_registry import registry

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def handle_api_error(_, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message, **exc.detail}},
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(_, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": {"code": ErrorCode.VALIDATION_ERROR, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())}},
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
def on_startup() -> None:
    configure_logging()
    if settings.outbox_auto_create:
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as exc:
            raise RuntimeError("Outbox schema is not ready. Run: alembic upgrade head") from exc


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if len(registry):
        logger.info("Shutting down %d open sessions", len(registry))
    await registry.close_all()


app.include_router(player.router)
app.include_router(rte.router)
