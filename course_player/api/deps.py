from collections.abc import Callable
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, sessionmaker

from course_player.db.session import SessionLocal
from course_player.services.backend_client import BackendClient
from course_player.services.session_registry import SessionHandle, SessionRegistry, registry

bearer_scheme = HTTPBearer(auto_error=False)

BackendFactory = Callable[[str | None], BackendClient]


def get_registry() -> SessionRegistry:
    return registry


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_backend_factory() -> BackendFactory:
    return lambda token: BackendClient(token=token)


def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    # forwarded to the LMS as-is; the backend owns authentication
    return credentials.credentials if credentials else None


def get_session_handle(
    session_id: str,
    sessions: SessionRegistry = Depends(get_registry),
) -> SessionHandle:
    return sessions.get(session_id)


CurrentSession = Annotated[SessionHandle, Depends(get_session_handle)]
