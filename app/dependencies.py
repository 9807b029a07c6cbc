import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.database import get_db
from app.errors import Conflict, DispatchError, Forbidden, InvalidInput, NotFound
from app.services.auth import Identity, decode_access_token
from app.services.dispatcher import Dispatcher
from app.services.lifecycle import LifecycleEngine
from app.services.presence import PresenceRegistry
from app.services.store import Store

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def install_realtime(app: FastAPI) -> None:
    """Attach a fresh presence registry and dispatcher to the application."""
    app.state.presence = PresenceRegistry()
    app.state.dispatcher = Dispatcher(app.state.presence)


async def get_store() -> Store:
    return Store(await get_db())


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


async def get_engine(
    store: Store = Depends(get_store),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> LifecycleEngine:
    return LifecycleEngine(store, dispatcher)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    identity = decode_access_token(credentials.credentials if credentials else None)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing access token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def http_error(e: DispatchError) -> HTTPException:
    """Map a dispatch-core error onto the HTTP status a client should see."""
    if isinstance(e, Forbidden):
        return HTTPException(status_code=403, detail=e.as_dict())
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail=e.as_dict())
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, InvalidInput):
        return HTTPException(status_code=400, detail=e.message)
    logger.error("Unmapped dispatch error: %s", e)
    return HTTPException(status_code=500, detail=e.message)
