from typing import Generator
from uuid import UUID

from fastapi import HTTPException, Request, status

from ..core.config import Settings, get_settings
from ..core.db import get_session
from ..core.redis import get_redis
from ..modules.mpesa.drafts import DraftStore, MemoryDraftStore, RedisDraftStore
from ..modules.mpesa.watcher import StatusWatcher


def get_settings_dep() -> Settings:
    return get_settings()


def get_db() -> Generator:
    with get_session() as db:
        yield db


def get_account_id(request: Request) -> UUID:
    """Account resolved upstream and carried by AccountContextMiddleware."""
    raw = getattr(request.state, "account_id", None)
    if not raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing account context",
        )
    try:
        return UUID(str(raw))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid account id",
        ) from e


def get_draft_store(request: Request) -> DraftStore:
    store = getattr(request.app.state, "draft_store", None)
    if store is not None:
        return store

    redis = get_redis()
    store = RedisDraftStore(redis) if redis is not None else MemoryDraftStore()
    request.app.state.draft_store = store
    return store


def get_status_watcher(request: Request) -> StatusWatcher:
    watcher = getattr(request.app.state, "status_watcher", None)
    if watcher is None:
        watcher = StatusWatcher(get_session)
        request.app.state.status_watcher = watcher
    return watcher
