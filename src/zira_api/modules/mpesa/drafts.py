"""Draft persistence for in-progress configuration edits.

Drafts are short-lived, keyed per user and per client session, and live in an
injected key-value store with TTL semantics (in-memory for a single process,
Redis when shared). Nothing here is global: callers pass the store instance.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis as AsyncRedis

from .schemas import ConfigSummary, ProviderType

logger = logging.getLogger(__name__)

DRAFT_KEY_PREFIX = "mpesa_draft_v1"
DEFAULT_DRAFT_TTL_SECONDS = 30 * 60

Clock = Callable[[], float]


class DraftStore(Protocol):
    """Key-value store with per-entry expiry."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    async def clear(self, key: str) -> None: ...

    async def is_expired(self, key: str) -> bool: ...


class MemoryDraftStore:
    """In-process store keeping an expiry timestamp beside each entry.

    Expired entries are not evicted on their own; ``is_expired`` reports them
    so the owner can clear them.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], float]] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return dict(entry[0])

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        self._entries[key] = (dict(value), self._clock() + ttl_seconds)

    async def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    async def is_expired(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() >= entry[1]


class RedisDraftStore:
    """Redis-backed store. Expiry is delegated to Redis key TTLs."""

    def __init__(self, redis: AsyncRedis):
        self.redis = redis

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        await self.redis.set(key, json.dumps(value), ex=ttl_seconds)

    async def clear(self, key: str) -> None:
        await self.redis.delete(key)

    async def is_expired(self, key: str) -> bool:
        # Redis drops the key itself once its TTL elapses
        return False


class DraftManager:
    """Save, merge, load and clear one user's draft configuration edit."""

    def __init__(
        self,
        store: DraftStore,
        user_id: str,
        session_id: str = "default",
        ttl_seconds: int = DEFAULT_DRAFT_TTL_SECONDS,
        clock: Clock = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.draft_key = f"{DRAFT_KEY_PREFIX}:{user_id}:{session_id}"
        self.edit_key = f"{self.draft_key}:editing"

    async def save_draft(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge ``fields`` into the current draft and restart its expiry window.

        Returns:
            The merged draft fields.
        """
        current = await self.load_draft() or {}
        merged = {**current, **fields}
        now = self._clock()
        await self.store.set(
            self.draft_key,
            {"fields": merged, "saved_at": now, "expires_at": now + self.ttl_seconds},
            self.ttl_seconds,
        )
        logger.debug("Saved draft %s (%d fields)", self.draft_key, len(merged))
        return merged

    async def load_draft(self) -> dict[str, Any] | None:
        """Return the draft fields, or None when there is none or it expired."""
        payload = await self.store.get(self.draft_key)
        if payload is None:
            return None
        expired = await self.store.is_expired(self.draft_key)
        if expired or self._clock() >= payload.get("expires_at", 0):
            logger.debug("Draft %s expired, clearing", self.draft_key)
            await self.clear_draft()
            return None
        return dict(payload.get("fields") or {})

    async def clear_draft(self) -> None:
        await self.store.clear(self.draft_key)
        await self.store.clear(self.edit_key)

    async def set_editing(self, editing: bool) -> None:
        if editing:
            await self.store.set(self.edit_key, {"editing": True}, self.ttl_seconds)
        else:
            await self.store.clear(self.edit_key)

    async def is_editing(self) -> bool:
        if await self.store.is_expired(self.edit_key):
            await self.store.clear(self.edit_key)
            return False
        return await self.store.get(self.edit_key) is not None

    async def has_active_edit(self) -> bool:
        """True while a draft or the edit flag is present."""
        return await self.is_editing() or await self.load_draft() is not None


class ConfigFormController:
    """State of the merchant configuration form.

    Holds the selected provider variant and the typed field values, restores
    them from a draft without a server round-trip, and refuses background
    reloads from the server while an edit is in progress.
    """

    def __init__(self, drafts: DraftManager):
        self.drafts = drafts
        self.selected_kind: ProviderType = ProviderType.PAYBILL
        self.fields: dict[str, Any] = {}
        self.configs: list[ConfigSummary] = []

    async def restore(self) -> bool:
        draft = await self.drafts.load_draft()
        if draft is None:
            return False
        self.fields = {k: v for k, v in draft.items() if k != "provider_type"}
        if draft.get("provider_type"):
            self.selected_kind = ProviderType(draft["provider_type"])
        return True

    async def select_kind(self, kind: ProviderType | str) -> None:
        self.selected_kind = ProviderType(kind)
        await self.drafts.save_draft({"provider_type": self.selected_kind.value})
        await self.drafts.set_editing(True)

    async def update_field(self, name: str, value: Any) -> None:
        self.fields[name] = value
        await self.drafts.save_draft({name: value})
        await self.drafts.set_editing(True)

    async def reload(self, fetch: Callable[[], Awaitable[list[ConfigSummary]]]) -> bool:
        """Refresh from the server unless a draft or edit is active.

        Returns:
            True if server state was applied, False if the reload was skipped.
        """
        if await self.drafts.has_active_edit():
            logger.debug("Skipping config reload while a draft is active")
            return False

        self.configs = await fetch()
        active = next((c for c in self.configs if c.is_active), None)
        if active is not None:
            self.selected_kind = ProviderType(active.provider_type)
            self.fields = {"shortcode": active.shortcode, "environment": active.environment}
            if active.client_id:
                self.fields["client_id"] = active.client_id
        return True

    async def mark_saved(self) -> None:
        await self.drafts.clear_draft()

    async def cancel(self) -> None:
        self.fields = {}
        await self.drafts.clear_draft()
