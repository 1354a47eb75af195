"""
Resolver Persistence

Persisted tiers of the series resolver: resolved episodes, series bindings,
catalog snapshots and per-series episode lists, stored as JSON payloads in the
resolver_cache_entries table.
"""
import json
import logging
import time
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert

from iptv_service.database import session_scope
from iptv_service.models import ResolverCacheEntry


logger = logging.getLogger(__name__)

KIND_RESOLVED = "resolved"
KIND_BINDING = "binding"
KIND_CATALOG = "catalog"
KIND_SERIES_INFO = "series_info"


class ResolverStore:
    """Key/value persistence per kind with oldest-first pruning."""

    def __init__(self, *, max_entries: dict[str, int] | None = None):
        self._max_entries = max_entries or {}

    async def get(self, kind: str, key: str) -> tuple[Any, float] | None:
        """
        Returns:
            (payload, saved_at) or None when missing or undecodable
        """
        async with session_scope() as session:
            result = await session.execute(
                select(ResolverCacheEntry.payload, ResolverCacheEntry.saved_at).where(
                    ResolverCacheEntry.kind == kind,
                    ResolverCacheEntry.cache_key == key,
                )
            )
            row = result.first()
        if row is None:
            return None
        try:
            return json.loads(row.payload), row.saved_at
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt %s entry for %s", kind, key)
            await self.delete(kind, key)
            return None

    async def put(self, kind: str, key: str, payload: Any, saved_at: float | None = None) -> None:
        saved_at = time.time() if saved_at is None else saved_at
        encoded = json.dumps(payload, separators=(",", ":"))
        stmt = insert(ResolverCacheEntry).values(kind=kind, cache_key=key, payload=encoded, saved_at=saved_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ResolverCacheEntry.kind, ResolverCacheEntry.cache_key],
            set_={"payload": stmt.excluded.payload, "saved_at": stmt.excluded.saved_at},
        )
        async with session_scope() as session:
            await session.execute(stmt)
            await self._prune(session, kind)

    async def delete(self, kind: str, key: str) -> None:
        async with session_scope() as session:
            await session.execute(
                delete(ResolverCacheEntry).where(
                    ResolverCacheEntry.kind == kind,
                    ResolverCacheEntry.cache_key == key,
                )
            )

    async def clear(self, key_prefix: str | None = None) -> int:
        """Delete all entries, or only those whose key starts with key_prefix."""
        stmt = delete(ResolverCacheEntry)
        if key_prefix:
            stmt = stmt.where(ResolverCacheEntry.cache_key.startswith(key_prefix, autoescape=True))
        async with session_scope() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    async def _prune(self, session, kind: str) -> None:
        limit = self._max_entries.get(kind)
        if not limit:
            return
        count = await session.scalar(
            select(func.count()).select_from(ResolverCacheEntry).where(ResolverCacheEntry.kind == kind)
        )
        excess = (count or 0) - limit
        if excess <= 0:
            return
        oldest = (
            select(ResolverCacheEntry.id)
            .where(ResolverCacheEntry.kind == kind)
            .order_by(ResolverCacheEntry.saved_at.asc())
            .limit(excess)
        )
        await session.execute(delete(ResolverCacheEntry).where(ResolverCacheEntry.id.in_(oldest)))
        logger.debug("Pruned %s %s entries", excess, kind)
