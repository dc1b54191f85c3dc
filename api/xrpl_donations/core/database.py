"""Document store over Supabase tables.

Each collection is a table keyed by an ``id`` column. Only single-row writes
are used; :meth:`SupabaseStore.update_if` is the conditional update that the
completion paths rely on to decide which writer wins.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from supabase import AsyncClient, acreate_client

from .config import SUPABASE_KEY, SUPABASE_URL


class Store(Protocol):
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    async def put(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_merge(
        self, collection: str, doc_id: str, partial: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    async def update_if(
        self,
        collection: str,
        doc_id: str,
        partial: Dict[str, Any],
        *,
        field: str,
        allowed: Iterable[Any],
    ) -> bool: ...

    async def query(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]: ...


class SupabaseStore:
    def __init__(self, client: AsyncClient):
        self.client = client

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        resp = (
            await self.client.table(collection)
            .select("*")
            .eq("id", doc_id)
            .limit(1)
            .execute()
        )
        rows = resp.data or []
        return rows[0] if rows else None

    async def put(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        row = {**doc, "id": doc_id}
        await self.client.table(collection).upsert(row).execute()
        return row

    async def update_merge(
        self, collection: str, doc_id: str, partial: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        resp = (
            await self.client.table(collection)
            .update(partial)
            .eq("id", doc_id)
            .execute()
        )
        rows = resp.data or []
        return rows[0] if rows else None

    async def update_if(
        self,
        collection: str,
        doc_id: str,
        partial: Dict[str, Any],
        *,
        field: str,
        allowed: Iterable[Any],
    ) -> bool:
        """Apply ``partial`` only while ``field`` is one of ``allowed``.

        PostgREST evaluates the filter and the update as one statement, so of
        two racing writers at most one gets a row back.
        """
        resp = (
            await self.client.table(collection)
            .update(partial)
            .eq("id", doc_id)
            .in_(field, list(allowed))
            .execute()
        )
        return bool(resp.data)

    async def query(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        resp = await self.client.table(collection).select("*").eq(field, value).execute()
        return list(resp.data or [])


async def create_store() -> SupabaseStore:
    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_KEY")
    client = await acreate_client(SUPABASE_URL, SUPABASE_KEY)
    return SupabaseStore(client)
