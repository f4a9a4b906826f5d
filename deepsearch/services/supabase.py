"""Supabase-backed persistent cache tier and credit ledger RPC backend."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from postgrest.exceptions import APIError
from supabase import Client, create_client

from deepsearch.config import settings
from deepsearch.errors import CacheBackendUnavailable, LedgerFunctionNotFound

# Postgres "undefined_function" and PostgREST "function not in schema cache".
FUNCTION_NOT_FOUND_CODES = {"42883", "PGRST202"}


def get_client() -> Client:
    return create_client(settings.supabase_url, settings.supabase_key)


_client: Client | None = None


def client() -> Client:
    global _client
    if _client is None:
        _client = get_client()
    return _client


def is_configured() -> bool:
    return bool(settings.supabase_url and settings.supabase_key)


async def _execute(query: Any) -> Any:
    return await asyncio.to_thread(query.execute)


class SupabaseCacheStore:
    """Rows: cache_key, cache_type, query, response, provider, expires_at, hit_count."""

    def __init__(self, supabase_client: Client | None = None, table: str | None = None):
        self._client = supabase_client
        self.table = table or settings.cache_table

    def _table(self) -> Any:
        return (self._client or client()).table(self.table)

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            result = await _execute(
                self._table()
                .select("response, expires_at, hit_count")
                .eq("cache_key", key)
                .limit(1)
            )
        except Exception as e:
            raise CacheBackendUnavailable(str(e)) from e
        rows = result.data or []
        return rows[0] if rows else None

    async def upsert(
        self,
        key: str,
        cache_type: str,
        query: str,
        payload: Any,
        provider: str | None,
        expires_at: datetime,
    ) -> None:
        row = {
            "cache_key": key,
            "cache_type": cache_type,
            "query": query,
            "response": payload,
            "provider": provider,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
            "hit_count": 0,
        }
        try:
            await _execute(self._table().upsert(row, on_conflict="cache_key"))
        except Exception as e:
            raise CacheBackendUnavailable(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await _execute(self._table().delete().eq("cache_key", key))
        except Exception as e:
            raise CacheBackendUnavailable(str(e)) from e

    async def increment_hit_count(self, key: str, current: int) -> None:
        try:
            await _execute(
                self._table().update({"hit_count": current + 1}).eq("cache_key", key)
            )
        except Exception as e:
            raise CacheBackendUnavailable(str(e)) from e


def is_function_not_found(exc: APIError) -> bool:
    code = str(getattr(exc, "code", "") or "")
    if code in FUNCTION_NOT_FOUND_CODES:
        return True
    message = str(getattr(exc, "message", "") or "").lower()
    return "could not find the function" in message or (
        "function" in message and "does not exist" in message
    )


class SupabaseLedgerBackend:
    """Calls ledger stored procedures, mapping a missing function to LedgerFunctionNotFound."""

    def __init__(self, supabase_client: Client | None = None):
        self._client = supabase_client

    async def call(self, function: str, params: dict[str, Any] | None = None) -> Any:
        rpc = (self._client or client()).rpc(function, params or {})
        try:
            result = await _execute(rpc)
        except APIError as e:
            if is_function_not_found(e):
                raise LedgerFunctionNotFound(function) from e
            raise
        return result.data
