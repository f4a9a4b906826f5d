from __future__ import annotations

from fastapi import APIRouter, Depends

from deepsearch.api.deps import get_available_providers, get_cache
from deepsearch.models.schemas import CacheStatsResponse, ProviderInfo, ProvidersResponse
from deepsearch.services.cache import CacheService

router = APIRouter(prefix="/api", tags=["providers"])


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers():
    """List LLM providers configured on this server."""
    return ProvidersResponse(providers=[ProviderInfo(**p) for p in get_available_providers()])


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(cache: CacheService = Depends(get_cache)):
    return CacheStatsResponse(**cache.stats())
