from __future__ import annotations

from pydantic import BaseModel

from deepsearch.models.research import ResearchMode

# --- Requests ---


class ResearchRequest(BaseModel):
    query: str = ""
    # Checked by validate_request so an unknown mode is a 400 like any other bad input.
    mode: str = ResearchMode.RESEARCH.value
    provider: str | None = None


# --- Responses ---


class ProviderInfo(BaseModel):
    id: str
    model: str
    default: bool = False


class ProvidersResponse(BaseModel):
    providers: list[ProviderInfo]


class CacheStatsResponse(BaseModel):
    enabled: bool
    memory_entries: int
    memory_max_entries: int
    slow_tier: bool
    fast_hits: int
    slow_hits: int
    misses: int
    backend_errors: int
