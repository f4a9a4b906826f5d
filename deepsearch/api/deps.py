from __future__ import annotations

from fastapi import Header, Request

from deepsearch import llm_client
from deepsearch.agents.orchestrator import ResearchOrchestrator
from deepsearch.config import settings
from deepsearch.llm_client import PROVIDER_SETTINGS, ProviderId
from deepsearch.services.cache import CacheService
from deepsearch.services.credits import CreditLedgerClient


def get_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Identity set by the authenticating proxy; absent means anonymous."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def get_cache(request: Request) -> CacheService:
    return request.app.state.cache


def get_ledger(request: Request) -> CreditLedgerClient:
    return request.app.state.ledger


def make_orchestrator(request: Request, provider: str | None) -> ResearchOrchestrator:
    return ResearchOrchestrator(request.app.state.cache, request.app.state.ledger, provider=provider)


def get_available_providers() -> list[dict[str, str | bool]]:
    """Return the LLM providers that have credentials on this server."""
    default = settings.default_llm_provider.lower().strip()
    providers = []
    for name in llm_client.configured_providers():
        _, model_field, _ = PROVIDER_SETTINGS[ProviderId(name)]
        providers.append({"id": name, "model": getattr(settings, model_field), "default": name == default})
    return providers
