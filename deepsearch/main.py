from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepsearch.api.routes import providers, research
from deepsearch.config import settings
from deepsearch.services import supabase
from deepsearch.services.background import background_tasks
from deepsearch.services.cache import CacheService
from deepsearch.services.credits import CreditLedgerClient
from deepsearch.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if supabase.is_configured():
        store, backend = supabase.SupabaseCacheStore(), supabase.SupabaseLedgerBackend()
    else:
        logger.warning("Supabase is not configured: memory-only cache, no credit ledger")
        store, backend = None, None
    app.state.cache = CacheService.from_settings(store)
    app.state.ledger = CreditLedgerClient(backend)
    app.state.cache.start()
    yield
    # Shutdown
    await background_tasks.drain()
    await app.state.cache.close()


app = FastAPI(
    title="DeepSearch",
    description="Multi-stage web research with cited, streamed answers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(providers.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepsearch"}
