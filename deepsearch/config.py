from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # LLM providers
    default_llm_provider: str = "openai"  # openai | anthropic | gemini | deepseek | grok | openrouter
    fallback_llm_provider: str = ""  # optional secondary provider used on upstream failure

    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = "https://api.openai.com/v1"

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    anthropic_max_tokens: int = 8192

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    deepseek_api_key: str = ""
    deepseek_model: str = "deepseek-chat"
    deepseek_base_url: str = "https://api.deepseek.com"

    grok_api_key: str = ""
    grok_model: str = "grok-3-mini"
    grok_base_url: str = "https://api.x.ai/v1"

    openrouter_api_key: str = ""
    openrouter_model: str = "openai/gpt-4o-mini"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Search provider
    search_provider: str = "tavily"  # tavily | brave
    tavily_api_key: str = ""
    brave_api_key: str = ""
    search_fallback_enabled: bool = True
    search_max_results: int = 10
    max_parallel_search: int = 4

    # Persistent store (cache slow tier + credit ledger)
    supabase_url: str = ""
    supabase_key: str = ""
    cache_table: str = "search_cache"

    # Cache
    cache_enabled: bool = True
    cache_memory_max_entries: int = 500
    cache_memory_ttl_seconds: int = 900
    cache_prune_interval_seconds: int = 300
    cache_ttl_search_hours: int = 48
    cache_ttl_plan_hours: int = 48
    cache_ttl_web_summary_hours: int = 48
    cache_ttl_research_synthesis_hours: int = 48
    cache_ttl_brainstorm_synthesis_hours: int = 48
    cache_ttl_extraction_hours: int = 24
    cache_ttl_gap_analysis_hours: int = 24
    cache_ttl_refine_hours: int = 48
    cache_ttl_related_hours: int = 48

    # Timeouts (seconds)
    llm_timeout_seconds: float = 90.0
    llm_stream_idle_timeout_seconds: float = 60.0
    search_timeout_seconds: float = 30.0
    ledger_timeout_seconds: float = 10.0
    cache_store_timeout_seconds: float = 5.0
    finalize_timeout_seconds: float = 15.0

    # Pipeline
    proofread_with_llm: bool = False
    refine_web_queries: bool = True
    related_searches_enabled: bool = True
    synthesis_chunk_chars: int = 100

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
