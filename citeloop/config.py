from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""
    planner_model: str = ""  # optional override for query planning and task decomposition
    llm_timeout_seconds: float = 60.0

    # Search providers
    search_providers: str = "tavily,exa"  # any of tavily | exa | brave
    tavily_api_key: str = ""
    exa_api_key: str = ""
    brave_api_key: str = ""
    search_timeout_seconds: float = 20.0
    tavily_requests_per_second: float = 10.0
    exa_requests_per_second: float = 5.0
    brave_requests_per_second: float = 1.0
    enrich_excerpt_chars: int = 500

    # Harvest (direct page fetch)
    harvest_enabled: bool = True
    harvest_timeout_seconds: float = 10.0
    harvest_user_agent: str = "citeloop/0.1 (+research bot)"
    harvest_respect_robots: bool = True
    harvest_min_content_length: int = 100
    harvest_max_parallel: int = 4
    chunk_size: int = 1000
    chunk_overlap: int = 100

    # Ranking
    authority_domains: str = (
        "wikipedia.org,github.com,arxiv.org,scholar.google.com,nature.com,science.org,"
        "sec.gov,reuters.com,ft.com,wsj.com,bloomberg.com,.edu,.gov"
    )
    authority_bonus: float = 0.3
    recency_bonus: float = 0.2
    recency_half_life_days: float = 90.0
    max_per_host: int = 3
    discovery_target_count: int = 16
    max_evidence: int = 50

    # Round planner (iterative mode)
    results_per_query: int = 8
    round_query_delay_seconds: float = 0.3

    # Orchestrator / workers
    min_workers: int = 3
    max_workers: int = 8
    max_supplemental_tasks: int = 2
    max_parallel_workers: int = 8
    worker_batch_size: int = 5
    worker_batch_delay_seconds: float = 1.0
    worker_max_results_per_query: int = 10
    worker_top_documents: int = 5

    # Synthesis
    max_sources_for_synthesis: int = 20
    synthesis_max_tokens: int = 4000

    # Quality gate / control loop
    research_mode: str = "orchestrator"  # orchestrator | iterative
    max_total_iterations: int = 3
    max_research_iterations: int = 1
    max_revision_iterations: int = 2
    min_word_count: int = 200
    max_word_count: int = 5000
    max_unused_evidence_ratio: float = 0.7

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def search_provider_list(self) -> list[str]:
        return [p.strip().lower() for p in self.search_providers.split(",") if p.strip()]

    @property
    def authority_domain_list(self) -> list[str]:
        return [d.strip().lower() for d in self.authority_domains.split(",") if d.strip()]


settings = Settings()
