from dataclasses import dataclass
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "enrichr")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://enrichr:enrichr@db:5432/enrichr",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    database_connect_attempts: int = _env_int("DATABASE_CONNECT_ATTEMPTS", 10)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    worker_enabled: bool = _env_bool("WORKER_ENABLED", True)
    worker_tick_seconds: int = _env_int("WORKER_TICK_SECONDS", 5)
    worker_watchdog_enabled: bool = _env_bool("WORKER_WATCHDOG_ENABLED", True)
    job_stall_check_interval_seconds: float = _env_float("JOB_STALL_CHECK_INTERVAL_SECONDS", 10.0)
    job_progress_every_items: int = _env_int("JOB_PROGRESS_EVERY_ITEMS", 10)
    job_stagger_seconds: float = _env_float("JOB_STAGGER_SECONDS", 0.05)
    embedding_max_job_seconds: float = _env_float("EMBEDDING_MAX_JOB_SECONDS", 3600.0)
    embedding_stall_timeout_seconds: float = _env_float("EMBEDDING_STALL_TIMEOUT_SECONDS", 300.0)
    embedding_batch_size: int = _env_int("EMBEDDING_BATCH_SIZE", 50)
    embedding_max_batch_size: int = _env_int("EMBEDDING_MAX_BATCH_SIZE", 2048)
    embedding_parallel_batches: int = _env_int("EMBEDDING_PARALLEL_BATCHES", 3)
    embedding_group_delay_seconds: float = _env_float("EMBEDDING_GROUP_DELAY_SECONDS", 0.2)
    embedding_max_input_chars: int = _env_int("EMBEDDING_MAX_INPUT_CHARS", 8000)
    embedding_model: str = _env_str("EMBEDDING_MODEL", "openai/text-embedding-3-small")
    embedding_model_label: str = _env_str("EMBEDDING_MODEL_LABEL", "text-embedding-3-small")
    embedding_dimensions: int = _env_int("EMBEDDING_DIMENSIONS", 1536)
    openrouter_base_url: str = _env_str("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    openrouter_timeout_seconds: float = _env_float("OPENROUTER_TIMEOUT_SECONDS", 60.0)
    openrouter_referer: str = _env_str("OPENROUTER_REFERER", "https://enrichr.local")
    openrouter_api_key: str | None = os.getenv("OPENROUTER_API_KEY")
    graph_max_job_seconds: float = _env_float("GRAPH_MAX_JOB_SECONDS", 1800.0)
    graph_stall_timeout_seconds: float = _env_float("GRAPH_STALL_TIMEOUT_SECONDS", 60.0)
    graph_link_batch_size: int = _env_int("GRAPH_LINK_BATCH_SIZE", 50)
    graph_link_parallel_batches: int = _env_int("GRAPH_LINK_PARALLEL_BATCHES", 1)
    graph_metadata_batch_size: int = _env_int("GRAPH_METADATA_BATCH_SIZE", 50)
    graph_cache_ttl_days: int = _env_int("GRAPH_CACHE_TTL_DAYS", 30)
    graph_citation_count_limit: int = _env_int("GRAPH_CITATION_COUNT_LIMIT", 200)
    graph_citation_count_batch_size: int = _env_int("GRAPH_CITATION_COUNT_BATCH_SIZE", 20)
    graph_crossref_record_limit: int = _env_int("GRAPH_CROSSREF_RECORD_LIMIT", 100)
    graph_crossref_batch_size: int = _env_int("GRAPH_CROSSREF_BATCH_SIZE", 5)
    pubmed_base_url: str = _env_str("PUBMED_BASE_URL", "https://eutils.ncbi.nlm.nih.gov/entrez/eutils")
    pubmed_timeout_seconds: float = _env_float("PUBMED_TIMEOUT_SECONDS", 30.0)
    pubmed_link_throttle_seconds: float = _env_float("PUBMED_LINK_THROTTLE_SECONDS", 0.35)
    pubmed_link_throttle_with_key_seconds: float = _env_float("PUBMED_LINK_THROTTLE_WITH_KEY_SECONDS", 0.1)
    pubmed_fetch_throttle_seconds: float = _env_float("PUBMED_FETCH_THROTTLE_SECONDS", 0.3)
    pubmed_fetch_throttle_with_key_seconds: float = _env_float("PUBMED_FETCH_THROTTLE_WITH_KEY_SECONDS", 0.08)
    pubmed_api_key: str | None = os.getenv("PUBMED_API_KEY")
    europepmc_base_url: str = _env_str("EUROPEPMC_BASE_URL", "https://www.ebi.ac.uk/europepmc/webservices/rest")
    europepmc_timeout_seconds: float = _env_float("EUROPEPMC_TIMEOUT_SECONDS", 10.0)
    europepmc_throttle_seconds: float = _env_float("EUROPEPMC_THROTTLE_SECONDS", 0.15)
    crossref_timeout_seconds: float = _env_float("CROSSREF_TIMEOUT_SECONDS", 8.0)
    crossref_throttle_seconds: float = _env_float("CROSSREF_THROTTLE_SECONDS", 0.2)
    crossref_api_mailto: str | None = os.getenv("CROSSREF_API_MAILTO")


settings = Settings()
