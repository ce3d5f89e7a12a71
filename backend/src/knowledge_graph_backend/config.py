"""Configuration management for the Knowledge Graph Backend."""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, cast

from dotenv import load_dotenv
import structlog


SUPPORTED_LLM_PROVIDERS = {"openai", "openrouter", "ollama"}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables."""

    app_env: str
    # LLM settings
    llm_provider: str
    llm_api_key: Optional[str]
    llm_base_url: Optional[str]
    llm_model_id: str
    llm_timeout_seconds: float
    llm_retry_attempts: int
    # Collaborator connections
    neo4j_uri: str
    neo4j_user: str
    neo4j_password: str
    redis_url: str
    redis_key_prefix: str
    # Community detection settings
    community_resolution: float
    community_max_levels: int
    community_threshold: float
    community_seed: Optional[int]
    incremental_hop_radius: int
    incremental_max_change_ratio: float
    incremental_min_nodes: int
    smart_change_ratio_threshold: float
    entity_fetch_limit: int
    # Summarization settings
    summary_min_community_size: int
    summary_batch_size: int
    summary_batch_delay_seconds: float
    summary_cache_max_size: int
    summary_cache_ttl_seconds: float
    summary_temperature: float
    summary_max_tokens: int
    # Importance settings
    importance_cache_ttl_seconds: float
    # Global query settings
    global_query_max_communities: int
    global_query_top_k: int


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("invalid_int_setting", name=name, value=raw, default=default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("invalid_float_setting", name=name, value=raw, default=default)
        return default


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings instance with all configuration values

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    load_dotenv()

    app_env = os.getenv("APP_ENV", "development").strip().lower()

    llm_provider = os.getenv("LLM_PROVIDER", "openai").strip().lower()
    if llm_provider not in SUPPORTED_LLM_PROVIDERS:
        supported = ", ".join(sorted(SUPPORTED_LLM_PROVIDERS))
        raise ValueError(
            f"LLM_PROVIDER must be one of: {supported}. Got {llm_provider!r}."
        )
    llm_api_key = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
    if llm_provider != "ollama" and not llm_api_key:
        raise ValueError(
            "LLM_API_KEY (or OPENAI_API_KEY) is required for provider "
            f"{llm_provider!r}. Check your .env file."
        )

    required = [
        "NEO4J_URI",
        "NEO4J_USER",
        "NEO4J_PASSWORD",
        "REDIS_URL",
    ]
    values = {key: os.getenv(key) for key in required}
    missing = [key for key, value in values.items() if not value]
    if missing:
        missing_list = ", ".join(sorted(missing))
        raise ValueError(
            "Missing required environment variables: "
            f"{missing_list}. Copy .env.example to .env and fill values."
        )

    llm_timeout_seconds = _env_float("LLM_TIMEOUT_SECONDS", 30.0)
    llm_retry_attempts = _env_int("LLM_RETRY_ATTEMPTS", 3)
    if llm_timeout_seconds <= 0:
        raise ValueError("LLM_TIMEOUT_SECONDS must be > 0.")
    if llm_retry_attempts < 1:
        raise ValueError("LLM_RETRY_ATTEMPTS must be >= 1.")

    community_resolution = _env_float("COMMUNITY_RESOLUTION", 1.0)
    if community_resolution <= 0:
        raise ValueError("COMMUNITY_RESOLUTION must be > 0.")
    community_max_levels = _env_int("COMMUNITY_MAX_LEVELS", 10)
    if community_max_levels < 1:
        raise ValueError("COMMUNITY_MAX_LEVELS must be >= 1.")
    seed_raw = os.getenv("COMMUNITY_SEED")
    try:
        community_seed = int(seed_raw) if seed_raw else None
    except ValueError as exc:
        raise ValueError("COMMUNITY_SEED must be an integer.") from exc

    incremental_hop_radius = _env_int("INCREMENTAL_HOP_RADIUS", 1)
    if incremental_hop_radius not in (1, 2):
        raise ValueError("INCREMENTAL_HOP_RADIUS must be 1 or 2.")

    summary_batch_size = _env_int("SUMMARY_BATCH_SIZE", 5)
    if summary_batch_size < 1:
        raise ValueError("SUMMARY_BATCH_SIZE must be >= 1.")
    summary_cache_max_size = _env_int("SUMMARY_CACHE_MAX_SIZE", 100)
    if summary_cache_max_size < 1:
        raise ValueError("SUMMARY_CACHE_MAX_SIZE must be >= 1.")

    neo4j_uri = cast(str, values["NEO4J_URI"])
    neo4j_user = cast(str, values["NEO4J_USER"])
    neo4j_password = cast(str, values["NEO4J_PASSWORD"])
    redis_url = cast(str, values["REDIS_URL"])

    return Settings(
        app_env=app_env,
        llm_provider=llm_provider,
        llm_api_key=llm_api_key,
        llm_base_url=os.getenv("LLM_BASE_URL"),
        llm_model_id=os.getenv("LLM_MODEL_ID", "gpt-4o-mini"),
        llm_timeout_seconds=llm_timeout_seconds,
        llm_retry_attempts=llm_retry_attempts,
        neo4j_uri=neo4j_uri,
        neo4j_user=neo4j_user,
        neo4j_password=neo4j_password,
        redis_url=redis_url,
        redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", "kg:communities"),
        community_resolution=community_resolution,
        community_max_levels=community_max_levels,
        community_threshold=_env_float("COMMUNITY_THRESHOLD", 1e-7),
        community_seed=community_seed,
        incremental_hop_radius=incremental_hop_radius,
        incremental_max_change_ratio=_env_float("INCREMENTAL_MAX_CHANGE_RATIO", 0.3),
        incremental_min_nodes=_env_int("INCREMENTAL_MIN_NODES", 10),
        smart_change_ratio_threshold=_env_float("SMART_CHANGE_RATIO_THRESHOLD", 0.2),
        entity_fetch_limit=_env_int("ENTITY_FETCH_LIMIT", 10000),
        summary_min_community_size=_env_int("SUMMARY_MIN_COMMUNITY_SIZE", 2),
        summary_batch_size=summary_batch_size,
        summary_batch_delay_seconds=_env_float("SUMMARY_BATCH_DELAY_SECONDS", 0.5),
        summary_cache_max_size=summary_cache_max_size,
        summary_cache_ttl_seconds=_env_float("SUMMARY_CACHE_TTL_SECONDS", 1800.0),
        summary_temperature=_env_float("SUMMARY_TEMPERATURE", 0.3),
        summary_max_tokens=_env_int("SUMMARY_MAX_TOKENS", 400),
        importance_cache_ttl_seconds=_env_float("IMPORTANCE_CACHE_TTL_SECONDS", 300.0),
        global_query_max_communities=_env_int("GLOBAL_QUERY_MAX_COMMUNITIES", 10),
        global_query_top_k=_env_int("GLOBAL_QUERY_TOP_K", 5),
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once
    from environment variables.

    Returns:
        Cached Settings instance
    """
    return load_settings()
