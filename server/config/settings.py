"""
Deep Search Server Settings Configuration
Configuration management for the search answer pipeline and context cache
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from pathlib import Path


class SearchSettings(BaseSettings):
    """Configuration settings for the deep search server"""

    # Server Configuration
    host: str = "localhost"
    port: int = 8001
    debug: bool = False
    environment: str = "development"

    # Completion Provider
    llm_backend: str = "ollama"  # ollama or gemini
    ollama_host: str = "localhost"
    ollama_port: int = 11434
    ollama_model: str = "qwen3:8b"
    gemini_api_url: str = "https://generativelanguage.googleapis.com"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"

    # Per-pass models (None = backend default)
    planner_model: Optional[str] = None
    surface_model: Optional[str] = None
    grounding_model: Optional[str] = None
    resolution_model: Optional[str] = None
    experimental_resolution_model: Optional[str] = None
    synthesis_model: Optional[str] = None

    # Analyzer switches
    enable_chain_of_agents: bool = False
    enable_conflict_resolution: bool = True
    metrics_history_size: int = 200

    # Search Provider
    search_backend: str = "companion"  # companion or searxng
    search_api_url: str = "http://localhost:3001"
    searxng_url: str = "http://localhost:8888"
    fetch_page_content: bool = True
    max_content_results: int = 3
    max_results_per_query: int = 10

    # Pipeline limits
    max_search_rounds: int = 10
    max_citations: int = 20

    # Deadlines (seconds)
    completion_timeout: float = 60.0
    search_timeout: float = 30.0
    pipeline_timeout: float = 300.0
    cache_timeout: float = 5.0

    # Context Cache
    cache_backend: str = "memory"  # memory or redis
    cache_ttl: int = 3600
    chunk_cache_ttl: Optional[int] = None
    check_period: int = 600
    max_context_tokens: int = 32768
    chunk_target_tokens: int = 8000
    chars_per_token: int = 4

    # Redis Configuration
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 4
    redis_password: Optional[str] = None
    redis_key_prefix: str = "deepsearch"

    # Storage Paths
    log_path: str = "./logs"

    # CORS Configuration
    enable_cors: bool = True
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Monitoring
    log_level: str = "INFO"
    structured_logging: bool = False

    @property
    def redis_url(self) -> str:
        """Construct Redis URL"""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def ollama_base_url(self) -> str:
        """Construct Ollama base URL"""
        return f"http://{self.ollama_host}:{self.ollama_port}"

    @field_validator("log_path")
    @classmethod
    def ensure_paths_exist(cls, v):
        """Ensure storage paths exist"""
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return str(path.absolute())

    @field_validator("llm_backend", "search_backend", "cache_backend")
    @classmethod
    def normalize_backend(cls, v):
        return v.strip().lower()

    @field_validator("max_citations")
    @classmethod
    def validate_max_citations(cls, v):
        """Citations are capped at 20 per answer"""
        if v < 1 or v > 20:
            raise ValueError("max_citations must be between 1 and 20")
        return v

    @model_validator(mode="after")
    def default_chunk_ttl(self):
        # Chunked entries outlive full entries unless configured otherwise
        if self.chunk_cache_ttl is None:
            self.chunk_cache_ttl = self.cache_ttl * 2
        return self

    model_config = {
        "env_file": ".env",
        "env_prefix": "DEEPSEARCH_",
        "case_sensitive": False
    }


# Global settings instance
settings = SearchSettings()


def get_settings() -> SearchSettings:
    """Get settings instance (for dependency injection)"""
    return settings


if __name__ == "__main__":
    print("Deep Search Configuration:")
    print(f"LLM backend: {settings.llm_backend} ({settings.ollama_base_url})")
    print(f"Search backend: {settings.search_backend} ({settings.search_api_url})")
    print(f"Cache backend: {settings.cache_backend} (ttl={settings.cache_ttl}s)")
    print(f"Redis URL: {settings.redis_url}")
