"""
Configuration management for Codeweaver

Loads environment variables and provides application settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache

from .limits import (
    MAX_STORY_ENTRIES_DEFAULT,
    MAX_BRANCH_ENTRIES_DEFAULT,
    CACHE_MAX_AGE_DAYS_DEFAULT,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_name: str = "Codeweaver"
    port: int = 3000
    log_level: str = "INFO"

    # CORS Configuration
    # Default "*" allows all origins (suitable for development)
    cors_allowed_origins: str = "*"

    # =========================================================================
    # Text Generation Service
    # Any OpenAI-compatible endpoint. When generation_api_version is set the
    # endpoint is treated as an Azure OpenAI / Foundry deployment.
    # =========================================================================
    generation_endpoint: Optional[str] = None  # e.g., https://foundry-codeweaver.cognitiveservices.azure.com
    generation_api_key: Optional[str] = None
    generation_api_version: Optional[str] = None  # e.g., 2024-12-01-preview
    generation_model: str = "gpt-4o-mini"
    generation_temperature: float = 0.7
    generation_max_tokens: int = 2048

    # Timeouts and retries (seconds)
    generation_timeout_seconds: float = 10.0
    generation_max_retries: int = 2
    generation_latency_budget_seconds: float = 20.0

    # Whole-request deadline for the orchestrator (None = only the budget above)
    request_timeout_seconds: Optional[float] = 30.0

    # =========================================================================
    # Connectivity
    # =========================================================================
    connectivity_probe_url: Optional[str] = None  # Defaults to generation_endpoint
    connectivity_check_interval_seconds: float = 5.0
    force_offline: bool = False  # Serve cache/default content only

    # =========================================================================
    # Story Cache
    # =========================================================================
    max_story_entries: int = MAX_STORY_ENTRIES_DEFAULT
    max_branch_entries: int = MAX_BRANCH_ENTRIES_DEFAULT
    cache_max_age_days: int = CACHE_MAX_AGE_DAYS_DEFAULT

    # Durable tier backend: "memory", "local" or "azure"
    blob_backend: str = "local"
    blob_local_dir: str = "data/story_cache"
    azure_blob_connection_string: Optional[str] = None
    azure_blob_container: str = "codeweaver-cache"

    # Concept vocabulary (defaults to the bundled concepts.yaml)
    concept_vocabulary_path: Optional[str] = None

    # Debug Configuration
    debug_storage: bool = False   # Log cache storage operations
    debug_api_calls: bool = False  # Log generation API call details
    debug_log_dir: str = "logs/debug"  # Directory for debug logs

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_probe_url(self) -> Optional[str]:
        """
        Get the URL used by the connectivity probe.

        Falls back to the generation endpoint, since reaching that host is
        what actually matters for generation.
        """
        return self.connectivity_probe_url or self.generation_endpoint


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures we only load settings once.
    """
    return Settings()
