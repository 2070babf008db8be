"""Configuration models for the search service."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kb_search.errors import ConfigurationError

PLAN_LIMITS: dict[str, dict[str, int]] = {
    "free": {"search": 100, "recording": 10, "api_call": 1_000, "storage": 1},
    "starter": {"search": 1_000, "recording": 100, "api_call": 10_000, "storage": 10},
    "professional": {
        "search": 10_000,
        "recording": 1_000,
        "api_call": 100_000,
        "storage": 100,
    },
    "enterprise": {
        "search": 100_000,
        "recording": 10_000,
        "api_call": 1_000_000,
        "storage": 1_000,
    },
}


class ChunkingConfig(BaseModel):
    """Configures structure-aware semantic chunking. Sizes are in characters."""

    min_size: int = Field(default=200, ge=1)
    max_size: int = Field(default=800, ge=1)
    target_size: int = Field(default=500, ge=1)
    similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    preserve_structures: bool = True
    window_size: int = Field(default=2, ge=1, le=8)
    max_input_chars: int = Field(default=1_000_000, ge=1)

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingConfig":
        if not self.min_size <= self.target_size <= self.max_size:
            raise ConfigurationError(
                "chunk sizes must satisfy min_size <= target_size <= max_size "
                f"(got {self.min_size}, {self.target_size}, {self.max_size})"
            )
        return self


class SearchConfig(BaseModel):
    """Configures vector and hybrid retrieval."""

    default_limit: int = Field(default=10, ge=1, le=100)
    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    hybrid_vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    hybrid_candidate_factor: int = Field(default=4, ge=1)


class RerankConfig(BaseModel):
    """Configures the external rerank provider call."""

    model: str = "rerank-english-v3.0"
    timeout_ms: int = Field(default=3000, ge=100, le=5000)
    unit_cost: float = Field(default=0.001, ge=0.0)


class MultimodalConfig(BaseModel):
    audio_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    visual_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    visual_enabled: bool = True
    dedup_window_seconds: float = Field(default=5.0, ge=0.0)
    weight_tolerance: float = Field(default=1e-3, gt=0.0)
    overfetch_factor: float = Field(default=1.5, ge=1.0)

    @model_validator(mode="after")
    def _check_weights(self) -> "MultimodalConfig":
        if abs(self.audio_weight + self.visual_weight - 1.0) > self.weight_tolerance:
            raise ConfigurationError("audioWeight and visualWeight must sum to 1.0")
        return self


class AgenticConfig(BaseModel):
    """Configures the decompose/retrieve/reflect loop."""

    max_iterations: int = Field(default=3, ge=1, le=10)
    enable_self_reflection: bool = True
    threshold: float = Field(default=0.55, ge=0.0, le=1.0)
    overfetch_factor: float = Field(default=1.5, ge=1.0)
    max_subqueries: int = Field(default=5, ge=1)
    confidence_stop: float = Field(default=0.85, ge=0.0, le=1.0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class CacheConfig(BaseModel):
    key_prefix: str = Field(default="kb", min_length=1)
    memory_max_entries: int = Field(default=1000, ge=1)
    memory_ttl_seconds: float = Field(default=60.0, gt=0.0)
    default_ttl_seconds: float = Field(default=300.0, gt=0.0)


class QuotaConfig(BaseModel):
    """Per-plan monthly limits. `default_plan=None` denies unknown orgs."""

    plan_limits: dict[str, dict[str, int]] = Field(
        default_factory=lambda: {plan: dict(limits) for plan, limits in PLAN_LIMITS.items()}
    )
    default_plan: str | None = "free"

    @model_validator(mode="after")
    def _check_default_plan(self) -> "QuotaConfig":
        if self.default_plan is not None and self.default_plan not in self.plan_limits:
            raise ConfigurationError(f"unknown default plan: {self.default_plan}")
        return self


class RateLimitRule(BaseModel):
    limit: int = Field(ge=1)
    window_seconds: float = Field(gt=0.0)


class RateLimitConfig(BaseModel):
    rules: dict[str, RateLimitRule] = Field(
        default_factory=lambda: {
            "search": RateLimitRule(limit=100, window_seconds=60),
            "api": RateLimitRule(limit=100, window_seconds=60),
            "auth": RateLimitRule(limit=5, window_seconds=60),
            "public": RateLimitRule(limit=20, window_seconds=60),
            "admin": RateLimitRule(limit=500, window_seconds=60),
        }
    )
    default_rule: str = "api"

    @model_validator(mode="after")
    def _check_default_rule(self) -> "RateLimitConfig":
        if self.default_rule not in self.rules:
            raise ConfigurationError(f"unknown default rate-limit rule: {self.default_rule}")
        return self

    def rule_for(self, resource: str) -> RateLimitRule:
        return self.rules.get(resource, self.rules[self.default_rule])


class Settings(BaseSettings):
    """Environment-backed deployment configuration."""

    model_config = SettingsConfigDict(env_prefix="kb_search_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"

    # Embeddings
    embedding_provider: Literal["hashing", "http"] = "hashing"
    embedding_url: str = "https://api.openai.com/v1"
    embedding_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 256
    embedding_timeout_seconds: float = 10.0

    # Rerank
    rerank_provider: Literal["cohere", "cross_encoder"] = "cohere"
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    rerank_url: str = "https://api.cohere.ai/v1/rerank"
    rerank_api_key: str | None = None
    rerank_model: str = "rerank-english-v3.0"
    rerank_timeout_ms: int = 3000

    # Agentic retrieval
    agentic_max_iterations: int = 3
    enable_self_reflection: bool = True
    agentic_confidence_threshold: float = 0.7
    openai_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"

    # Multimodal
    enable_visual_search: bool = True

    # Persistence: when set, cache/quota stores use SQLite instead of memory
    sqlite_path: Path | None = None

    cache_ttl_seconds: float = 300.0


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
